from __future__ import annotations

import logging
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional

from domain.errors import Conflict, StoreUnavailable
from domain.models import Account, from_epoch_ms, to_epoch_ms
from domain.repositories import AccountStore

logger = logging.getLogger(__name__)

_COLUMNS = "user_id, guild_id, wallet, bank, bank_capacity, last_daily, version"


class SqliteAccountStore(AccountStore):
    """
    SQLite-backed implementation of `AccountStore`.

    Owns the `accounts` table. The `seq` rowid records insertion order for
    leaderboard ties; `version` is the compare-and-swap counter. The table
    is created on construction if needed.
    """

    def __init__(self, db_path: str, timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=self._timeout)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._get_connection()) as conn, conn:
                yield conn
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc):
                # Busy timeout: another writer held the file, retry like a lost CAS.
                logger.warning("SQLite store %s busy: %s", self._db_path, exc)
                raise Conflict(f"sqlite store busy: {exc}") from exc
            logger.error("SQLite store %s unavailable: %s", self._db_path, exc)
            raise StoreUnavailable(f"sqlite store unavailable: {exc}", cause=exc) from exc

    def _ensure_table(self) -> None:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    guild_id TEXT NOT NULL,
                    wallet INTEGER NOT NULL DEFAULT 0 CHECK (wallet >= 0),
                    bank INTEGER NOT NULL DEFAULT 0 CHECK (bank >= 0),
                    bank_capacity INTEGER NOT NULL DEFAULT 2500,
                    last_daily INTEGER,
                    version INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (user_id, guild_id)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS accounts_guild_wallet ON accounts (guild_id, wallet DESC, seq)"
            )
            conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> Account:
        return Account(
            user_id=str(row[0]),
            guild_id=str(row[1]),
            wallet=int(row[2]),
            bank=int(row[3]),
            bank_capacity=int(row[4]),
            last_daily=from_epoch_ms(row[5]),
            version=int(row[6]),
        )

    def get(self, user_id: str, guild_id: str) -> Optional[Account]:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_COLUMNS} FROM accounts WHERE user_id = ? AND guild_id = ?",
                (user_id, guild_id),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def insert(self, account: Account) -> bool:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT OR IGNORE INTO accounts
                    (user_id, guild_id, wallet, bank, bank_capacity, last_daily, version)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    account.user_id,
                    account.guild_id,
                    account.wallet,
                    account.bank,
                    account.bank_capacity,
                    to_epoch_ms(account.last_daily),
                ),
            )
            conn.commit()
            return cur.rowcount > 0

    def get_or_create(self, user_id: str, guild_id: str) -> Account:
        self.insert(Account.new(user_id, guild_id))
        account = self.get(user_id, guild_id)
        if account is None:
            raise Conflict(f"account {user_id}/{guild_id} vanished during creation")
        return account

    def put(self, account: Account) -> Account:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE accounts
                SET wallet = ?, bank = ?, bank_capacity = ?, last_daily = ?,
                    version = version + 1
                WHERE user_id = ? AND guild_id = ? AND version = ?
                """,
                (
                    account.wallet,
                    account.bank,
                    account.bank_capacity,
                    to_epoch_ms(account.last_daily),
                    account.user_id,
                    account.guild_id,
                    account.version,
                ),
            )
            conn.commit()
            if cur.rowcount == 0:
                raise Conflict(
                    f"account {account.user_id}/{account.guild_id} changed since version {account.version}"
                )
        return replace(account, version=account.version + 1)

    def remove(self, user_id: str, guild_id: str) -> bool:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM accounts WHERE user_id = ? AND guild_id = ?",
                (user_id, guild_id),
            )
            conn.commit()
            return cur.rowcount > 0

    def top_n(self, guild_id: str, n: int) -> List[Account]:
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT {_COLUMNS}
                FROM accounts
                WHERE guild_id = ?
                ORDER BY wallet DESC, seq ASC
                LIMIT ?
                """,
                (guild_id, n),
            )
            rows = cur.fetchall()
            return [self._to_domain(row) for row in rows]
