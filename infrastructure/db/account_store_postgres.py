from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional

import psycopg2

from domain.errors import Conflict, StoreUnavailable
from domain.models import Account, from_epoch_ms, to_epoch_ms
from domain.repositories import AccountStore

logger = logging.getLogger(__name__)

_COLUMNS = "user_id, guild_id, wallet, bank, bank_capacity, last_daily, version"


class PostgresAccountStore(AccountStore):
    """
    Postgres-backed implementation of `AccountStore`.

    Mirrors `SqliteAccountStore`: a `BIGSERIAL` column keeps insertion order
    and every update is conditioned on the `version` the caller read.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return psycopg2.connect(self._dsn)

    @contextmanager
    def _connection(self) -> Iterator["psycopg2.extensions.connection"]:
        try:
            with self._get_connection() as conn:
                yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            logger.error("Postgres store unavailable: %s", exc)
            raise StoreUnavailable(f"postgres store unavailable: {exc}", cause=exc) from exc

    def _ensure_table(self) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS accounts (
                        seq BIGSERIAL PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        guild_id TEXT NOT NULL,
                        wallet BIGINT NOT NULL DEFAULT 0 CHECK (wallet >= 0),
                        bank BIGINT NOT NULL DEFAULT 0 CHECK (bank >= 0),
                        bank_capacity BIGINT NOT NULL DEFAULT 2500,
                        last_daily BIGINT,
                        version BIGINT NOT NULL DEFAULT 0,
                        UNIQUE (user_id, guild_id)
                    )
                    """
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
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM accounts WHERE user_id = %s AND guild_id = %s",
                    (user_id, guild_id),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return self._to_domain(row)

    def insert(self, account: Account) -> bool:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO accounts
                        (user_id, guild_id, wallet, bank, bank_capacity, last_daily, version)
                    VALUES (%s, %s, %s, %s, %s, %s, 0)
                    ON CONFLICT (user_id, guild_id) DO NOTHING
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
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET wallet = %s, bank = %s, bank_capacity = %s, last_daily = %s,
                        version = version + 1
                    WHERE user_id = %s AND guild_id = %s AND version = %s
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
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM accounts WHERE user_id = %s AND guild_id = %s",
                    (user_id, guild_id),
                )
                conn.commit()
                return cur.rowcount > 0

    def top_n(self, guild_id: str, n: int) -> List[Account]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM accounts
                    WHERE guild_id = %s
                    ORDER BY wallet DESC, seq ASC
                    LIMIT %s
                    """,
                    (guild_id, n),
                )
                rows = cur.fetchall()
                return [self._to_domain(row) for row in rows]
