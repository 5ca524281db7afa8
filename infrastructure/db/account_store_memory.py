from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from domain.errors import Conflict
from domain.models import Account
from domain.repositories import AccountStore


class InMemoryAccountStore(AccountStore):
    """
    Process-local implementation of `AccountStore`.

    Every record is copied on the way in and out so callers can never
    mutate stored state without going through `put`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: Dict[Tuple[str, str], Account] = {}
        self._seq: Dict[Tuple[str, str], int] = {}
        self._counter = itertools.count()

    def get(self, user_id: str, guild_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get((user_id, guild_id))
            return replace(account) if account is not None else None

    def insert(self, account: Account) -> bool:
        with self._lock:
            if account.key in self._accounts:
                return False
            self._accounts[account.key] = replace(account, version=0)
            self._seq[account.key] = next(self._counter)
            return True

    def get_or_create(self, user_id: str, guild_id: str) -> Account:
        self.insert(Account.new(user_id, guild_id))
        account = self.get(user_id, guild_id)
        if account is None:
            # Removed between insert and read.
            raise Conflict(f"account {user_id}/{guild_id} vanished during creation")
        return account

    def put(self, account: Account) -> Account:
        with self._lock:
            current = self._accounts.get(account.key)
            if current is None or current.version != account.version:
                raise Conflict(
                    f"account {account.user_id}/{account.guild_id} changed since version {account.version}"
                )
            committed = replace(account, version=account.version + 1)
            self._accounts[account.key] = committed
            return replace(committed)

    def remove(self, user_id: str, guild_id: str) -> bool:
        with self._lock:
            self._seq.pop((user_id, guild_id), None)
            return self._accounts.pop((user_id, guild_id), None) is not None

    def top_n(self, guild_id: str, n: int) -> List[Account]:
        with self._lock:
            members = [a for a in self._accounts.values() if a.guild_id == guild_id]
            members.sort(key=lambda a: (-a.wallet, self._seq[a.key]))
            return [replace(a) for a in members[:n]]
