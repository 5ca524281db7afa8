from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, List, Mapping, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from domain.errors import Conflict, StoreUnavailable
from domain.models import Account, from_epoch_ms, to_epoch_ms
from domain.repositories import AccountStore

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "economy"


class MongoAccountStore(AccountStore):
    """
    MongoDB-backed implementation of `AccountStore`.

    One document per account in the `accounts` collection, unique on
    `(user_id, guild_id)`. Insertion order comes from a `seq` drawn from the
    `counters` collection. Writes use `update_one` filtered on the `version`
    the caller read, so a stale write matches nothing and is rejected.
    """

    def __init__(
        self,
        uri: str,
        database: Optional[str] = None,
        client: Optional[MongoClient] = None,
        server_timeout_ms: int = 5000,
    ) -> None:
        self._client = client or MongoClient(uri, serverSelectionTimeoutMS=server_timeout_ms)
        db = (
            self._client[database]
            if database
            else self._client.get_default_database(default=DEFAULT_DATABASE)
        )
        self._accounts = db["accounts"]
        self._counters = db["counters"]
        self._ensure_indexes()

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except ConnectionFailure as exc:
            logger.error("Mongo store unavailable: %s", exc)
            raise StoreUnavailable(f"mongo store unavailable: {exc}", cause=exc) from exc

    def _ensure_indexes(self) -> None:
        with self._translate_errors():
            self._accounts.create_index(
                [("user_id", ASCENDING), ("guild_id", ASCENDING)], unique=True
            )
            self._accounts.create_index(
                [("guild_id", ASCENDING), ("wallet", DESCENDING), ("seq", ASCENDING)]
            )

    @staticmethod
    def _key(user_id: str, guild_id: str) -> dict:
        return {"user_id": user_id, "guild_id": guild_id}

    @staticmethod
    def _to_domain(doc: Mapping[str, Any]) -> Account:
        return Account(
            user_id=str(doc["user_id"]),
            guild_id=str(doc["guild_id"]),
            wallet=int(doc["wallet"]),
            bank=int(doc["bank"]),
            bank_capacity=int(doc["bank_capacity"]),
            last_daily=from_epoch_ms(doc.get("last_daily")),
            version=int(doc["version"]),
        )

    def _next_seq(self) -> int:
        counter = self._counters.find_one_and_update(
            {"_id": "accounts"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    def get(self, user_id: str, guild_id: str) -> Optional[Account]:
        with self._translate_errors():
            doc = self._accounts.find_one(self._key(user_id, guild_id))
        if doc is None:
            return None
        return self._to_domain(doc)

    def insert(self, account: Account) -> bool:
        with self._translate_errors():
            if self._accounts.find_one(self._key(account.user_id, account.guild_id)) is not None:
                return False
            doc = {
                "user_id": account.user_id,
                "guild_id": account.guild_id,
                "wallet": account.wallet,
                "bank": account.bank,
                "bank_capacity": account.bank_capacity,
                "last_daily": to_epoch_ms(account.last_daily),
                "version": 0,
                "seq": self._next_seq(),
            }
            try:
                self._accounts.insert_one(doc)
            except DuplicateKeyError:
                return False
            return True

    def get_or_create(self, user_id: str, guild_id: str) -> Account:
        self.insert(Account.new(user_id, guild_id))
        account = self.get(user_id, guild_id)
        if account is None:
            raise Conflict(f"account {user_id}/{guild_id} vanished during creation")
        return account

    def put(self, account: Account) -> Account:
        with self._translate_errors():
            outcome = self._accounts.update_one(
                {**self._key(account.user_id, account.guild_id), "version": account.version},
                {
                    "$set": {
                        "wallet": account.wallet,
                        "bank": account.bank,
                        "bank_capacity": account.bank_capacity,
                        "last_daily": to_epoch_ms(account.last_daily),
                    },
                    "$inc": {"version": 1},
                },
            )
        if outcome.matched_count == 0:
            raise Conflict(
                f"account {account.user_id}/{account.guild_id} changed since version {account.version}"
            )
        return replace(account, version=account.version + 1)

    def remove(self, user_id: str, guild_id: str) -> bool:
        with self._translate_errors():
            outcome = self._accounts.delete_one(self._key(user_id, guild_id))
        return outcome.deleted_count > 0

    def top_n(self, guild_id: str, n: int) -> List[Account]:
        with self._translate_errors():
            cursor = (
                self._accounts.find({"guild_id": guild_id})
                .sort([("wallet", DESCENDING), ("seq", ASCENDING)])
                .limit(n)
            )
            docs = list(cursor)
        return [self._to_domain(doc) for doc in docs]
