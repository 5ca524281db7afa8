from __future__ import annotations

from typing import List, Optional, Protocol

from .models import Account


class AccountStore(Protocol):
    """
    Abstraction over account persistence.

    Implementations are responsible for:
    - Mapping between stored rows/documents and the `Account` domain model.
    - Hiding any SQL / driver details from the application layer.
    - Translating connectivity failures into `StoreUnavailable`.
    """

    def get(self, user_id: str, guild_id: str) -> Optional[Account]:
        """Return the account for the given key, or None if not found."""

        ...

    def insert(self, account: Account) -> bool:
        """
        Persist a brand new account.

        Returns False (and leaves the stored record untouched) when an
        account with the same key already exists.
        """

        ...

    def get_or_create(self, user_id: str, guild_id: str) -> Account:
        """Return the stored account, inserting a default one first if needed."""

        ...

    def put(self, account: Account) -> Account:
        """
        Write `account` back if, and only if, the stored version still equals
        `account.version`.

        Returns the committed account with its version bumped. Raises
        `Conflict` when the stored record changed or vanished since it was
        read.
        """

        ...

    def remove(self, user_id: str, guild_id: str) -> bool:
        """Delete the account. Returns whether it existed."""

        ...

    def top_n(self, guild_id: str, n: int) -> List[Account]:
        """
        Return up to `n` accounts of a guild ordered by wallet descending.

        Ties keep insertion order.
        """

        ...
