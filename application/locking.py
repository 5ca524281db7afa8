from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Tuple

from domain.errors import ConfigurationError

AccountKey = Tuple[str, str]


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class AccountLocks:
    """
    Registry of one exclusive lock per `(user_id, guild_id)`.

    The registry lock is only held while looking up or releasing an entry,
    so two different accounts never wait on each other. An entry lives only
    while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[AccountKey, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, key: AccountKey) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for compare-and-swap retries."""

    max_attempts: int = 5
    base_delay: float = 0.01
    max_delay: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""

        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return ceiling * random.uniform(0.5, 1.0)
