from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

DEFAULT_BANK_CAPACITY = 2500

# 24 hours.
DAILY_COOLDOWN_MS = 86_400_000

# Largest value a signed 64-bit store column holds.
MAX_BALANCE = 2**63 - 1


@dataclass
class Account:
    """
    Economy record of one user inside one guild.

    `(user_id, guild_id)` is the identity of the record. `version` is bumped
    by the store on every committed write and is what compare-and-swap
    updates are conditioned on; callers should never change it themselves.
    """

    user_id: str
    guild_id: str
    wallet: int = 0
    bank: int = 0
    bank_capacity: int = DEFAULT_BANK_CAPACITY
    last_daily: Optional[datetime] = None
    version: int = 0

    @classmethod
    def new(cls, user_id: str, guild_id: str) -> "Account":
        return cls(user_id=user_id, guild_id=guild_id)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.guild_id)

    @property
    def total(self) -> int:
        return self.wallet + self.bank


def to_epoch_ms(moment: Optional[datetime]) -> Optional[int]:
    """Convert an aware datetime to integer milliseconds since the epoch."""

    if moment is None:
        return None
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
