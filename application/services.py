from __future__ import annotations

import logging
import numbers
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from application.locking import AccountLocks, RetryPolicy
from domain.errors import BalanceOverflow, Conflict, Contention, InvalidArgument
from domain.models import (
    DAILY_COOLDOWN_MS,
    MAX_BALANCE,
    Account,
    from_epoch_ms,
    to_epoch_ms,
)
from domain.repositories import AccountStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

_INTEGER_TEXT = re.compile(r"\s*[+-]?\d+\s*", re.ASCII)


@dataclass
class BalanceResult:
    wallet: int
    bank: int
    bank_capacity: int


@dataclass
class AmountResult:
    """Result of give/deduct: the amount that was actually moved."""

    amount: int


@dataclass
class TransferResult:
    """
    Result of moving coins between wallet and bank.

    At most one of the flags is set, and only when `success` is False.
    """

    success: bool
    amount: int = 0
    insufficient_funds: bool = False
    capacity_exceeded: bool = False
    invalid: bool = False


@dataclass
class CapacityResult:
    capacity: int
    bank_capacity: int


@dataclass
class DailyResult:
    success: bool
    amount: int = 0
    on_cooldown: bool = False
    remaining_ms: int = 0

    @property
    def remaining(self) -> Tuple[int, int, int]:
        """Cooldown left as (hours, minutes, seconds)."""

        hours = self.remaining_ms // 3_600_000
        minutes = (self.remaining_ms // 60_000) % 60
        seconds = (self.remaining_ms // 1000) % 60
        return hours, minutes, seconds


@dataclass
class ExistenceResult:
    existed: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_id(value: Any, label: str) -> str:
    if value is None or str(value).strip() == "":
        raise InvalidArgument(f"Please provide a {label}.")
    return str(value)


def _parse_amount(value: Any, label: str = "Amount") -> int:
    """
    Coerce an operand to a non-negative integer.

    Integers, integral floats and integer strings ("50") are accepted;
    anything else raises `InvalidArgument`.
    """

    if value is None:
        raise InvalidArgument(f"Please provide {label.lower()}.")
    if isinstance(value, bool):
        raise InvalidArgument(f"{label} should be a number.")
    if isinstance(value, numbers.Integral):
        amount = int(value)
    elif isinstance(value, numbers.Real):
        if not float(value).is_integer():
            raise InvalidArgument(f"{label} should be a whole number.")
        amount = int(value)
    elif isinstance(value, str) and _INTEGER_TEXT.fullmatch(value):
        amount = int(value)
    else:
        raise InvalidArgument(f"{label} should be a number.")

    if amount < 0:
        raise InvalidArgument(f"{label} should be a positive number.")
    if amount > MAX_BALANCE:
        raise InvalidArgument(f"{label} should be at most {MAX_BALANCE}.")
    return amount


def _credit(current: int, amount: int, field: str) -> int:
    total = current + amount
    if total > MAX_BALANCE:
        raise BalanceOverflow(f"{field} cannot exceed {MAX_BALANCE}.")
    return total


class LedgerService:
    """
    Wallet/bank ledger for guild economies.

    Every mutation runs under the account's lock and is committed with a
    compare-and-swap on `Account.version`; a `Conflict` (a write from
    another process landed first) restarts the read-compute-write cycle up
    to `retry.max_attempts` times before `Contention` is raised.

    Domain outcomes such as insufficient funds or an active daily cooldown
    are reported through the result objects, never raised. A credit that
    would overflow a 64-bit balance raises `BalanceOverflow` and writes
    nothing.
    """

    def __init__(
        self,
        store: AccountStore,
        retry: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry = retry or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._locks = AccountLocks()

    @property
    def store(self) -> AccountStore:
        return self._store

    def _retrying(self, op: str, target: str, once: Callable[[], R]) -> R:
        """
        Run `once` until it stops raising `Conflict`, sleeping between
        attempts, and raise `Contention` when the budget is spent.
        """

        attempts = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return once()
            except Conflict as exc:
                logger.warning(
                    "%s on %s conflicted (attempt %d/%d): %s",
                    op,
                    target,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    self._sleep(self._retry.delay(attempt))

        logger.error("%s on %s gave up after %d attempts", op, target, attempts)
        raise Contention(
            f"{op} on {target} kept conflicting after {attempts} attempts",
            attempts=attempts,
        )

    def _mutate(
        self,
        op: str,
        user_id: str,
        guild_id: str,
        apply: Callable[[Account], Tuple[R, Optional[Account]]],
        missing: Optional[Callable[[], R]] = None,
    ) -> R:
        """
        Load-or-create the account, let `apply` compute the outcome and the
        new state, and commit it. `apply` returns `None` as the new state
        when nothing should be written.

        When `missing` is given the account is not created; its result is
        returned instead if the account does not exist.
        """

        def cycle() -> R:
            if missing is None:
                account = self._store.get_or_create(user_id, guild_id)
            else:
                found = self._store.get(user_id, guild_id)
                if found is None:
                    return missing()
                account = found
            result, updated = apply(account)
            if updated is None:
                return result
            committed = self._store.put(updated)
            logger.debug(
                "%s on %s/%s committed at version %d",
                op,
                user_id,
                guild_id,
                committed.version,
            )
            return result

        with self._locks.hold((user_id, guild_id)):
            return self._retrying(op, f"{user_id}/{guild_id}", cycle)

    # Queries

    def balance(self, user_id: Any, guild_id: Any) -> BalanceResult:
        """
        Return the wallet, bank and bank capacity of a user.

        Note that this read creates the account (with zero balances) when
        the user has never been seen in the guild.
        """

        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")

        account = self._retrying(
            "balance",
            f"{user_id}/{guild_id}",
            lambda: self._store.get_or_create(user_id, guild_id),
        )
        return BalanceResult(
            wallet=account.wallet,
            bank=account.bank,
            bank_capacity=account.bank_capacity,
        )

    def leaderboard(self, guild_id: Any, count: Any) -> List[Account]:
        """Top `count` accounts of the guild by wallet; ties keep creation order."""

        guild_id = _require_id(guild_id, "Guild ID")
        count = _parse_amount(count, "Count")
        if count == 0:
            return []
        return self._retrying("leaderboard", guild_id, lambda: self._store.top_n(guild_id, count))

    # Mutations

    def give(self, user_id: Any, guild_id: Any, amount: Any) -> AmountResult:
        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")
        amount = _parse_amount(amount)

        def apply(account: Account) -> Tuple[AmountResult, Optional[Account]]:
            wallet = _credit(account.wallet, amount, "Wallet")
            return AmountResult(amount=amount), replace(account, wallet=wallet)

        return self._mutate("give", user_id, guild_id, apply)

    def deduct(self, user_id: Any, guild_id: Any, amount: Any) -> AmountResult:
        """Remove up to `amount` from the wallet; never drives it below zero."""

        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")
        amount = _parse_amount(amount)

        def apply(account: Account) -> Tuple[AmountResult, Optional[Account]]:
            deducted = min(account.wallet, amount)
            return AmountResult(amount=deducted), replace(account, wallet=account.wallet - deducted)

        return self._mutate("deduct", user_id, guild_id, apply)

    def deposit(self, user_id: Any, guild_id: Any, amount: Any) -> TransferResult:
        """
        Move coins from the wallet into the bank.

        Rejected (nothing written) when the wallet holds less than `amount`
        or when the bank would end up above its capacity.
        """

        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")
        amount = _parse_amount(amount, "Deposit amount")

        def apply(account: Account) -> Tuple[TransferResult, Optional[Account]]:
            if amount > account.wallet:
                return TransferResult(success=False, insufficient_funds=True), None
            if account.bank + amount > account.bank_capacity:
                return TransferResult(success=False, capacity_exceeded=True), None
            updated = replace(
                account,
                wallet=account.wallet - amount,
                bank=account.bank + amount,
            )
            return TransferResult(success=True, amount=amount), updated

        return self._mutate("deposit", user_id, guild_id, apply)

    def withdraw(self, user_id: Any, guild_id: Any, amount: Any) -> TransferResult:
        """
        Move coins from the bank back into the wallet.

        `amount` may be the string "all" to empty the bank. An unparsable or
        negative amount is reported as `invalid` rather than raised, and a
        user without an account simply has insufficient funds; withdraw
        never creates accounts.
        """

        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")

        everything = isinstance(amount, str) and amount.strip().lower() == "all"
        requested = 0
        if not everything:
            try:
                requested = _parse_amount(amount, "Withdraw amount")
            except InvalidArgument:
                return TransferResult(success=False, invalid=True)

        def apply(account: Account) -> Tuple[TransferResult, Optional[Account]]:
            value = account.bank if everything else requested
            if value > account.bank:
                return TransferResult(success=False, insufficient_funds=True), None
            updated = replace(
                account,
                wallet=_credit(account.wallet, value, "Wallet"),
                bank=account.bank - value,
            )
            return TransferResult(success=True, amount=value), updated

        def missing() -> TransferResult:
            return TransferResult(success=False, insufficient_funds=True)

        return self._mutate("withdraw", user_id, guild_id, apply, missing)

    def give_capacity(self, user_id: Any, guild_id: Any, capacity: Any) -> CapacityResult:
        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")
        capacity = _parse_amount(capacity, "Capacity")

        def apply(account: Account) -> Tuple[CapacityResult, Optional[Account]]:
            new_capacity = _credit(account.bank_capacity, capacity, "Bank capacity")
            result = CapacityResult(capacity=capacity, bank_capacity=new_capacity)
            return result, replace(account, bank_capacity=new_capacity)

        return self._mutate("give_capacity", user_id, guild_id, apply)

    def daily(self, user_id: Any, guild_id: Any, amount: Any) -> DailyResult:
        """
        Credit the daily reward if the last claim is at least 24h old.

        While on cooldown nothing is written and the remaining time is
        returned in milliseconds.
        """

        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")
        amount = _parse_amount(amount)

        def apply(account: Account) -> Tuple[DailyResult, Optional[Account]]:
            now_ms = to_epoch_ms(self._clock())
            if account.last_daily is not None:
                elapsed = max(now_ms - to_epoch_ms(account.last_daily), 0)
                if elapsed < DAILY_COOLDOWN_MS:
                    result = DailyResult(
                        success=False,
                        on_cooldown=True,
                        remaining_ms=DAILY_COOLDOWN_MS - elapsed,
                    )
                    return result, None
            updated = replace(
                account,
                wallet=_credit(account.wallet, amount, "Wallet"),
                last_daily=from_epoch_ms(now_ms),
            )
            return DailyResult(success=True, amount=amount), updated

        return self._mutate("daily", user_id, guild_id, apply)

    def create(self, user_id: Any, guild_id: Any) -> ExistenceResult:
        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")

        created = self._retrying(
            "create",
            f"{user_id}/{guild_id}",
            lambda: self._store.insert(Account.new(user_id, guild_id)),
        )
        if created:
            logger.debug("Created account %s/%s", user_id, guild_id)
        return ExistenceResult(existed=not created)

    def delete(self, user_id: Any, guild_id: Any) -> ExistenceResult:
        user_id = _require_id(user_id, "User ID")
        guild_id = _require_id(guild_id, "Guild ID")

        with self._locks.hold((user_id, guild_id)):
            existed = self._retrying(
                "delete",
                f"{user_id}/{guild_id}",
                lambda: self._store.remove(user_id, guild_id),
            )
        if existed:
            logger.debug("Deleted account %s/%s", user_id, guild_id)
        return ExistenceResult(existed=existed)
