from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every error raised by the ledger."""

    code = "ledger_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(LedgerError):
    """An identifier or operand is missing, non-numeric or negative."""

    code = "invalid_argument"


class NotFound(LedgerError):
    code = "not_found"


class Conflict(LedgerError):
    """
    A compare-and-swap write was rejected because the stored account
    changed (or disappeared) since it was read.

    Raised by stores and retried by the service; callers of the service
    never see it.
    """

    code = "conflict"


class Contention(LedgerError):
    """The retry budget ran out while the account kept changing underneath us."""

    code = "contention"

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class StoreUnavailable(LedgerError):
    """The persistence layer could not be reached; nothing was applied."""

    code = "store_unavailable"

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConfigurationError(LedgerError):
    code = "configuration_error"


class BalanceOverflow(LedgerError):
    """A credit would push a wallet, bank or capacity past `MAX_BALANCE`."""

    code = "balance_overflow"
