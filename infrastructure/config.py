from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from application.locking import RetryPolicy
from application.services import LedgerService
from domain.errors import ConfigurationError
from domain.repositories import AccountStore
from infrastructure.db.account_store_memory import InMemoryAccountStore
from infrastructure.db.account_store_mongo import MongoAccountStore
from infrastructure.db.account_store_postgres import PostgresAccountStore
from infrastructure.db.account_store_sqlite import SqliteAccountStore

DEFAULT_STORE_URL = "sqlite:///economy.db"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class LedgerSettings:
    """Process-wide settings, read once at start-up."""

    store_url: str = DEFAULT_STORE_URL
    max_attempts: int = 5
    backoff_base_ms: int = 10
    backoff_max_ms: int = 200
    log_level: str = "INFO"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_ms / 1000,
            max_delay=self.backoff_max_ms / 1000,
        )


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> LedgerSettings:
    """
    Build settings from the environment.

    With no explicit mapping, a `.env` file in the working directory is
    loaded first (existing variables win).
    """

    if environ is None:
        load_dotenv()
        environ = os.environ

    return LedgerSettings(
        store_url=environ.get("LEDGER_STORE_URL") or DEFAULT_STORE_URL,
        max_attempts=_int_setting(environ, "LEDGER_MAX_ATTEMPTS", 5),
        backoff_base_ms=_int_setting(environ, "LEDGER_BACKOFF_BASE_MS", 10),
        backoff_max_ms=_int_setting(environ, "LEDGER_BACKOFF_MAX_MS", 200),
        log_level=environ.get("LEDGER_LOG_LEVEL") or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the root logger (idempotent)."""

    root = logging.getLogger()
    if not any(getattr(h, "_ledger_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._ledger_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def create_account_store(url: str) -> AccountStore:
    """
    Open the store named by a connection URL.

    Supported schemes: `memory://`, `sqlite:///path/to.db`,
    `postgresql://...` / `postgres://...` and `mongodb://...` /
    `mongodb+srv://...` (database taken from the URL path, default
    `economy`).
    """

    scheme = urlparse(url).scheme.lower()
    if scheme == "memory":
        return InMemoryAccountStore()
    if scheme == "sqlite":
        # sqlite:///relative.db or sqlite:////absolute/path.db
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ""
        if not path:
            raise ConfigurationError("sqlite store URL needs a file path")
        return SqliteAccountStore(path)
    if scheme in ("postgresql", "postgres"):
        return PostgresAccountStore(url)
    if scheme in ("mongodb", "mongodb+srv"):
        return MongoAccountStore(url)
    raise ConfigurationError(f"Unsupported store URL: {url!r}")


def create_ledger(settings: Optional[LedgerSettings] = None) -> LedgerService:
    """Wire the configured store into a `LedgerService`."""

    settings = settings or load_settings()
    configure_logging(settings.log_level)
    store = create_account_store(settings.store_url)
    logging.getLogger(__name__).info(
        "Ledger using %s store", urlparse(settings.store_url).scheme
    )
    return LedgerService(store, retry=settings.retry_policy())
