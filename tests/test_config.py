import logging
import os
import tempfile
import unittest
from unittest import mock

from application.services import LedgerService
from domain.errors import ConfigurationError
from infrastructure.config import (
    DEFAULT_STORE_URL,
    LedgerSettings,
    configure_logging,
    create_account_store,
    create_ledger,
    load_settings,
)
from infrastructure.db.account_store_memory import InMemoryAccountStore
from infrastructure.db.account_store_mongo import MongoAccountStore
from infrastructure.db.account_store_postgres import PostgresAccountStore
from infrastructure.db.account_store_sqlite import SqliteAccountStore


class LoadSettingsTests(unittest.TestCase):
    def test_defaults(self):
        settings = load_settings({})
        self.assertEqual(settings.store_url, DEFAULT_STORE_URL)
        self.assertEqual(settings.max_attempts, 5)
        self.assertEqual(settings.log_level, "INFO")

    def test_reads_environment_values(self):
        settings = load_settings(
            {
                "LEDGER_STORE_URL": "memory://",
                "LEDGER_MAX_ATTEMPTS": "8",
                "LEDGER_BACKOFF_BASE_MS": "20",
                "LEDGER_BACKOFF_MAX_MS": "400",
                "LEDGER_LOG_LEVEL": "debug",
            }
        )
        self.assertEqual(settings.store_url, "memory://")
        policy = settings.retry_policy()
        self.assertEqual(policy.max_attempts, 8)
        self.assertAlmostEqual(policy.base_delay, 0.02)
        self.assertAlmostEqual(policy.max_delay, 0.4)

    def test_rejects_non_integer_attempts(self):
        with self.assertRaises(ConfigurationError):
            load_settings({"LEDGER_MAX_ATTEMPTS": "five"})

    def test_loads_dotenv_when_no_mapping_given(self):
        with mock.patch("infrastructure.config.load_dotenv") as load_dotenv, mock.patch.dict(
            os.environ, {"LEDGER_STORE_URL": "memory://"}
        ):
            settings = load_settings()
        load_dotenv.assert_called_once_with()
        self.assertEqual(settings.store_url, "memory://")


class CreateAccountStoreTests(unittest.TestCase):
    def test_memory_url(self):
        self.assertIsInstance(create_account_store("memory://"), InMemoryAccountStore)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "economy.db")
            store = create_account_store(f"sqlite:///{path}")
            self.assertIsInstance(store, SqliteAccountStore)
            self.assertTrue(os.path.exists(path))

    def test_postgres_url(self):
        with mock.patch.object(PostgresAccountStore, "_ensure_table") as ensure:
            store = create_account_store("postgresql://ledger@localhost/economy")
        self.assertIsInstance(store, PostgresAccountStore)
        ensure.assert_called_once_with()

    def test_mongodb_url(self):
        with mock.patch("infrastructure.db.account_store_mongo.MongoClient") as client_cls, mock.patch.object(
            MongoAccountStore, "_ensure_indexes"
        ) as ensure:
            store = create_account_store("mongodb://localhost:27017/economy")
        self.assertIsInstance(store, MongoAccountStore)
        client_cls.assert_called_once_with("mongodb://localhost:27017/economy", serverSelectionTimeoutMS=5000)
        client_cls.return_value.get_default_database.assert_called_once_with(default="economy")
        ensure.assert_called_once_with()

    def test_unsupported_or_incomplete_urls(self):
        for url in ("redis://localhost/0", "sqlite://", "economy.db"):
            with self.subTest(url=url):
                with self.assertRaises(ConfigurationError):
                    create_account_store(url)


class CreateLedgerTests(unittest.TestCase):
    def test_wires_configured_store(self):
        ledger = create_ledger(LedgerSettings(store_url="memory://", max_attempts=3))
        self.assertIsInstance(ledger, LedgerService)
        self.assertIsInstance(ledger.store, InMemoryAccountStore)
        self.assertEqual(ledger.give("u1", "g1", 5).amount, 5)

    def test_configure_logging_installs_one_handler(self):
        root = logging.getLogger()
        original = list(root.handlers)
        self.addCleanup(setattr, root, "handlers", original)
        self.addCleanup(root.setLevel, root.level)
        root.handlers = [h for h in original if not getattr(h, "_ledger_handler", False)]

        configure_logging("debug")
        configure_logging("debug")
        installed = [h for h in root.handlers if getattr(h, "_ledger_handler", False)]
        self.assertEqual(len(installed), 1)
        self.assertEqual(root.level, logging.DEBUG)


if __name__ == "__main__":
    unittest.main()
