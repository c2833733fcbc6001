"""Shared fixtures for SplitLedger tests."""

import pytest

from splitledger.clients.directory import StaticDirectory
from splitledger.config import Settings
from splitledger.db import Database
from splitledger.ledger import PairwiseLedger
from splitledger.service import LedgerService


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary database."""
    return Settings(database_path=tmp_path / "test.db", retry_backoff_seconds=0.0)


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def ledger(db, settings):
    return PairwiseLedger.from_settings(db, settings)


@pytest.fixture
def directory():
    """In-memory directory knowing users 1 to 4."""
    return StaticDirectory({1: "Alice", 2: "Bob", 3: "Carol", 4: "Dave"})


@pytest.fixture
def service(settings, db, directory):
    """Create a LedgerService instance."""
    return LedgerService(settings, db, directory=directory)
