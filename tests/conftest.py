"""
Pytest configuration and shared fixtures.

Stores are real SQLite databases under tmp_path; the chain is the in-memory
FakeChainClient from tests.fakes.
"""
import pytest

from keeper.runtime.lifecycle import Lifecycle
from keeper.storage.db import init_db
from keeper.storage.repository import PositionStore
from tests.fakes import FakeChainClient


@pytest.fixture
def db(tmp_path):
    database = init_db(f"sqlite:///{tmp_path / 'keeper.db'}")
    yield database
    database.engine.dispose()


@pytest.fixture
def store(db):
    return PositionStore(db)


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def lifecycle():
    return Lifecycle()
