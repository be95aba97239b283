"""
Shared pytest fixtures for the engine test suite.

Accounts share one in-memory bundle directory per test, the way two
devices share one key server. Publication backoff is zeroed so retry
tests do not sleep.
"""

from dataclasses import dataclass

import pytest

from e2ee.config import EngineConfig
from e2ee.directory import MemoryBundleDirectory
from e2ee.keys import KeyManager
from e2ee.session import SessionManager
from e2ee.store import MemorySessionStore, SessionStore

TEST_CONFIG = EngineConfig(num_otk=5, otk_low_watermark=2, publish_backoff=0.0)


@dataclass
class Account:
    name: str
    store: SessionStore
    keys: KeyManager
    sessions: SessionManager


@pytest.fixture
def directory():
    return MemoryBundleDirectory()


@pytest.fixture
def make_account(directory):
    """Factory: ``await make_account("alice")`` returns an initialized Account."""

    async def _make(name, config=TEST_CONFIG, store=None):
        store = store or MemorySessionStore(config)
        keys = KeyManager(name, store, directory, config)
        await keys.initialize()
        return Account(name=name, store=store, keys=keys, sessions=SessionManager(keys, store, config))

    return _make
