# Test Configuration
import os
import sys
from pathlib import Path

import pytest

# Add backend directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from lumen_pg.connections.broker import ConnectionBroker
from lumen_pg.core.clock import FrozenClock
from lumen_pg.core.crypto import Crypto
from lumen_pg.services.metadata_cache import MetadataCache
from lumen_pg.services.pager import CursorCodec, CursorPager, OffsetPager
from lumen_pg.services.session_store import SessionStore
from lumen_pg.services.transaction_engine import TransactionEngine

from fakes import FakeCatalogReader, FakeServer, sample_cluster, sample_privileges

# Real server for integration tests; those tests skip when it is not set
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Test settings
TEST_ENCRYPTION_KEY = b"0123456789abcdef0123456789abcdef"
TEST_START_TIME = 1_700_000_000.0


@pytest.fixture
def clock():
    return FrozenClock(start=TEST_START_TIME)


@pytest.fixture
def crypto():
    return Crypto(TEST_ENCRYPTION_KEY)


@pytest.fixture
def server():
    server = FakeServer()
    server.add_role("alice", "alice-pw", {"appdb", "analytics"})
    server.add_role("bob", "bob-pw", {"appdb"})
    server.add_role("carol", "carol-pw", set())
    return server


@pytest.fixture
def broker(server):
    return ConnectionBroker(host="db.internal", connector_factory=server.connector_factory)


@pytest.fixture
def catalog_reader():
    return FakeCatalogReader(sample_cluster(), sample_privileges())


@pytest.fixture
def metadata_cache(catalog_reader, clock):
    cache = MetadataCache(catalog_reader, clock=clock)
    cache.load_all()
    return cache


@pytest.fixture
def session_store(crypto, clock, broker, metadata_cache):
    return SessionStore(crypto, clock=clock, broker=broker, metadata_cache=metadata_cache)


@pytest.fixture
def transaction_engine(broker, metadata_cache, clock):
    return TransactionEngine(broker, metadata_cache, clock=clock)


@pytest.fixture
def cursor_pager(crypto):
    return CursorPager(CursorCodec(crypto))


@pytest.fixture
def offset_pager():
    return OffsetPager()
