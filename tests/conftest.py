import os
import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_JSON", "false")
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
# adapter retries must not sleep in tests
os.environ["ADAPTER_BACKOFF_BASE_SECONDS"] = "0"
os.environ["ADAPTER_BACKOFF_MAX_SECONDS"] = "0"
os.environ["WEBHOOK_SECRET"] = ""

from integration_engine.config import reset_settings  # noqa: E402
from integration_engine.infrastructure import db  # noqa: E402
from integration_engine.infrastructure.db import Base  # noqa: E402
from integration_engine.models import tables  # noqa: E402,F401
from integration_engine.connectors.base import AdapterRegistry  # noqa: E402
from integration_engine.connectors.memory import InMemoryAdapter  # noqa: E402
from integration_engine.engine import build_engine  # noqa: E402
from integration_engine.infrastructure.storage import Storage  # noqa: E402
from integration_engine.models.enums import ConnectorType  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kw) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kw)
        return self.now


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture()
def sql_engine(tmp_path):
    # file backed so worker threads share one database
    e = create_engine(f"sqlite:///{tmp_path / 'engine.db'}", connect_args={"check_same_thread": False})
    db.override_engine(e)
    Base.metadata.create_all(e)
    yield e
    Base.metadata.drop_all(e)
    e.dispose()


@pytest.fixture()
def storage(sql_engine):
    return Storage()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def adapters():
    reg = AdapterRegistry()
    reg.register(InMemoryAdapter.provider, InMemoryAdapter)
    return reg


@pytest.fixture()
def engine(storage, clock, adapters):
    return build_engine(storage=storage, clock=clock, adapters=adapters, rng=random.Random(7))


@pytest.fixture()
def make_connector(engine):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        payload = {
            "name": f"memory-{counter['n']}",
            "type": ConnectorType.IDENTITY_PROVIDER,
            "provider": "memory",
            "config": {"version": "1.0.0"},
            "sync_interval": 600,
            **overrides,
        }
        return engine.registry.register(payload)

    return _make


@pytest.fixture()
def adapter_for(engine):
    def _get(connector) -> InMemoryAdapter:
        return engine.adapters.for_connector(connector)

    return _get
