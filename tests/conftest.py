import os
import tempfile

os.environ.setdefault("LOG_PATH", tempfile.mkdtemp())
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sync_service.client import EventBus, FunctionContext
from sync_service.db import Base
from sync_service.functions import register_functions


@pytest.fixture
def engine():
    engine= create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def bus():
    bus= EventBus(id="quickcart-test", bootstrap_servers="localhost:9092")
    register_functions(bus)
    return bus

@pytest.fixture
def make_ctx(bus, session_factory):
    def _make(event=None, events=None, factory=None):
        return FunctionContext(
            bus=bus,
            session_factory=factory or session_factory,
            event=event,
            events=events or [],
        )
    return _make
