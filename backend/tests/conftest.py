"""Pytest configuration and fixtures."""

import asyncio
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet

# Settings are read at import time; configure the environment first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["ENABLE_SCHEDULER"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import schoolsync.models  # noqa: F401
from schoolsync.connectors import ConnectorFactory
from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext
from schoolsync.database import Base, get_db
from schoolsync.main import app
from schoolsync.models.node import Node, NodeSchool
from schoolsync.models.school_config import SchoolConfig
from schoolsync.services.run_ledger import RunLedger
from schoolsync.services.sync_runs import SyncRunService, get_sync_run_service
from schoolsync.utils.encrypt import encrypt_credentials


@pytest.fixture(name="session_factory")
def session_factory_fixture():
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(name="db")
def db_fixture(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ledger(session_factory) -> RunLedger:
    return RunLedger(session_factory)


class Seeder:
    """Inserts nodes, node/school registrations and school configs."""

    def __init__(self, db):
        self.db = db

    def node(self, node_id: str, parent: Optional[str] = None, name: Optional[str] = None) -> Node:
        node = Node(node_id=node_id, parent_node_id=parent, name=name or node_id)
        self.db.add(node)
        self.db.commit()
        return node

    def register(self, node_id: str, school_id: str, source: str) -> NodeSchool:
        row = NodeSchool(node_id=node_id, school_id=school_id, school_source=source)
        self.db.add(row)
        self.db.commit()
        return row

    def config(self, source: str, school_name: str, school_id: Optional[str], country: Optional[str] = None,
               is_active: bool = True, base_url: Optional[str] = None) -> SchoolConfig:
        credentials = {"api_token": "mb-token"} if source == "mb" else {"client_id": "cid", "client_secret": "secret"}
        config = SchoolConfig(
            source=source,
            school_name=school_name,
            school_id=school_id,
            base_url=base_url or ("https://api.managebac.com" if source == "mb" else "https://nex.example.com"),
            credentials=encrypt_credentials(credentials),
            country=country,
            is_active=is_active,
        )
        self.db.add(config)
        self.db.commit()
        self.db.refresh(config)
        return config


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


def make_system(config_id: int, source: str, school_id: Optional[str] = None, name: Optional[str] = None) -> SystemConfig:
    return SystemConfig(
        config_id=config_id,
        source=source,
        school_id=school_id or f"{source}-{config_id}",
        school_name=name or f"School {source}-{config_id}",
        credentials={},
    )


@pytest.fixture
def system_factory() -> Callable[..., SystemConfig]:
    return make_system


@dataclass
class Call:
    source: str
    school_id: str
    endpoint: str
    start: int
    end: int
    connector_id: int
    failed: bool


class CallRecorder:
    """Shared log of fake connector activity, ordered by a logical clock."""

    def __init__(self):
        self.calls: List[Call] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.delays: Dict[Tuple[str, str], float] = {}
        self.default_delay = 0.0
        self.after_each: Optional[Callable[[SystemConfig, str], None]] = None
        self.instances: List["FakeConnector"] = []
        self.closed = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._clock = 0

    def tick(self) -> int:
        self._clock += 1
        return self._clock

    def fail(self, school_id: str, endpoint: str, error: Optional[Exception] = None) -> None:
        self.failures[(school_id, endpoint)] = error or RuntimeError(f"{endpoint} exploded")

    def calls_for(self, school_id: str) -> List[Call]:
        return [c for c in self.calls if c.school_id == school_id]


class FakeConnector(BaseConnector):
    """Connector double: sleeps, optionally fails, and records every call."""

    def __init__(self, recorder: CallRecorder, source: str):
        self.source = source
        self.endpoints = ()
        self.recorder = recorder
        recorder.instances.append(self)

    async def run_endpoint(self, system: SystemConfig, endpoint: str, context: SyncContext) -> int:
        recorder = self.recorder
        key = (system.school_id, endpoint)
        start = recorder.tick()
        recorder.in_flight += 1
        recorder.max_in_flight = max(recorder.max_in_flight, recorder.in_flight)
        failed = key in recorder.failures
        try:
            await asyncio.sleep(recorder.delays.get(key, recorder.default_delay))
            if failed:
                raise recorder.failures[key]
        finally:
            recorder.in_flight -= 1
            recorder.calls.append(Call(system.source, system.school_id, endpoint, start, recorder.tick(),
                                       id(self), failed))
        if recorder.after_each is not None:
            recorder.after_each(system, endpoint)
        return 1

    async def validate_connection(self, system: SystemConfig) -> bool:
        return True

    async def aclose(self) -> None:
        self.recorder.closed += 1


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder()


@pytest.fixture
def connector_types(recorder) -> Dict[str, Callable[..., BaseConnector]]:
    return {
        "mb": lambda config: FakeConnector(recorder, "mb"),
        "nex": lambda config: FakeConnector(recorder, "nex"),
    }


@pytest.fixture
def connector_factory(connector_types) -> ConnectorFactory:
    return ConnectorFactory(connector_types=connector_types)


@pytest.fixture
def context() -> SyncContext:
    return SyncContext(academic_year="2024", start_date="2024-01-01", end_date="2024-12-31", record_store=None)


@pytest.fixture
def sync_run_service(session_factory, connector_factory) -> SyncRunService:
    from schoolsync.services.run_registry import ActiveRunRegistry
    return SyncRunService(session_factory, connector_factory, registry=ActiveRunRegistry())


@pytest.fixture(name="client")
def client_fixture(session_factory, sync_run_service):
    """Test client wired to the test database and fake connectors."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_run_service] = lambda: sync_run_service
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
