import asyncio
from typing import Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from vcheck.core.database import create_db_and_tables
from vcheck.core.security import encrypt_credentials
from vcheck.models import CheckDefinition, Host, HostProfile, HostType, VCenter
from vcheck.schemas import CheckEngineResult
from vcheck.services.engines.base import CheckEngine
from vcheck.services.store import CheckStore


class FakeEngine(CheckEngine):
    """Scriptable engine that counts calls and concurrently running executions."""

    def __init__(
        self,
        execution_type: str = "PowerCLI",
        result: Optional[CheckEngineResult] = None,
        delay: float = 0.0,
        raises: Optional[Exception] = None,
    ):
        self.execution_type = execution_type
        self.result = result or CheckEngineResult(success=True, output="ok")
        self.delay = delay
        self.raises = raises
        self.calls = 0
        self.validate_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled = 0
        self.signals = []

    async def execute(self, host, definition, vcenter, cancel=None):
        self.calls += 1
        self.signals.append(cancel)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.raises:
                raise self.raises
            return self.result.model_copy()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1

    async def validate(self, host, definition, vcenter, cancel=None):
        self.validate_calls += 1
        return CheckEngineResult(success=True, output="sample", warnings=["advisory"])

    async def is_available(self):
        return True


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def store(db_engine):
    return CheckStore(db_engine)


@pytest.fixture
def vcenter(db_session):
    vc = VCenter(
        name="vc01",
        url="https://vc01.lab.local",
        encrypted_credentials=encrypt_credentials("administrator@vsphere.local", "Secret123!"),
    )
    db_session.add(vc)
    db_session.commit()
    db_session.refresh(vc)
    return vc


@pytest.fixture
def host(db_session, vcenter):
    h = Host(
        name="esx01.lab.local",
        ip_address="10.0.0.11",
        mo_id="host-11",
        cluster_name="Prod",
        vcenter_id=vcenter.id,
        host_type=HostType.STANDARD,
    )
    db_session.add(h)
    db_session.commit()
    db_session.refresh(h)
    return h


@pytest.fixture
def make_definition():
    def _make(**overrides) -> CheckDefinition:
        values = dict(
            id=1,
            name="Disk Space",
            category="Storage",
            execution_type="PowerCLI",
            script="Get-Datastore",
            timeout_seconds=30,
        )
        values.update(overrides)
        return CheckDefinition(**values)
    return _make


@pytest.fixture
def add_definition(db_session):
    def _add(**overrides) -> CheckDefinition:
        values = dict(name="CPU Ready", execution_type="PowerCLI", script="Get-Stat", timeout_seconds=30)
        values.update(overrides)
        definition = CheckDefinition(**values)
        db_session.add(definition)
        db_session.commit()
        db_session.refresh(definition)
        return definition
    return _add


@pytest.fixture
def add_profile(db_session):
    def _add(host_type: HostType, check_ids: list[int], enabled: bool = True) -> HostProfile:
        profile = HostProfile(name=host_type.value, host_type=host_type, check_ids=check_ids, enabled=enabled)
        db_session.add(profile)
        db_session.commit()
        db_session.refresh(profile)
        return profile
    return _add
