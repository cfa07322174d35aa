"""Shared fixtures: isolated in-memory store and a scripted remote authority."""
import itertools
import threading
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import all models so every table is registered on Base.metadata
from homevisit_sync.models.base import Base
import homevisit_sync.models.patient  # noqa: F401
import homevisit_sync.models.visit  # noqa: F401
import homevisit_sync.models.protocol  # noqa: F401
from homevisit_sync.core.errors import TransientRemoteError
from homevisit_sync.models.registry import EntityType
from homevisit_sync.services.record_store import LocalRecordStore
from homevisit_sync.services.remote_client import DTO_BY_ENTITY, RemoteAuthority, RemoteRecord
from homevisit_sync.services.sync_engine import SyncRunResult


class FakeRemote(RemoteAuthority):
    """In-process stand-in for the backend.

    ``fail_with`` is consulted before every call: a callable receiving
    (operation, entity_type, payload_or_id) and returning an exception to
    raise, or None to let the call through. ``on_call`` runs after the
    server side has been applied but before the result is returned, which
    is where a test simulates a concurrent local edit.
    """

    def __init__(self):
        self.calls = []
        self.server = {et: {} for et in EntityType}
        self.fail_with = None
        self.on_call = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, entity_type, payload):
        entity_type = EntityType(entity_type)
        self._record("create", entity_type, payload)
        with self._lock:
            server_id = f"srv_{entity_type.value}_{next(self._ids)}"
        body = dict(payload, id=server_id)
        self.server[entity_type][server_id] = body
        self._after("create", entity_type, payload)
        return self._result(entity_type, body)

    def update(self, entity_type, server_id, payload):
        entity_type = EntityType(entity_type)
        self._record("update", entity_type, payload, server_id)
        body = dict(payload, id=server_id)
        self.server[entity_type][server_id] = body
        self._after("update", entity_type, payload)
        return self._result(entity_type, body)

    def delete(self, entity_type, server_id):
        entity_type = EntityType(entity_type)
        self._record("delete", entity_type, server_id, server_id)
        self.server[entity_type].pop(server_id, None)
        self._after("delete", entity_type, server_id)

    def calls_for(self, operation=None, entity_type=None):
        return [
            c for c in self.calls
            if (operation is None or c[0] == operation)
            and (entity_type is None or c[1] == EntityType(entity_type))
        ]

    def _record(self, operation, entity_type, payload, server_id=None):
        with self._lock:
            self.calls.append((operation, entity_type, payload, server_id))
        if self.fail_with is not None:
            error = self.fail_with(operation, entity_type, payload)
            if error is not None:
                raise error

    def _after(self, operation, entity_type, payload):
        if self.on_call is not None:
            self.on_call(operation, entity_type, payload)

    @staticmethod
    def _result(entity_type, body):
        dto = DTO_BY_ENTITY[entity_type].model_validate(body)
        return RemoteRecord(server_id=dto.id, fields=dto.canonical_fields(), updated_at=None)


def offline(operation, entity_type, payload):
    return TransientRemoteError("connection refused")


class FakeEngine:
    """Stand-in sync engine: counts runs and lets a test hold a run open with ``gate``."""

    model = object

    def __init__(self, results=None, gate=None, error=None):
        self.store = self
        self.results = list(results or [])
        self.gate = gate
        self.error = error
        self.pending = 0
        self.parked = 0
        self.runs = 0
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def pending_count(self, model):
        return self.pending

    def parked_count(self, model):
        return self.parked

    def run(self, cancel_event=None):
        with self._lock:
            self.runs += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.error is not None:
                raise self.error
            if self.results:
                success, failed = self.results.pop(0)
            else:
                success, failed = 1, 0
            return SyncRunResult(
                success_count=success,
                fail_count=failed,
                cancelled=bool(cancel_event and cancel_event.is_set()),
                finished_at=datetime.now(),
            )
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def test_engine():
    """Provide an isolated in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine)


@pytest.fixture()
def store(session_factory):
    return LocalRecordStore(session_factory)


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def visit_time():
    return datetime(2026, 3, 2, 10, 0)
