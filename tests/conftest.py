"""Shared fixtures: temporary sqlite store, local document folder, fake helpdesk."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from customs_backend.api import create_app
from customs_backend.config import Settings
from customs_backend.schemas import DeclarationIn
from customs_backend.services.data_layer import DeclarationStore
from customs_backend.services.documents import LocalDocumentStore

SYNC_SECRET = "test-sync-secret"


class StepClock:
    """Clock that moves forward one second per call."""

    def __init__(self, start: datetime = datetime(2026, 2, 17, 16, 40, 0)):
        self.current = start

    def __call__(self) -> str:
        self.current += timedelta(seconds=1)
        return self.current.isoformat(timespec="microseconds")

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeTicketing:
    """In-memory helpdesk. Records the ticket status seen at call time."""

    def __init__(self, store: DeclarationStore | None = None, ticket_id: int = 55):
        self.store = store
        self.ticket_id = ticket_id
        self.error: Exception | None = None
        self.calls: list[int] = []
        self.status_during_call: list[str] = []

    def create_ticket(self, declaration) -> int:
        self.calls.append(declaration.declaration_id)
        if self.store is not None:
            current = self.store.get_by_id(declaration.declaration_id)
            self.status_during_call.append(current.ticket_status.value)
        if self.error is not None:
            raise self.error
        return self.ticket_id


def make_record(declaration_id: int, **fields) -> DeclarationIn:
    data = {"declarationId": declaration_id}
    data.update(fields)
    return DeclarationIn.model_validate(data)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(tmp_path, clock):
    store = DeclarationStore(tmp_path / "declarations.db", clock=clock)
    store.init_schema()
    return store


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_path=tmp_path / "desk.db",
        documents_dir=tmp_path / "documents",
        sync_secret=SYNC_SECRET,
    )


@pytest.fixture
def ticketing():
    return FakeTicketing()


@pytest.fixture
def app(settings, ticketing, tmp_path):
    application = create_app(
        settings,
        ticketing=ticketing,
        documents=LocalDocumentStore(tmp_path / "documents"),
    )
    ticketing.store = application.state.store
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sync_headers():
    return {"x-sync-secret": SYNC_SECRET}
