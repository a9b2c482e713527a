from __future__ import annotations

import itertools
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Generator, Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from duesync.core.clock import FixedClock
from duesync.core.database import Base, get_db
from duesync.core.deps import (
    get_adapter_factory,
    get_clock,
    get_dispatcher_factory,
    get_session_factory,
    get_token_revoker,
)
from duesync.exceptions import CalendarEventNotFound
from duesync.main import app
from duesync import models
from duesync.services.calendar_adapter import EventFields, RemoteEvent
from duesync.services.notifications import DeliveryResult, DeliveryStatus, Message


# Monday 2024-03-25 09:00 in Sao Paulo (UTC-3)
NOW = datetime(2024, 3, 25, 12, 0, tzinfo=timezone.utc)


class FakeDispatcher:
    """Records every message; ``status`` decides the outcome of each send."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, Message]] = []
        self.status = DeliveryStatus.DELIVERED
        self.reject_templates = False
        self._lock = threading.Lock()

    def send(self, user_id: int, message: Message) -> DeliveryResult:
        with self._lock:
            self.sent.append((user_id, message))
        if self.reject_templates and message.template is not None:
            return DeliveryResult(DeliveryStatus.TEMPLATE_REJECTED, reason="template paused")
        if self.status != DeliveryStatus.DELIVERED:
            return DeliveryResult(self.status, reason="provider down")
        return DeliveryResult(DeliveryStatus.DELIVERED, provider_message_id=f"wamid.{len(self.sent)}")

    @property
    def texts(self) -> list[str]:
        return [message.text for _, message in self.sent]


class FakeCalendar:
    """In-memory calendar provider.

    ``events`` holds what was pushed; ``remote`` is what ``list_events`` returns.
    Set ``fail_with`` to an exception instance to make every call raise it.
    """

    def __init__(self) -> None:
        self.events: dict[str, EventFields] = {}
        self.remote: list[RemoteEvent] = []
        self.calls: list[tuple[str, str | None]] = []
        self.fail_with: Exception | None = None
        self._ids = itertools.count(1)

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def create_event(self, fields: EventFields) -> str:
        self._check()
        remote_id = f"evt{next(self._ids)}"
        self.events[remote_id] = fields
        self.calls.append(("create", remote_id))
        return remote_id

    def update_event(self, remote_id: str, fields: EventFields) -> None:
        self._check()
        self.calls.append(("update", remote_id))
        if remote_id not in self.events:
            raise CalendarEventNotFound(remote_id)
        self.events[remote_id] = fields

    def delete_event(self, remote_id: str) -> None:
        self._check()
        self.calls.append(("delete", remote_id))
        if self.events.pop(remote_id, None) is None:
            raise CalendarEventNotFound(remote_id)

    def list_events(self, since: datetime, until: datetime | None = None) -> list[RemoteEvent]:
        self._check()
        self.calls.append(("list", None))
        return list(self.remote)


def remote_event(remote_id: str, start: datetime, *, updated: datetime, **overrides) -> RemoteEvent:
    values = {
        "remote_id": remote_id,
        "title": "Remote meeting",
        "start": start,
        "end": start + timedelta(hours=1),
        "updated": updated,
    }
    values.update(overrides)
    return RemoteEvent(**values)


@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    # temp file so worker threads share the database
    fd, path = tempfile.mkstemp(prefix="duesync_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    try:
        os.remove(path)
    except OSError:
        pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(eng, "connect")
    def _sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(engine, session_factory) -> Generator[Any, Any, Any]:
    session = session_factory()
    # seed: demo user(1) in Sao Paulo with a phone number, agenda off
    user = models.User(email="demo@example.com", is_active=True)
    session.add(user)
    session.flush()
    session.add(
        models.UserProfile(
            user_id=user.id,
            display_name="Demo",
            phone_number="5511999990000",
            timezone="America/Sao_Paulo",
            daily_agenda_enabled=False,
        )
    )
    session.commit()

    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            for tbl in reversed(Base.metadata.sorted_tables):
                conn.execute(tbl.delete())
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture()
def user(db_session) -> models.User:
    return db_session.query(models.User).filter_by(email="demo@example.com").one()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture()
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture()
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture()
def adapter_factory(calendar):
    return lambda connection: calendar


@pytest.fixture(autouse=True)
def override_dependency(db_session, session_factory, clock, dispatcher, adapter_factory):
    # FastAPI DI override
    def _get_db_override():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher_factory] = lambda: (lambda db: dispatcher)
    app.dependency_overrides[get_adapter_factory] = lambda: adapter_factory
    app.dependency_overrides[get_token_revoker] = lambda: (lambda token: True)
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
