from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WHATSAPP_MOCK_MODE", "true")

import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import healz.models  # noqa: F401
from healz.conversation.ports import DeliveryStatus, OutgoingMessage
from healz.db.session import get_db
from healz.main import app, rate_limiter
from healz.models.base import Base
from healz.services.tenancy import create_clinic, create_organization
from healz.wiring import Container, build_container, get_container


class RecordingGateway:
    """Messaging gateway that keeps what it was asked to deliver."""

    def __init__(self) -> None:
        self.sent: list[OutgoingMessage] = []

    def send_message(self, message: OutgoingMessage) -> DeliveryStatus:
        self.sent.append(message)
        return DeliveryStatus(
            message_id=f"wamid-{len(self.sent)}",
            status="sent",
            timestamp=datetime.now(timezone.utc),
            request={"number": message.to, "text": message.content},
            response={"key": {"id": f"wamid-{len(self.sent)}"}},
        )


class FixedIntentDetector:
    def __init__(self, intent: str, confidence: float) -> None:
        self.intent = intent
        self.confidence = confidence
        self.calls: list[str] = []

    def detect_intent(self, message, context=None):
        from healz.conversation.ports import IntentDetection

        self.calls.append(message)
        return IntentDetection(self.intent, self.confidence, {"source": "test"})


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture()
def session(session_factory) -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture()
def enqueued() -> list[tuple[str, dict[str, Any], datetime]]:
    return []


@pytest.fixture()
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture()
def container(gateway, enqueued) -> Container:
    def enqueue(task_name: str, kwargs: dict[str, Any], eta: datetime) -> None:
        enqueued.append((task_name, kwargs, eta))

    return build_container(backend="local", gateway=gateway, enqueue=enqueue)


@pytest.fixture()
def tenant(session_factory) -> dict[str, str]:
    """An organization with one clinic, committed so API requests can see it."""

    with session_factory() as db:
        organization = create_organization(db, name="Clínica Sorriso", slug="sorriso")
        clinic = create_clinic(db, organization_id=organization.id, name="Centro", slug="centro")
        db.commit()
        return {"tenant_id": str(organization.id), "clinic_id": str(clinic.id)}


@pytest.fixture()
def other_tenant(session_factory) -> dict[str, str]:
    with session_factory() as db:
        organization = create_organization(db, name="Outra Clínica", slug="outra")
        clinic = create_clinic(db, organization_id=organization.id, name="Norte", slug="norte")
        db.commit()
        return {"tenant_id": str(organization.id), "clinic_id": str(clinic.id)}


@pytest.fixture()
def client(session_factory, container, monkeypatch) -> Iterator[TestClient]:
    def override_get_db() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    interactions: dict[str, datetime] = {}
    monkeypatch.setattr(
        "healz.main.record_last_interaction",
        lambda phone, timestamp: interactions.__setitem__(phone, timestamp),
    )
    monkeypatch.setattr("healz.main.session_window_open", lambda phone, reference: True)
    monkeypatch.setattr(rate_limiter, "limit", 10_000)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as test_client:
        test_client.interactions = interactions  # type: ignore[attr-defined]
        yield test_client
    app.dependency_overrides.clear()


def tenant_headers(tenant: dict[str, str], user_id: str = "recepcao") -> dict[str, str]:
    return {"X-Tenant-ID": tenant["tenant_id"], "X-User-ID": user_id}


def in_days(days: int, hour: int = 14) -> datetime:
    moment = datetime.now(timezone.utc) + timedelta(days=days)
    return moment.replace(hour=hour, minute=0, second=0, microsecond=0)


def new_id() -> str:
    return str(uuid.uuid4())
