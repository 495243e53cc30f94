from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import audit, events
from dealflow.context import get_correlation_id, reset_correlation_id, set_correlation_id
from dealflow.core.database import Base, get_db
from dealflow.deals.api import get_deal_context
from dealflow.deals.context import DealContext
from dealflow.logging import JsonLogFormatter
from dealflow.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_deal_context(request: Request) -> DealContext:
        return DealContext(
            tenant_id="tenant-log",
            user_id="user-1",
            correlation_id=get_correlation_id(),
            permissions={"pipelines.manage", "deals.read", "deals.write"},
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_deal_context] = override_get_deal_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "dealflow.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_stage_change_logs_carry_deal_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    pipeline = client.post("/api/pipelines", json={"name": "Log Pipeline"})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]
    first = client.post(f"/api/pipelines/{pipeline_id}/stages", json={"name": "Open", "display_order": 1})
    second = client.post(f"/api/pipelines/{pipeline_id}/stages", json={"name": "Next", "display_order": 2})

    deal = client.post(
        "/api/deals",
        json={
            "pipeline_id": pipeline_id,
            "stage_id": first.json()["id"],
            "name": "Log Deal",
            "expected_close_date": (date.today() + timedelta(days=1)).isoformat(),
        },
    )
    assert deal.status_code == 201

    moved = client.post(
        f"/api/deals/{deal.json()['id']}/stage",
        json={"stage_id": second.json()["id"]},
        headers={"X-Correlation-Id": "corr-log-move"},
    )
    assert moved.status_code == 200

    stage_records = [record for record in caplog.records if record.name == "dealflow.deals" and record.getMessage() == "deal_stage_changed"]
    assert stage_records
    record = stage_records[-1]
    assert getattr(record, "correlation_id", None) == "corr-log-move"
    assert getattr(record, "deal_id", None) == deal.json()["id"]
    assert getattr(record, "from_stage_id", None) == first.json()["id"]
    assert getattr(record, "tenant_id", None) == "tenant-log"


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("corr-format")
    try:
        record = logging.getLogger("dealflow.test").makeRecord(
            "dealflow.test",
            logging.INFO,
            __file__,
            1,
            "deal_created",
            None,
            None,
            extra={"deal_id": "d-1", "secret": "hidden", "error": "x" * 600},
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "deal_created"
    assert payload["correlation_id"] == "corr-format"
    assert payload["fields"]["deal_id"] == "d-1"
    assert "secret" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
