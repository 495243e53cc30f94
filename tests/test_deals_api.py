from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import audit, events
from dealflow.context import get_correlation_id
from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.deals.api import get_deal_context
from dealflow.deals.context import DealContext
from dealflow.main import app


ALL_PERMISSIONS = {
    "pipelines.manage",
    "pipelines.read",
    "forecasts.read",
    "deals.read",
    "deals.write",
    "deals.delete",
}


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
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[set[str]], None]], None, None]:
    state: dict[str, set[str]] = {"permissions": set(ALL_PERMISSIONS)}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_deal_context(request: Request) -> DealContext:
        return DealContext(
            tenant_id=request.headers.get("x-tenant-id", "tenant-a"),
            user_id="user-1",
            correlation_id=get_correlation_id(),
            permissions=state["permissions"],
        )

    def set_permissions(permissions: set[str]) -> None:
        state["permissions"] = permissions

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_deal_context] = override_get_deal_context
    with TestClient(app) as test_client:
        yield test_client, set_permissions
    app.dependency_overrides.clear()


def _create_pipeline(test_client: TestClient) -> dict[str, str]:
    pipeline = test_client.post("/api/pipelines", json={"name": "Sales", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    stages: dict[str, str] = {"pipeline": pipeline_id}
    for key, body in {
        "qualify": {"name": "Qualify", "display_order": 1, "default_probability": 20, "color": "#3366FF"},
        "commit": {"name": "Commit", "display_order": 2, "default_probability": 95},
        "won": {"name": "Won", "display_order": 3, "default_probability": 100, "is_closed": True, "is_won": True},
    }.items():
        response = test_client.post(f"/api/pipelines/{pipeline_id}/stages", json=body)
        assert response.status_code == 201
        stages[key] = response.json()["id"]
    return stages


def _create_deal(test_client: TestClient, ids: dict[str, str], **overrides) -> dict:  # type: ignore[no-untyped-def]
    body = {
        "pipeline_id": ids["pipeline"],
        "stage_id": ids["qualify"],
        "name": "Acme renewal",
        "amount": "1000",
        "expected_close_date": (date.today() + timedelta(days=10)).isoformat(),
        **overrides,
    }
    response = test_client.post("/api/deals", json=body)
    assert response.status_code == 201
    return response.json()


def test_create_move_and_history(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    deal = _create_deal(test_client, ids)

    assert Decimal(deal["probability"]) == Decimal("20")
    assert Decimal(deal["weighted_amount"]) == Decimal("200")

    moved = test_client.post(
        f"/api/deals/{deal['id']}/stage",
        json={"stage_id": ids["won"], "reason": "Signed"},
        headers={"X-Correlation-Id": "corr-move-1"},
    )
    assert moved.status_code == 200
    body = moved.json()
    assert body["is_closed"] is True
    assert body["is_won"] is True
    assert body["actual_close_date"] == date.today().isoformat()

    history = test_client.get(f"/api/deals/{deal['id']}/history")
    assert history.status_code == 200
    entries = history.json()
    assert [entry["reason"] for entry in entries] == ["Deal created", "Signed"]
    assert entries[0]["from_stage_id"] is None
    assert entries[1]["from_stage_id"] == ids["qualify"]

    closed = [item for item in events.published_events if item["event_type"] == "deals.deal.closed"]
    assert closed
    assert closed[-1]["correlation_id"] == "corr-move-1"


def test_error_envelope_for_unknown_stage(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    deal = _create_deal(test_client, ids)

    response = test_client.post(
        f"/api/deals/{deal['id']}/stage",
        json={"stage_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "corr-missing-stage"},
    )

    assert response.status_code == 404
    payload = response.json()
    assert payload["code"] == "STAGE_NOT_FOUND"
    assert payload["correlation_id"] == "corr-missing-stage"
    assert response.headers.get("x-correlation-id") == "corr-missing-stage"


def test_validation_error_maps_to_422(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)

    response = test_client.post(
        "/api/deals",
        json={
            "pipeline_id": ids["pipeline"],
            "stage_id": ids["qualify"],
            "name": "Backdated",
            "expected_close_date": (date.today() - timedelta(days=1)).isoformat(),
        },
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_CLOSE_DATE"


def test_missing_permission_is_forbidden(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, set_permissions = client
    ids = _create_pipeline(test_client)
    deal = _create_deal(test_client, ids)

    set_permissions({"deals.read"})
    response = test_client.delete(f"/api/deals/{deal['id']}")

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"
    assert test_client.get(f"/api/deals/{deal['id']}").status_code == 200


def test_update_and_delete(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    deal = _create_deal(test_client, ids)

    updated = test_client.patch(f"/api/deals/{deal['id']}", json={"stage_id": ids["commit"], "next_step": "Send MSA"})
    assert updated.status_code == 200
    assert Decimal(updated.json()["probability"]) == Decimal("95")
    assert updated.json()["next_step"] == "Send MSA"

    deleted = test_client.delete(f"/api/deals/{deal['id']}")
    assert deleted.status_code == 204
    assert test_client.get(f"/api/deals/{deal['id']}").status_code == 404


def test_bulk_endpoints(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    close = (date.today() + timedelta(days=5)).isoformat()

    created = test_client.post(
        "/api/deals/bulk",
        json={
            "deals": [
                {"pipeline_id": ids["pipeline"], "stage_id": ids["qualify"], "name": "One", "expected_close_date": close},
                {"pipeline_id": ids["pipeline"], "stage_id": ids["qualify"], "name": "Two", "expected_close_date": close},
            ]
        },
    )
    assert created.status_code == 201
    deal_ids = [item["id"] for item in created.json()]

    moved = test_client.post("/api/deals/bulk/stage", json={"deal_ids": deal_ids, "stage_id": ids["commit"]})
    assert moved.status_code == 200
    assert moved.json() == {"affected": 2}

    by_stage = test_client.get(f"/api/deals/by-stage/{ids['commit']}")
    assert sorted(item["name"] for item in by_stage.json()) == ["One", "Two"]

    owner_id = str(uuid.uuid4())
    owned = test_client.post("/api/deals/bulk/owner", json={"deal_ids": deal_ids, "owner_id": owner_id})
    assert owned.json() == {"affected": 2}
    assert len(test_client.get(f"/api/deals/by-owner/{owner_id}").json()) == 2

    removed = test_client.post("/api/deals/bulk/delete", json={"deal_ids": deal_ids})
    assert removed.json() == {"affected": 2}
    assert test_client.get(f"/api/deals/by-pipeline/{ids['pipeline']}").json() == []


def test_search_endpoint(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    _create_deal(test_client, ids, name="Acme renewal")
    _create_deal(test_client, ids, name="Globex pilot")

    response = test_client.post("/api/deals/search", json={"name": "globex"})
    assert response.status_code == 200
    assert response.json()["total"] == 1
    assert response.json()["items"][0]["name"] == "Globex pilot"

    invalid = test_client.post("/api/deals/search", json={"sort_by": "owner_id"})
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "INVALID_SORT_FIELD"


def test_forecast_endpoints(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)
    close = date.today() + timedelta(days=3)
    _create_deal(test_client, ids, stage_id=ids["commit"], expected_close_date=close.isoformat())
    _create_deal(test_client, ids, currency="EUR", amount="500", expected_close_date=close.isoformat())

    response = test_client.get(
        "/api/deals/forecast",
        params={"start": close.isoformat(), "end": close.isoformat(), "currency": "USD"},
    )
    assert response.status_code == 200
    forecast = response.json()
    assert forecast["total_deals"] == 1
    assert Decimal(forecast["committed_value"]) == Decimal("1000")
    assert Decimal(forecast["worst_case_value"]) == Decimal("1000")
    assert forecast["by_stage"][0]["stage_name"] == "Commit"

    monthly = test_client.get("/api/deals/forecast/monthly", params={"year": close.year, "month": close.month})
    assert monthly.status_code == 200
    assert monthly.json()["total_deals"] == 2
    assert monthly.json()["currency"] is None

    bad_quarter = test_client.get("/api/deals/forecast/quarterly", params={"year": 2026, "quarter": 5})
    assert bad_quarter.status_code == 422
    assert bad_quarter.json()["code"] == "INVALID_QUARTER"

    bad_year = test_client.get("/api/deals/forecast/monthly", params={"year": 10000, "month": 1})
    assert bad_year.status_code == 422
    assert bad_year.json()["code"] == "INVALID_YEAR"


def test_pipeline_endpoints(client: tuple[TestClient, Callable[[set[str]], None]]) -> None:
    test_client, _ = client
    ids = _create_pipeline(test_client)

    default = test_client.get("/api/pipelines/default")
    assert default.status_code == 200
    assert default.json()["id"] == ids["pipeline"]
    assert [stage["name"] for stage in default.json()["stages"]] == ["Qualify", "Commit", "Won"]

    stages = test_client.get(f"/api/pipelines/{ids['pipeline']}/stages")
    assert [stage["display_order"] for stage in stages.json()] == [1, 2, 3]

    duplicate = test_client.post(
        f"/api/pipelines/{ids['pipeline']}/stages",
        json={"name": "Again", "display_order": 2},
    )
    assert duplicate.status_code == 422
    assert duplicate.json()["code"] == "DUPLICATE_STAGE_ORDER"

    missing = test_client.get(f"/api/pipelines/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "PIPELINE_NOT_FOUND"


def test_missing_tenant_header_is_rejected(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get(f"/api/deals/{uuid.uuid4()}")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing x-tenant-id header"
