from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.core.database import Base
from dealflow.deals.context import DealContext
from dealflow.deals.errors import ValidationFailedError
from dealflow.deals.forecast import ForecastService, build_forecast, month_window, quarter_window
from dealflow.deals.models import Deal, Pipeline, PipelineStage


PIPELINE_ID = uuid.uuid4()
OPEN_STAGE_ID = uuid.uuid4()
WON_STAGE_ID = uuid.uuid4()


def _deal(
    amount: str | None,
    probability: str | None,
    *,
    close: date = date(2026, 2, 10),
    currency: str = "USD",
    is_closed: bool = False,
    is_won: bool = False,
    stage_id: uuid.UUID = OPEN_STAGE_ID,
    owner_id: uuid.UUID | None = None,
) -> Deal:
    return Deal(
        id=uuid.uuid4(),
        tenant_id="tenant-a",
        pipeline_id=PIPELINE_ID,
        stage_id=stage_id,
        name="Forecast deal",
        amount=Decimal(amount) if amount is not None else None,
        currency=currency,
        probability=Decimal(probability) if probability is not None else None,
        is_closed=is_closed,
        is_won=is_won,
        expected_close_date=close,
        owner_id=owner_id,
        tags=[],
        custom_fields={},
    )


def test_currency_filter_and_tiers() -> None:
    start, end = quarter_window(2026, 1)
    deals = [_deal("1000", "80"), _deal("500", "50", currency="EUR")]

    forecast = build_forecast(deals, start, end, currency="USD")

    assert forecast.total_deals == 1
    assert forecast.total_pipeline_value == Decimal("1000")
    assert forecast.total_weighted_value == Decimal("800")
    assert forecast.committed_value == Decimal("1000")
    assert forecast.best_case_value == Decimal("1000")
    assert forecast.worst_case_value == Decimal("0")
    assert forecast.currency == "USD"


def test_high_probability_counts_in_every_tier() -> None:
    forecast = build_forecast([_deal("400", "95")], date(2026, 1, 1), date(2026, 3, 31))

    assert forecast.committed_value == Decimal("400")
    assert forecast.best_case_value == Decimal("400")
    assert forecast.worst_case_value == Decimal("400")


def test_tier_boundaries_are_inclusive() -> None:
    deals = [_deal("100", "25"), _deal("200", "75"), _deal("300", "90"), _deal("50", "24.99")]

    forecast = build_forecast(deals, date(2026, 1, 1), date(2026, 3, 31))

    assert forecast.best_case_value == Decimal("600")
    assert forecast.committed_value == Decimal("500")
    assert forecast.worst_case_value == Decimal("300")


def test_empty_window_yields_zero_totals() -> None:
    forecast = build_forecast([_deal("1000", "80", close=date(2026, 6, 1))], date(2026, 1, 1), date(2026, 3, 31))

    assert forecast.total_deals == 0
    assert forecast.total_pipeline_value == Decimal("0")
    assert forecast.total_weighted_value == Decimal("0")
    assert forecast.committed_value == Decimal("0")
    assert forecast.by_pipeline == []
    assert forecast.by_stage == []
    assert forecast.by_owner == []
    assert forecast.by_month == []


def test_missing_probability_and_amount_contribute_nothing_weighted() -> None:
    deals = [_deal("1000", None), _deal(None, "60"), _deal("200", "40")]

    forecast = build_forecast(deals, date(2026, 1, 1), date(2026, 3, 31))

    assert forecast.total_deals == 3
    assert forecast.total_pipeline_value == Decimal("1200")
    assert forecast.total_weighted_value == Decimal("80")
    assert forecast.best_case_value == Decimal("200")
    stage_row = forecast.by_stage[0]
    assert stage_row.deal_count == 3
    assert stage_row.average_probability == Decimal("50.00")


def test_outcome_counts_and_win_rate() -> None:
    deals = [
        _deal("100", "30"),
        _deal("200", "100", is_closed=True, is_won=True, stage_id=WON_STAGE_ID),
        _deal("300", "100", is_closed=True, is_won=True, stage_id=WON_STAGE_ID),
        _deal("400", "0", is_closed=True),
    ]

    forecast = build_forecast(deals, date(2026, 1, 1), date(2026, 3, 31))

    assert (forecast.open_deals, forecast.won_deals, forecast.lost_deals) == (1, 2, 1)
    pipeline_row = forecast.by_pipeline[0]
    assert pipeline_row.win_rate == Decimal("66.67")
    assert pipeline_row.average_deal_size == Decimal("250.00")


def test_win_rate_is_absent_without_closed_deals() -> None:
    forecast = build_forecast([_deal("100", "30")], date(2026, 1, 1), date(2026, 3, 31))

    assert forecast.by_pipeline[0].win_rate is None


def test_owner_and_month_breakdowns() -> None:
    owner = uuid.uuid4()
    deals = [
        _deal("100", "50", owner_id=owner, close=date(2026, 1, 5)),
        _deal("300", "100", owner_id=owner, close=date(2026, 3, 20)),
        _deal("50", "40", close=date(2026, 3, 1)),
    ]

    forecast = build_forecast(deals, date(2026, 1, 1), date(2026, 3, 31))

    owners = {row.owner_id: row for row in forecast.by_owner}
    assert owners[owner].total_value == Decimal("400")
    assert owners[owner].quota is None
    assert owners[None].deal_count == 1

    assert [row.month for row in forecast.by_month] == ["2026-01", "2026-03"]
    march = forecast.by_month[1]
    assert march.month_start == date(2026, 3, 1)
    assert march.month_end == date(2026, 3, 31)
    assert march.deal_count == 2
    assert march.expected_closures == 1


def test_pipeline_filter_excludes_other_pipelines() -> None:
    other = _deal("700", "50")
    other.pipeline_id = uuid.uuid4()

    forecast = build_forecast([_deal("100", "50"), other], date(2026, 1, 1), date(2026, 3, 31), pipeline_id=PIPELINE_ID)

    assert forecast.total_pipeline_value == Decimal("100")
    assert forecast.pipeline_id == PIPELINE_ID


def test_windows() -> None:
    assert quarter_window(2024, 1) == (date(2024, 1, 1), date(2024, 3, 31))
    assert quarter_window(2026, 4) == (date(2026, 10, 1), date(2026, 12, 31))
    assert month_window(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))

    with pytest.raises(ValidationFailedError) as quarter_exc:
        quarter_window(2026, 0)
    assert quarter_exc.value.code == "INVALID_QUARTER"

    with pytest.raises(ValidationFailedError) as month_exc:
        month_window(2026, 13)
    assert month_exc.value.code == "INVALID_MONTH"


@pytest.mark.parametrize("year", [0, 10000])
def test_windows_reject_years_outside_calendar(year: int) -> None:
    with pytest.raises(ValidationFailedError) as quarter_exc:
        quarter_window(year, 1)
    assert quarter_exc.value.code == "INVALID_YEAR"

    with pytest.raises(ValidationFailedError) as month_exc:
        month_window(year, 1)
    assert month_exc.value.code == "INVALID_YEAR"
    assert month_exc.value.details == {"year": year}


def test_inverted_range_is_rejected() -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        build_forecast([], date(2026, 3, 31), date(2026, 1, 1))

    assert exc_info.value.code == "INVALID_DATE_RANGE"


def test_aggregation_does_not_mutate_deals() -> None:
    deal = _deal("1000", "80")

    build_forecast([deal], date(2026, 1, 1), date(2026, 3, 31))

    assert deal.amount == Decimal("1000")
    assert deal.probability == Decimal("80")
    assert deal.is_closed is False


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


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, uuid.UUID]:
    pipeline = Pipeline(tenant_id="tenant-a", name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    open_stage = PipelineStage(pipeline_id=pipeline.id, name="Negotiation", display_order=1)
    won_stage = PipelineStage(pipeline_id=pipeline.id, name="Won", display_order=2, is_closed=True, is_won=True)
    db_session.add_all([open_stage, won_stage])
    db_session.flush()

    owner_id = uuid.uuid4()
    rows = [
        ("Q1 USD", Decimal("1000"), "USD", Decimal("80"), date(2026, 2, 10), open_stage.id, False, False),
        ("Q1 EUR", Decimal("500"), "EUR", Decimal("50"), date(2026, 2, 11), open_stage.id, False, False),
        ("Q1 won", Decimal("250"), "USD", Decimal("100"), date(2026, 3, 3), won_stage.id, True, True),
        ("Q2 USD", Decimal("900"), "USD", Decimal("90"), date(2026, 4, 2), open_stage.id, False, False),
    ]
    for name, amount, currency, probability, close, stage_id, is_closed, is_won in rows:
        db_session.add(
            Deal(
                tenant_id="tenant-a",
                pipeline_id=pipeline.id,
                stage_id=stage_id,
                name=name,
                amount=amount,
                currency=currency,
                probability=probability,
                expected_close_date=close,
                is_closed=is_closed,
                is_won=is_won,
                owner_id=owner_id,
                tags=[],
                custom_fields={},
            )
        )
    db_session.add(
        Deal(
            tenant_id="tenant-b",
            pipeline_id=pipeline.id,
            stage_id=open_stage.id,
            name="Other tenant",
            amount=Decimal("99999"),
            currency="USD",
            probability=Decimal("99"),
            expected_close_date=date(2026, 2, 1),
            tags=[],
            custom_fields={},
        )
    )
    db_session.commit()
    return {"pipeline": pipeline.id, "open_stage": open_stage.id, "won_stage": won_stage.id, "owner": owner_id}


def test_quarterly_forecast_from_storage(db_session: Session, seeded: dict[str, uuid.UUID]) -> None:
    ctx = DealContext(tenant_id="tenant-a", user_id="analyst")

    forecast = ForecastService().generate_quarterly_forecast(db_session, ctx, 2026, 1, currency="USD")

    assert forecast.period_start == date(2026, 1, 1)
    assert forecast.period_end == date(2026, 3, 31)
    assert forecast.total_deals == 2
    assert forecast.total_pipeline_value == Decimal("1250")
    assert forecast.won_deals == 1
    assert {row.stage_name for row in forecast.by_stage} == {"Negotiation", "Won"}
    assert forecast.by_pipeline[0].pipeline_name == "Sales"


def test_open_only_forecast(db_session: Session, seeded: dict[str, uuid.UUID]) -> None:
    ctx = DealContext(tenant_id="tenant-a", user_id="analyst")

    forecast = ForecastService().generate_forecast(
        db_session,
        ctx,
        date(2026, 1, 1),
        date(2026, 3, 31),
        include_closed=False,
    )

    assert forecast.total_deals == 2
    assert forecast.won_deals == 0
    assert forecast.currency is None


def test_monthly_forecast_uses_resolved_owner_names(db_session: Session, seeded: dict[str, uuid.UUID]) -> None:
    ctx = DealContext(tenant_id="tenant-a", user_id="analyst")
    service = ForecastService(owner_name_resolver=lambda owner_id: "Dana Rep")

    forecast = service.generate_monthly_forecast(db_session, ctx, 2026, 4)

    assert forecast.total_deals == 1
    assert forecast.worst_case_value == Decimal("900")
    assert forecast.by_owner[0].owner_name == "Dana Rep"


def test_owner_resolver_failure_is_tolerated(
    db_session: Session,
    seeded: dict[str, uuid.UUID],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="dealflow.forecast")

    def failing_resolver(owner_id: uuid.UUID) -> str | None:
        raise RuntimeError("directory offline")

    ctx = DealContext(tenant_id="tenant-a", user_id="analyst")
    forecast = ForecastService(owner_name_resolver=failing_resolver).generate_quarterly_forecast(db_session, ctx, 2026, 1)

    assert forecast.total_deals == 3
    assert forecast.by_owner[0].owner_name is None
    assert any(record.getMessage() == "forecast_owner_name_unavailable" for record in caplog.records)
