"""Revenue forecast aggregation over a window of expected close dates.

The aggregation is a pure function of a deal set: :func:`build_forecast` never touches storage
and never mutates a deal. :class:`ForecastService` loads the tenant's deals for the window,
resolves display names best-effort, and delegates to it.
"""

from __future__ import annotations

import calendar
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import MAXYEAR, MINYEAR, date
from decimal import Decimal

from sqlalchemy.orm import Session

from dealflow.deals.context import DealContext
from dealflow.deals.derived import FOUR_PLACES, round_half_up
from dealflow.deals.errors import ValidationFailedError
from dealflow.deals.models import Deal
from dealflow.deals.repository import DealRepository, PipelineRepository
from dealflow.deals.schemas import ForecastRead, MonthForecast, OwnerForecast, PipelineForecast, StageForecast
from dealflow.metrics import observe_forecast
from dealflow.otel import get_tracer


logger = logging.getLogger("dealflow.forecast")
tracer = get_tracer("dealflow.forecast")

COMMITTED_THRESHOLD = Decimal("75")
BEST_CASE_THRESHOLD = Decimal("25")
WORST_CASE_THRESHOLD = Decimal("90")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

OwnerNameResolver = Callable[[uuid.UUID], str | None]


@dataclass(slots=True)
class _Bucket:
    total_value: Decimal = _ZERO
    weighted_value: Decimal = _ZERO
    deal_count: int = 0
    closed_count: int = 0
    won_count: int = 0
    probability_sum: Decimal = _ZERO
    probability_count: int = 0

    def add(self, deal: Deal) -> None:
        self.total_value += deal.amount if deal.amount is not None else _ZERO
        self.weighted_value += deal.weighted_amount
        self.deal_count += 1
        if deal.is_closed:
            self.closed_count += 1
            if deal.is_won:
                self.won_count += 1
        if deal.probability is not None:
            self.probability_sum += deal.probability
            self.probability_count += 1

    @property
    def average_deal_size(self) -> Decimal:
        if self.deal_count == 0:
            return round_half_up(_ZERO)
        return round_half_up(self.total_value / Decimal(self.deal_count))

    @property
    def win_rate(self) -> Decimal | None:
        if self.closed_count == 0:
            return None
        ratio = round_half_up(Decimal(self.won_count) / Decimal(self.closed_count), FOUR_PLACES)
        return ratio * _HUNDRED

    @property
    def average_probability(self) -> Decimal | None:
        if self.probability_count == 0:
            return None
        return round_half_up(self.probability_sum / Decimal(self.probability_count))

    @property
    def expected_closures(self) -> int:
        return int(self.probability_sum / _HUNDRED)


@dataclass(slots=True)
class ForecastNames:
    pipelines: Mapping[uuid.UUID, str] = field(default_factory=dict)
    stages: Mapping[uuid.UUID, str] = field(default_factory=dict)
    owners: Mapping[uuid.UUID, str] = field(default_factory=dict)


def _check_year(year: int) -> None:
    if year < MINYEAR or year > MAXYEAR:
        raise ValidationFailedError(
            f"Year must be between {MINYEAR} and {MAXYEAR}: {year}",
            code="INVALID_YEAR",
            details={"year": year},
        )


def quarter_window(year: int, quarter: int) -> tuple[date, date]:
    _check_year(year)
    if quarter < 1 or quarter > 4:
        raise ValidationFailedError(
            f"Quarter must be between 1 and 4: {quarter}",
            code="INVALID_QUARTER",
            details={"quarter": quarter},
        )
    start_month = (quarter - 1) * 3 + 1
    end_month = start_month + 2
    return date(year, start_month, 1), date(year, end_month, calendar.monthrange(year, end_month)[1])


def month_window(year: int, month: int) -> tuple[date, date]:
    _check_year(year)
    if month < 1 or month > 12:
        raise ValidationFailedError(
            f"Month must be between 1 and 12: {month}",
            code="INVALID_MONTH",
            details={"month": month},
        )
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def _in_window(deal: Deal, start: date, end: date, pipeline_id: uuid.UUID | None, currency: str | None) -> bool:
    if deal.expected_close_date is None or not start <= deal.expected_close_date <= end:
        return False
    if pipeline_id is not None and deal.pipeline_id != pipeline_id:
        return False
    if currency is not None and deal.currency != currency:
        return False
    return True


def _month_rows(deals: list[Deal], start: date, end: date) -> list[MonthForecast]:
    buckets: dict[tuple[int, int], _Bucket] = {}
    for deal in deals:
        close_date = deal.expected_close_date
        if close_date is None:
            continue
        buckets.setdefault((close_date.year, close_date.month), _Bucket()).add(deal)

    rows: list[MonthForecast] = []
    cursor = start.replace(day=1)
    while cursor <= end:
        bucket = buckets.get((cursor.year, cursor.month))
        if bucket is not None and bucket.deal_count > 0:
            last_day = date(cursor.year, cursor.month, calendar.monthrange(cursor.year, cursor.month)[1])
            rows.append(
                MonthForecast(
                    month=f"{cursor.year:04d}-{cursor.month:02d}",
                    month_start=cursor,
                    month_end=min(last_day, end),
                    total_value=bucket.total_value,
                    weighted_value=bucket.weighted_value,
                    deal_count=bucket.deal_count,
                    expected_closures=bucket.expected_closures,
                )
            )
        cursor = date(cursor.year + 1, 1, 1) if cursor.month == 12 else date(cursor.year, cursor.month + 1, 1)
    return rows


def build_forecast(
    deals: Iterable[Deal],
    start: date,
    end: date,
    *,
    pipeline_id: uuid.UUID | None = None,
    currency: str | None = None,
    names: ForecastNames | None = None,
) -> ForecastRead:
    """Aggregate ``deals`` whose expected close date falls in ``[start, end]``.

    Scenario tiers are independent: a deal at 95% counts toward committed, best case and
    worst case alike. Deals without a probability add nothing to weighted sums or tiers and
    are left out of average-probability denominators.
    """
    if end < start:
        raise ValidationFailedError(
            "Forecast end date must not precede start date",
            code="INVALID_DATE_RANGE",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    resolved_names = names or ForecastNames()
    selected = [deal for deal in deals if _in_window(deal, start, end, pipeline_id, currency)]

    totals = _Bucket()
    committed = best_case = worst_case = _ZERO
    open_count = won = lost = 0
    by_pipeline: dict[uuid.UUID, _Bucket] = {}
    by_stage: dict[uuid.UUID, _Bucket] = {}
    by_owner: dict[uuid.UUID | None, _Bucket] = {}

    for deal in selected:
        totals.add(deal)
        amount = deal.amount if deal.amount is not None else _ZERO
        if deal.probability is not None:
            if deal.probability >= COMMITTED_THRESHOLD:
                committed += amount
            if deal.probability >= BEST_CASE_THRESHOLD:
                best_case += amount
            if deal.probability >= WORST_CASE_THRESHOLD:
                worst_case += amount
        if deal.is_open:
            open_count += 1
        elif deal.is_lost:
            lost += 1
        else:
            won += 1

        by_pipeline.setdefault(deal.pipeline_id, _Bucket()).add(deal)
        by_stage.setdefault(deal.stage_id, _Bucket()).add(deal)
        by_owner.setdefault(deal.owner_id, _Bucket()).add(deal)

    return ForecastRead(
        period_start=start,
        period_end=end,
        pipeline_id=pipeline_id,
        currency=currency,
        total_pipeline_value=totals.total_value,
        total_weighted_value=totals.weighted_value,
        committed_value=committed,
        best_case_value=best_case,
        worst_case_value=worst_case,
        total_deals=len(selected),
        open_deals=open_count,
        won_deals=won,
        lost_deals=lost,
        by_pipeline=[
            PipelineForecast(
                pipeline_id=key,
                pipeline_name=resolved_names.pipelines.get(key),
                total_value=bucket.total_value,
                weighted_value=bucket.weighted_value,
                deal_count=bucket.deal_count,
                average_deal_size=bucket.average_deal_size,
                win_rate=bucket.win_rate,
            )
            for key, bucket in by_pipeline.items()
        ],
        by_stage=[
            StageForecast(
                stage_id=key,
                stage_name=resolved_names.stages.get(key),
                total_value=bucket.total_value,
                weighted_value=bucket.weighted_value,
                deal_count=bucket.deal_count,
                average_probability=bucket.average_probability,
            )
            for key, bucket in by_stage.items()
        ],
        by_owner=[
            OwnerForecast(
                owner_id=key,
                owner_name=resolved_names.owners.get(key) if key is not None else None,
                total_value=bucket.total_value,
                weighted_value=bucket.weighted_value,
                deal_count=bucket.deal_count,
            )
            for key, bucket in by_owner.items()
        ],
        by_month=_month_rows(selected, start, end),
    )


@dataclass(slots=True)
class ForecastService:
    deal_repository: DealRepository = DealRepository()
    pipeline_repository: PipelineRepository = PipelineRepository()
    owner_name_resolver: OwnerNameResolver | None = None

    def generate_forecast(
        self,
        session: Session,
        ctx: DealContext,
        start: date,
        end: date,
        *,
        pipeline_id: uuid.UUID | None = None,
        currency: str | None = None,
        include_closed: bool = True,
    ) -> ForecastRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("deals.generate_forecast") as span:
            span.set_attribute("tenant_id", ctx.tenant_id)
            span.set_attribute("period_start", start.isoformat())
            span.set_attribute("period_end", end.isoformat())
            deals = list(
                self.deal_repository.list_by(
                    session,
                    ctx.tenant_id,
                    pipeline_ids=[pipeline_id] if pipeline_id is not None else None,
                    close_from=start,
                    close_to=end,
                    currency=currency,
                    include_closed=include_closed,
                )
            )
            names = self._resolve_names(session, ctx, deals)
            forecast = build_forecast(deals, start, end, pipeline_id=pipeline_id, currency=currency, names=names)
            span.set_attribute("deal_count", forecast.total_deals)

        observe_forecast(time.perf_counter() - started, forecast.total_deals)
        logger.info("forecast_generated", extra={"tenant_id": ctx.tenant_id, "count": forecast.total_deals})
        return forecast

    def generate_quarterly_forecast(
        self,
        session: Session,
        ctx: DealContext,
        year: int,
        quarter: int,
        *,
        pipeline_id: uuid.UUID | None = None,
        currency: str | None = None,
    ) -> ForecastRead:
        start, end = quarter_window(year, quarter)
        return self.generate_forecast(session, ctx, start, end, pipeline_id=pipeline_id, currency=currency)

    def generate_monthly_forecast(
        self,
        session: Session,
        ctx: DealContext,
        year: int,
        month: int,
        *,
        pipeline_id: uuid.UUID | None = None,
        currency: str | None = None,
    ) -> ForecastRead:
        start, end = month_window(year, month)
        return self.generate_forecast(session, ctx, start, end, pipeline_id=pipeline_id, currency=currency)

    def _resolve_names(self, session: Session, ctx: DealContext, deals: list[Deal]) -> ForecastNames:
        names = ForecastNames()
        pipeline_ids = sorted({deal.pipeline_id for deal in deals}, key=str)
        stage_ids = sorted({deal.stage_id for deal in deals}, key=str)
        try:
            names.pipelines = self.pipeline_repository.names_for_pipelines(session, ctx.tenant_id, pipeline_ids)
            names.stages = self.pipeline_repository.names_for_stages(session, ctx.tenant_id, stage_ids)
        except Exception as exc:
            logger.warning("forecast_catalog_names_unavailable", extra={"tenant_id": ctx.tenant_id, "error": str(exc)})

        if self.owner_name_resolver is not None:
            owners: dict[uuid.UUID, str] = {}
            for owner_id in {deal.owner_id for deal in deals if deal.owner_id is not None}:
                try:
                    owner_name = self.owner_name_resolver(owner_id)
                except Exception as exc:
                    logger.warning("forecast_owner_name_unavailable", extra={"tenant_id": ctx.tenant_id, "error": str(exc)})
                    continue
                if owner_name:
                    owners[owner_id] = owner_name
            names.owners = owners
        return names


forecast_service = ForecastService()
