from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from dealflow.deals.models import Deal, PipelineStage


TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")


def round_half_up(value: Decimal, places: Decimal = TWO_PLACES) -> Decimal:
    return value.quantize(places, rounding=ROUND_HALF_UP)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_hours_between(earlier: datetime, later: datetime) -> int:
    """Floor of the elapsed hours, never negative."""
    elapsed = as_utc(later) - as_utc(earlier)
    return max(int(elapsed.total_seconds() // 3600), 0)


def apply_stage_state(deal: Deal, stage: PipelineStage, today: date) -> None:
    """Mirror the closed/won markers of ``stage`` onto ``deal``.

    Entering a closed stage stamps ``actual_close_date`` once; entering an open stage clears
    the closed state entirely. A non-null stage default probability always replaces the
    deal's probability.
    """
    if stage.is_closed:
        deal.is_closed = True
        deal.is_won = stage.is_won
        if deal.actual_close_date is None:
            deal.actual_close_date = today
    else:
        deal.is_closed = False
        deal.is_won = False
        deal.actual_close_date = None

    if stage.default_probability is not None:
        deal.probability = stage.default_probability
