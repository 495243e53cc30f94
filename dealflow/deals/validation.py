from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from dealflow.deals.errors import (
    InvalidStageError,
    InvalidStateError,
    PipelineNotFoundError,
    StageNotFoundError,
    ValidationFailedError,
)
from dealflow.deals.models import Pipeline, PipelineStage
from dealflow.deals.repository import PipelineRepository


CURRENCY_PATTERN = re.compile(r"[A-Z]{3}")
DEAL_TYPES = frozenset({"new_business", "existing_business", "renewal"})

_MIN_PROBABILITY = Decimal("0")
_MAX_PROBABILITY = Decimal("100")


@dataclass(slots=True)
class DealValidator:
    """Checks deal pre-conditions in a fixed order and raises on the first failure."""

    pipeline_repository: PipelineRepository = PipelineRepository()

    def validate(
        self,
        session: Session,
        tenant_id: str,
        *,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
        today: date,
        amount: Decimal | None = None,
        probability: Decimal | None = None,
        currency: str | None = None,
        expected_close_date: date | None = None,
        deal_type: str | None = None,
    ) -> tuple[Pipeline, PipelineStage]:
        pipeline = self.validate_pipeline(session, tenant_id, pipeline_id)
        stage = self.validate_stage(session, tenant_id, stage_id, pipeline)
        self.validate_amount(amount)
        self.validate_probability(probability)
        self.validate_currency(currency)
        self.validate_expected_close_date(expected_close_date, today)
        self.validate_deal_type(deal_type)
        return pipeline, stage

    def validate_pipeline(self, session: Session, tenant_id: str, pipeline_id: uuid.UUID) -> Pipeline:
        pipeline = self.pipeline_repository.get_pipeline(session, tenant_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        if not pipeline.is_active:
            raise InvalidStateError(
                f"Pipeline is not active: {pipeline_id}",
                code="PIPELINE_INACTIVE",
                details={"pipeline_id": str(pipeline_id)},
            )
        return pipeline

    def validate_stage(
        self,
        session: Session,
        tenant_id: str,
        stage_id: uuid.UUID,
        pipeline: Pipeline,
    ) -> PipelineStage:
        stage = self.pipeline_repository.get_stage(session, tenant_id, stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        if not stage.is_active:
            raise InvalidStateError(
                f"Stage is not active: {stage_id}",
                code="STAGE_INACTIVE",
                details={"stage_id": str(stage_id)},
            )
        if stage.pipeline_id != pipeline.id:
            raise InvalidStageError(
                "Stage does not belong to the specified pipeline",
                details={"stage_id": str(stage_id), "pipeline_id": str(pipeline.id)},
            )
        return stage

    def validate_amount(self, amount: Decimal | None) -> None:
        if amount is not None and amount < 0:
            raise ValidationFailedError("Deal amount cannot be negative", code="INVALID_AMOUNT", details={"amount": str(amount)})

    def validate_probability(self, probability: Decimal | None) -> None:
        if probability is None:
            return
        if probability < _MIN_PROBABILITY or probability > _MAX_PROBABILITY:
            raise ValidationFailedError(
                "Probability must be between 0 and 100",
                code="INVALID_PROBABILITY",
                details={"probability": str(probability)},
            )

    def validate_currency(self, currency: str | None) -> None:
        if currency is not None and not CURRENCY_PATTERN.fullmatch(currency):
            raise ValidationFailedError(
                "Currency must be a 3-letter ISO code",
                code="INVALID_CURRENCY",
                details={"currency": currency},
            )

    def validate_expected_close_date(self, expected_close_date: date | None, today: date) -> None:
        if expected_close_date is not None and expected_close_date < today:
            raise ValidationFailedError(
                "Expected close date cannot be in the past",
                code="INVALID_CLOSE_DATE",
                details={"expected_close_date": expected_close_date.isoformat()},
            )

    def validate_deal_type(self, deal_type: str | None) -> None:
        if deal_type is not None and deal_type not in DEAL_TYPES:
            raise ValidationFailedError(
                f"Invalid deal type: {deal_type}",
                code="INVALID_DEAL_TYPE",
                details={"deal_type": deal_type, "allowed": sorted(DEAL_TYPES)},
            )


deal_validator = DealValidator()
