from __future__ import annotations

import uuid
from typing import Any


class DealError(Exception):
    """Base error for deal, pipeline and forecast operations."""

    status_code = 400
    default_code = "DEAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        self.code = code or self.default_code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(DealError):
    status_code = 404
    default_code = "NOT_FOUND"


class InvalidStateError(DealError):
    status_code = 422
    default_code = "INVALID_STATE"


class ValidationFailedError(DealError):
    status_code = 422
    default_code = "VALIDATION_FAILED"


class ConflictError(DealError):
    status_code = 409
    default_code = "CONFLICT"


class DealNotFoundError(NotFoundError):
    default_code = "DEAL_NOT_FOUND"

    def __init__(self, deal_id: uuid.UUID) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}", details={"deal_id": str(deal_id)})


class PipelineNotFoundError(NotFoundError):
    default_code = "PIPELINE_NOT_FOUND"

    def __init__(self, pipeline_id: uuid.UUID) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}", details={"pipeline_id": str(pipeline_id)})


class StageNotFoundError(NotFoundError):
    default_code = "STAGE_NOT_FOUND"

    def __init__(self, stage_id: uuid.UUID) -> None:
        self.stage_id = stage_id
        super().__init__(f"Stage not found: {stage_id}", details={"stage_id": str(stage_id)})


class InvalidStageError(InvalidStateError):
    """Raised when a stage does not belong to the pipeline of the deal being moved."""

    default_code = "INVALID_STAGE"
