from dealflow.deals.catalog import PipelineCatalogService, pipeline_catalog_service
from dealflow.deals.context import DealContext
from dealflow.deals.errors import (
    ConflictError,
    DealError,
    DealNotFoundError,
    InvalidStageError,
    InvalidStateError,
    NotFoundError,
    PipelineNotFoundError,
    StageNotFoundError,
    ValidationFailedError,
)
from dealflow.deals.forecast import ForecastService, build_forecast, forecast_service
from dealflow.deals.models import Deal, DealStageHistory, Pipeline, PipelineStage
from dealflow.deals.service import DealService, deal_service

__all__ = [
    "ConflictError",
    "Deal",
    "DealContext",
    "DealError",
    "DealNotFoundError",
    "DealService",
    "DealStageHistory",
    "ForecastService",
    "InvalidStageError",
    "InvalidStateError",
    "NotFoundError",
    "Pipeline",
    "PipelineCatalogService",
    "PipelineNotFoundError",
    "PipelineStage",
    "StageNotFoundError",
    "ValidationFailedError",
    "build_forecast",
    "deal_service",
    "forecast_service",
    "pipeline_catalog_service",
]
