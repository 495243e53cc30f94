from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


SortDirection = Literal["asc", "desc"]


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True
    is_default: bool = False
    display_order: int = 0


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    display_order: int
    default_probability: Decimal | None = None
    is_active: bool = True
    is_closed: bool = False
    is_won: bool = False
    color: str | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    description: str | None
    display_order: int
    default_probability: Decimal | None
    is_active: bool
    is_closed: bool
    is_won: bool
    color: str | None
    created_at: datetime
    updated_at: datetime


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    is_active: bool
    is_default: bool
    display_order: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    stages: list[PipelineStageRead] = Field(default_factory=list)


class DealCreate(BaseModel):
    pipeline_id: UUID
    stage_id: UUID
    name: str = Field(min_length=1, max_length=255)
    account_id: UUID | None = None
    contact_id: UUID | None = None
    amount: Decimal | None = None
    currency: str = "USD"
    probability: Decimal | None = None
    expected_close_date: date | None = None
    deal_type: str | None = None
    lead_source: str | None = None
    next_step: str | None = None
    description: str | None = None
    owner_id: UUID | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealUpdate(BaseModel):
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    account_id: UUID | None = None
    contact_id: UUID | None = None
    amount: Decimal | None = None
    currency: str | None = None
    probability: Decimal | None = None
    expected_close_date: date | None = None
    deal_type: str | None = None
    lead_source: str | None = None
    next_step: str | None = None
    description: str | None = None
    owner_id: UUID | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    pipeline_id: UUID
    stage_id: UUID
    account_id: UUID | None
    contact_id: UUID | None
    name: str
    amount: Decimal | None
    currency: str
    probability: Decimal | None
    weighted_amount: Decimal
    is_closed: bool
    is_won: bool
    expected_close_date: date | None
    actual_close_date: date | None
    deal_type: str | None
    lead_source: str | None
    next_step: str | None
    description: str | None
    owner_id: UUID | None
    tags: list[str]
    custom_fields: dict[str, Any]
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class DealStageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: UUID
    from_stage_id: UUID | None
    to_stage_id: UUID
    pipeline_id: UUID
    changed_by: str | None
    reason: str | None
    changed_at: datetime
    duration_in_previous_stage_hours: int | None


class MoveStageRequest(BaseModel):
    stage_id: UUID
    reason: str | None = None


class BulkCreateRequest(BaseModel):
    deals: list[DealCreate] = Field(min_length=1)


class BulkMoveStageRequest(BaseModel):
    deal_ids: list[UUID] = Field(min_length=1)
    stage_id: UUID


class BulkOwnerRequest(BaseModel):
    deal_ids: list[UUID] = Field(min_length=1)
    owner_id: UUID


class BulkDeleteRequest(BaseModel):
    deal_ids: list[UUID] = Field(min_length=1)


class BulkResult(BaseModel):
    affected: int


class DealSearchFilter(BaseModel):
    name: str | None = None
    pipeline_ids: list[UUID] = Field(default_factory=list)
    stage_ids: list[UUID] = Field(default_factory=list)
    owner_ids: list[UUID] = Field(default_factory=list)
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    min_probability: Decimal | None = None
    max_probability: Decimal | None = None
    expected_close_from: date | None = None
    expected_close_to: date | None = None
    currency: str | None = None
    is_closed: bool | None = None
    is_won: bool | None = None
    sort_by: str = "created_at"
    sort_direction: SortDirection = "desc"
    page: int = Field(default=0, ge=0)
    size: int = Field(default=20, ge=1)


class DealPage(BaseModel):
    items: list[DealRead]
    page: int
    size: int
    total: int


class PipelineForecast(BaseModel):
    pipeline_id: UUID
    pipeline_name: str | None = None
    total_value: Decimal
    weighted_value: Decimal
    deal_count: int
    average_deal_size: Decimal
    win_rate: Decimal | None = None


class StageForecast(BaseModel):
    stage_id: UUID
    stage_name: str | None = None
    total_value: Decimal
    weighted_value: Decimal
    deal_count: int
    average_probability: Decimal | None = None


class OwnerForecast(BaseModel):
    owner_id: UUID | None
    owner_name: str | None = None
    total_value: Decimal
    weighted_value: Decimal
    deal_count: int
    quota: Decimal | None = None
    quota_attainment: Decimal | None = None


class MonthForecast(BaseModel):
    month: str
    month_start: date
    month_end: date
    total_value: Decimal
    weighted_value: Decimal
    deal_count: int
    expected_closures: int


class ForecastRead(BaseModel):
    period_start: date
    period_end: date
    pipeline_id: UUID | None = None
    currency: str | None = None
    total_pipeline_value: Decimal
    total_weighted_value: Decimal
    committed_value: Decimal
    best_case_value: Decimal
    worst_case_value: Decimal
    total_deals: int
    open_deals: int
    won_deals: int
    lost_deals: int
    by_pipeline: list[PipelineForecast] = Field(default_factory=list)
    by_stage: list[StageForecast] = Field(default_factory=list)
    by_owner: list[OwnerForecast] = Field(default_factory=list)
    by_month: list[MonthForecast] = Field(default_factory=list)
