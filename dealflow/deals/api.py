from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealflow.api.errors import failure_response
from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user as get_auth_user
from dealflow.core.database import get_db
from dealflow.deals.catalog import pipeline_catalog_service
from dealflow.deals.context import DealContext
from dealflow.deals.errors import DealError
from dealflow.deals.forecast import forecast_service
from dealflow.deals.schemas import (
    BulkCreateRequest,
    BulkDeleteRequest,
    BulkMoveStageRequest,
    BulkOwnerRequest,
    BulkResult,
    DealCreate,
    DealPage,
    DealRead,
    DealSearchFilter,
    DealStageHistoryRead,
    DealUpdate,
    ForecastRead,
    MoveStageRequest,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
)
from dealflow.deals.service import deal_service

router = APIRouter(prefix="/api/deals", tags=["deals"])
forecast_router = APIRouter(prefix="/api/deals/forecast", tags=["deals.forecast"])
pipelines_router = APIRouter(prefix="/api/pipelines", tags=["deals.pipelines"])


def get_deal_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> DealContext:
    tenant_id = request.headers.get("x-tenant-id")
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing x-tenant-id header")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return DealContext(
        tenant_id=tenant_id,
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        permissions=set(auth_user.roles),
    )


def require_permission(ctx: DealContext, permission: str) -> None:
    if permission not in ctx.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@pipelines_router.post("", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(ctx, "pipelines.manage")
        return pipeline_catalog_service.create_pipeline(db, ctx, dto)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@pipelines_router.get("", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(ctx, "pipelines.read")
        return pipeline_catalog_service.list_pipelines(db, ctx, include_inactive=include_inactive)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@pipelines_router.get("/default", response_model=PipelineRead)
def get_default_pipeline(
    request: Request,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(ctx, "pipelines.read")
        return pipeline_catalog_service.get_default_pipeline(db, ctx)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@pipelines_router.get("/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(ctx, "pipelines.read")
        return pipeline_catalog_service.get_pipeline(db, ctx, pipeline_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@pipelines_router.post("/{pipeline_id}/stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(ctx, "pipelines.manage")
        return pipeline_catalog_service.add_stage(db, ctx, pipeline_id, dto)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@pipelines_router.get("/{pipeline_id}/stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(ctx, "pipelines.read")
        return pipeline_catalog_service.list_stages(db, ctx, pipeline_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@forecast_router.get("", response_model=ForecastRead)
def get_forecast(
    request: Request,
    start: date = Query(),
    end: date = Query(),
    pipeline_id: uuid.UUID | None = Query(default=None),
    currency: str | None = Query(default=None),
    include_closed: bool = Query(default=True),
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(ctx, "forecasts.read")
        return forecast_service.generate_forecast(
            db,
            ctx,
            start,
            end,
            pipeline_id=pipeline_id,
            currency=currency,
            include_closed=include_closed,
        )
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@forecast_router.get("/quarterly", response_model=ForecastRead)
def get_quarterly_forecast(
    request: Request,
    year: int = Query(),
    quarter: int = Query(),
    pipeline_id: uuid.UUID | None = Query(default=None),
    currency: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(ctx, "forecasts.read")
        return forecast_service.generate_quarterly_forecast(db, ctx, year, quarter, pipeline_id=pipeline_id, currency=currency)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@forecast_router.get("/monthly", response_model=ForecastRead)
def get_monthly_forecast(
    request: Request,
    year: int = Query(),
    month: int = Query(),
    pipeline_id: uuid.UUID | None = Query(default=None),
    currency: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(ctx, "forecasts.read")
        return forecast_service.generate_monthly_forecast(db, ctx, year, month, pipeline_id=pipeline_id, currency=currency)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> DealRead | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return deal_service.create_deal(db, ctx, dto)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("/search", response_model=DealPage)
def search_deals(
    request: Request,
    criteria: DealSearchFilter,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> DealPage | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.search_deals(db, ctx, criteria)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.get("/by-pipeline/{pipeline_id}", response_model=list[DealRead])
def list_deals_by_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.list_deals_by_pipeline(db, ctx, pipeline_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.get("/by-stage/{stage_id}", response_model=list[DealRead])
def list_deals_by_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.list_deals_by_stage(db, ctx, stage_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.get("/by-owner/{owner_id}", response_model=list[DealRead])
def list_deals_by_owner(
    request: Request,
    owner_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.list_deals_by_owner(db, ctx, owner_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("/bulk", response_model=list[DealRead], status_code=status.HTTP_201_CREATED)
def bulk_create_deals(
    request: Request,
    dto: BulkCreateRequest,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return deal_service.bulk_create_deals(db, ctx, dto.deals)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("/bulk/stage", response_model=BulkResult)
def bulk_move_to_stage(
    request: Request,
    dto: BulkMoveStageRequest,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> BulkResult | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return BulkResult(affected=deal_service.bulk_move_to_stage(db, ctx, dto.deal_ids, dto.stage_id))
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("/bulk/owner", response_model=BulkResult)
def bulk_update_owner(
    request: Request,
    dto: BulkOwnerRequest,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> BulkResult | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return BulkResult(affected=deal_service.bulk_update_owner(db, ctx, dto.deal_ids, dto.owner_id))
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.post("/bulk/delete", response_model=BulkResult)
def bulk_delete_deals(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> BulkResult | JSONResponse:
    try:
        require_permission(ctx, "deals.delete")
        return BulkResult(affected=deal_service.bulk_delete_deals(db, ctx, dto.deal_ids))
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> DealRead | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.get_deal(db, ctx, deal_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.patch("/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> DealRead | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return deal_service.update_deal(db, ctx, deal_id, dto)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> Response:
    try:
        require_permission(ctx, "deals.delete")
        deal_service.delete_deal(db, ctx, deal_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{deal_id}/stage", response_model=DealRead)
def move_deal_to_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: MoveStageRequest,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> DealRead | JSONResponse:
    try:
        require_permission(ctx, "deals.write")
        return deal_service.move_to_stage(db, ctx, deal_id, dto.stage_id, dto.reason)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)


@router.get("/{deal_id}/history", response_model=list[DealStageHistoryRead])
def list_deal_history(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: DealContext = Depends(get_deal_context),
) -> list[DealStageHistoryRead] | JSONResponse:
    try:
        require_permission(ctx, "deals.read")
        return deal_service.list_stage_history(db, ctx, deal_id)
    except (DealError, HTTPException) as exc:
        return failure_response(request, exc)
