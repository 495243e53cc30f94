from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from dealflow import audit
from dealflow.core.config import get_settings
from dealflow.deals.context import DealContext
from dealflow.deals.derived import apply_stage_state, whole_hours_between
from dealflow.deals.errors import (
    DealNotFoundError,
    InvalidStageError,
    StageNotFoundError,
    ValidationFailedError,
)
from dealflow.deals.locks import DealLockRegistry, deal_locks
from dealflow.deals.models import Deal, DealStageHistory, PipelineStage, utcnow
from dealflow.deals.notifications import DealEventPublisher, deal_snapshot
from dealflow.deals.repository import DealRepository, PipelineRepository, transaction
from dealflow.deals.schemas import (
    DealCreate,
    DealPage,
    DealRead,
    DealSearchFilter,
    DealStageHistoryRead,
    DealUpdate,
)
from dealflow.deals.validation import DealValidator
from dealflow.metrics import observe_deal_mutation, observe_stage_transition
from dealflow.otel import get_tracer


logger = logging.getLogger("dealflow.deals")
tracer = get_tracer("dealflow.deals")

REASON_CREATED = "Deal created"
REASON_STAGE_UPDATED = "Stage updated"
REASON_BULK_STAGE_UPDATE = "Bulk stage update"

_NULLABLE_FIELDS = (
    "account_id",
    "contact_id",
    "amount",
    "probability",
    "expected_close_date",
    "deal_type",
    "lead_source",
    "next_step",
    "description",
    "owner_id",
)
_REQUIRED_FIELDS = ("name", "currency", "tags", "custom_fields")


@dataclass(slots=True)
class _Transition:
    snapshot: dict[str, Any]
    from_stage_id: uuid.UUID | None
    was_closed: bool


@dataclass(slots=True)
class DealService:
    entity_type = "deals.deal"

    deal_repository: DealRepository = DealRepository()
    pipeline_repository: PipelineRepository = PipelineRepository()
    validator: DealValidator = field(default_factory=DealValidator)
    publisher: DealEventPublisher = field(default_factory=DealEventPublisher)
    locks: DealLockRegistry = deal_locks
    clock: Callable[[], datetime] = utcnow

    def create_deal(self, session: Session, ctx: DealContext, dto: DealCreate) -> DealRead:
        with tracer.start_as_current_span("deals.create_deal") as span:
            span.set_attribute("tenant_id", ctx.tenant_id)
            with transaction(session):
                deal = self._insert_deal(session, ctx, dto, self.clock())
                snapshot = deal_snapshot(deal)
                audit.record(
                    actor_user_id=ctx.user_id,
                    tenant_id=ctx.tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(deal.id),
                    action="create",
                    before=None,
                    after=snapshot,
                    correlation_id=ctx.correlation_id,
                )
            span.set_attribute("deal_id", str(deal.id))

        self.publisher.deal_created(ctx, snapshot)
        observe_deal_mutation("create")
        logger.info(
            "deal_created",
            extra={"deal_id": str(deal.id), "tenant_id": ctx.tenant_id, "stage_id": str(deal.stage_id)},
        )
        return DealRead.model_validate(deal)

    def bulk_create_deals(self, session: Session, ctx: DealContext, dtos: Sequence[DealCreate]) -> list[DealRead]:
        self._check_batch_size(len(dtos))
        today = self.clock().date()
        for dto in dtos:
            self._validate_create(session, ctx, dto, today)

        with transaction(session):
            now = self.clock()
            deals = [self._insert_deal(session, ctx, dto, now) for dto in dtos]
            snapshots = [deal_snapshot(deal) for deal in deals]
            for deal, snapshot in zip(deals, snapshots):
                audit.record(
                    actor_user_id=ctx.user_id,
                    tenant_id=ctx.tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(deal.id),
                    action="bulk_create",
                    before=None,
                    after=snapshot,
                    correlation_id=ctx.correlation_id,
                )

        for snapshot in snapshots:
            self.publisher.deal_created(ctx, snapshot)
        observe_deal_mutation("bulk_create", len(deals))
        logger.info("deals_bulk_created", extra={"tenant_id": ctx.tenant_id, "count": len(deals)})
        return [DealRead.model_validate(deal) for deal in deals]

    def get_deal(self, session: Session, ctx: DealContext, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._get_deal(session, ctx, deal_id))

    def update_deal(self, session: Session, ctx: DealContext, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        changes = dto.model_dump(exclude_unset=True)
        transition: _Transition | None = None

        with self.locks.hold(deal_id), tracer.start_as_current_span("deals.update_deal") as span:
            span.set_attribute("deal_id", str(deal_id))
            with transaction(session):
                deal = self._get_deal(session, ctx, deal_id, for_update=True)
                now = self.clock()
                target_pipeline_id = changes.get("pipeline_id") or deal.pipeline_id
                target_stage_id = changes.get("stage_id") or deal.stage_id
                _, stage = self.validator.validate(
                    session,
                    ctx.tenant_id,
                    pipeline_id=target_pipeline_id,
                    stage_id=target_stage_id,
                    today=now.date(),
                    amount=changes.get("amount"),
                    probability=changes.get("probability"),
                    currency=changes.get("currency"),
                    expected_close_date=changes.get("expected_close_date"),
                    deal_type=changes.get("deal_type"),
                )
                before = deal_snapshot(deal)

                for name in _NULLABLE_FIELDS:
                    if name in changes:
                        setattr(deal, name, changes[name])
                for name in _REQUIRED_FIELDS:
                    if changes.get(name) is not None:
                        setattr(deal, name, changes[name])
                deal.updated_by = ctx.user_id

                if stage.id != deal.stage_id:
                    deal.pipeline_id = stage.pipeline_id
                    transition = self._apply_transition(session, ctx, deal, stage, REASON_STAGE_UPDATED, now)
                else:
                    self.deal_repository.save(session, deal)

                snapshot = deal_snapshot(deal)
                audit.record(
                    actor_user_id=ctx.user_id,
                    tenant_id=ctx.tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(deal.id),
                    action="update",
                    before=before,
                    after=snapshot,
                    correlation_id=ctx.correlation_id,
                )

        self.publisher.deal_updated(ctx, snapshot)
        if transition is not None:
            self.publisher.stage_changed(
                ctx,
                transition.snapshot,
                from_stage_id=transition.from_stage_id,
                was_closed=transition.was_closed,
            )
            observe_stage_transition("applied")
        observe_deal_mutation("update")
        logger.info("deal_updated", extra={"deal_id": str(deal_id), "tenant_id": ctx.tenant_id})
        return DealRead.model_validate(deal)

    def move_to_stage(
        self,
        session: Session,
        ctx: DealContext,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        reason: str | None = None,
    ) -> DealRead:
        with self.locks.hold(deal_id), tracer.start_as_current_span("deals.move_to_stage") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("stage_id", str(stage_id))
            try:
                with transaction(session):
                    deal = self._get_deal(session, ctx, deal_id, for_update=True)
                    stage = self._get_stage(session, ctx, stage_id)
                    if stage.pipeline_id != deal.pipeline_id:
                        raise InvalidStageError(
                            "Stage does not belong to deal's pipeline",
                            details={"deal_id": str(deal_id), "stage_id": str(stage_id)},
                        )
                    before = deal_snapshot(deal)
                    transition = self._apply_transition(session, ctx, deal, stage, reason, self.clock())
                    audit.record(
                        actor_user_id=ctx.user_id,
                        tenant_id=ctx.tenant_id,
                        entity_type=self.entity_type,
                        entity_id=str(deal.id),
                        action="move_stage",
                        before=before,
                        after=transition.snapshot,
                        correlation_id=ctx.correlation_id,
                    )
            except (DealNotFoundError, StageNotFoundError, InvalidStageError):
                observe_stage_transition("rejected")
                raise

        self.publisher.stage_changed(
            ctx,
            transition.snapshot,
            from_stage_id=transition.from_stage_id,
            was_closed=transition.was_closed,
        )
        observe_stage_transition("applied")
        logger.info(
            "deal_stage_changed",
            extra={
                "deal_id": str(deal_id),
                "tenant_id": ctx.tenant_id,
                "from_stage_id": str(transition.from_stage_id),
                "stage_id": str(stage_id),
            },
        )
        return DealRead.model_validate(deal)

    def bulk_move_to_stage(
        self,
        session: Session,
        ctx: DealContext,
        deal_ids: Sequence[uuid.UUID],
        stage_id: uuid.UUID,
    ) -> int:
        unique_ids = list(dict.fromkeys(deal_ids))
        self._check_batch_size(len(unique_ids))
        transitions: list[_Transition] = []

        with self.locks.hold_many(unique_ids), tracer.start_as_current_span("deals.bulk_move_to_stage") as span:
            span.set_attribute("count", len(unique_ids))
            with transaction(session):
                stage = self._get_stage(session, ctx, stage_id)
                deals = self.deal_repository.get_many(session, ctx.tenant_id, unique_ids, for_update=True)
                for deal_id in unique_ids:
                    deal = deals.get(deal_id)
                    if deal is None:
                        raise DealNotFoundError(deal_id)
                    if deal.pipeline_id != stage.pipeline_id:
                        raise InvalidStageError(
                            f"Deal {deal_id} does not belong to the stage's pipeline",
                            details={"deal_id": str(deal_id), "stage_id": str(stage_id)},
                        )

                now = self.clock()
                for deal_id in unique_ids:
                    deal = deals[deal_id]
                    before = deal_snapshot(deal)
                    transition = self._apply_transition(session, ctx, deal, stage, REASON_BULK_STAGE_UPDATE, now)
                    transitions.append(transition)
                    audit.record(
                        actor_user_id=ctx.user_id,
                        tenant_id=ctx.tenant_id,
                        entity_type=self.entity_type,
                        entity_id=str(deal_id),
                        action="bulk_move_stage",
                        before=before,
                        after=transition.snapshot,
                        correlation_id=ctx.correlation_id,
                    )

        for transition in transitions:
            self.publisher.stage_changed(
                ctx,
                transition.snapshot,
                from_stage_id=transition.from_stage_id,
                was_closed=transition.was_closed,
            )
        observe_stage_transition("applied", len(transitions))
        logger.info(
            "deals_bulk_stage_changed",
            extra={"tenant_id": ctx.tenant_id, "stage_id": str(stage_id), "count": len(transitions)},
        )
        return len(transitions)

    def bulk_update_owner(
        self,
        session: Session,
        ctx: DealContext,
        deal_ids: Sequence[uuid.UUID],
        owner_id: uuid.UUID,
    ) -> int:
        unique_ids = list(dict.fromkeys(deal_ids))
        self._check_batch_size(len(unique_ids))
        snapshots: list[dict[str, Any]] = []

        with self.locks.hold_many(unique_ids), transaction(session):
            deals = self._get_all(session, ctx, unique_ids)
            for deal in deals:
                before = deal_snapshot(deal)
                deal.owner_id = owner_id
                deal.updated_by = ctx.user_id
                self.deal_repository.save(session, deal)
                snapshot = deal_snapshot(deal)
                snapshots.append(snapshot)
                audit.record(
                    actor_user_id=ctx.user_id,
                    tenant_id=ctx.tenant_id,
                    entity_type=self.entity_type,
                    entity_id=str(deal.id),
                    action="bulk_update_owner",
                    before=before,
                    after=snapshot,
                    correlation_id=ctx.correlation_id,
                )

        for snapshot in snapshots:
            self.publisher.deal_updated(ctx, snapshot)
        observe_deal_mutation("bulk_update_owner", len(snapshots))
        logger.info("deals_bulk_owner_updated", extra={"tenant_id": ctx.tenant_id, "count": len(snapshots)})
        return len(snapshots)

    def delete_deal(self, session: Session, ctx: DealContext, deal_id: uuid.UUID) -> None:
        with self.locks.hold(deal_id), transaction(session):
            deal = self._get_deal(session, ctx, deal_id, for_update=True)
            snapshot = self._delete(session, ctx, deal, action="delete")

        self.publisher.deal_deleted(ctx, snapshot)
        observe_deal_mutation("delete")
        logger.info("deal_deleted", extra={"deal_id": str(deal_id), "tenant_id": ctx.tenant_id})

    def bulk_delete_deals(self, session: Session, ctx: DealContext, deal_ids: Sequence[uuid.UUID]) -> int:
        unique_ids = list(dict.fromkeys(deal_ids))
        self._check_batch_size(len(unique_ids))

        with self.locks.hold_many(unique_ids), transaction(session):
            deals = self._get_all(session, ctx, unique_ids)
            snapshots = [self._delete(session, ctx, deal, action="bulk_delete") for deal in deals]

        for snapshot in snapshots:
            self.publisher.deal_deleted(ctx, snapshot)
        observe_deal_mutation("bulk_delete", len(snapshots))
        logger.info("deals_bulk_deleted", extra={"tenant_id": ctx.tenant_id, "count": len(snapshots)})
        return len(snapshots)

    def search_deals(self, session: Session, ctx: DealContext, criteria: DealSearchFilter) -> DealPage:
        if criteria.sort_by not in self.deal_repository.sortable_fields:
            raise ValidationFailedError(
                f"Unsupported sort field: {criteria.sort_by}",
                code="INVALID_SORT_FIELD",
                details={"allowed": sorted(self.deal_repository.sortable_fields)},
            )
        size = min(criteria.size, get_settings().search_max_page_size)
        rows, total = self.deal_repository.search(session, ctx.tenant_id, criteria, size=size)
        return DealPage(
            items=[DealRead.model_validate(row) for row in rows],
            page=criteria.page,
            size=size,
            total=total,
        )

    def list_deals_by_pipeline(self, session: Session, ctx: DealContext, pipeline_id: uuid.UUID) -> list[DealRead]:
        rows = self.deal_repository.list_by(session, ctx.tenant_id, pipeline_ids=[pipeline_id])
        return [DealRead.model_validate(row) for row in rows]

    def list_deals_by_stage(self, session: Session, ctx: DealContext, stage_id: uuid.UUID) -> list[DealRead]:
        rows = self.deal_repository.list_by(session, ctx.tenant_id, stage_ids=[stage_id])
        return [DealRead.model_validate(row) for row in rows]

    def list_deals_by_owner(self, session: Session, ctx: DealContext, owner_id: uuid.UUID) -> list[DealRead]:
        rows = self.deal_repository.list_by(session, ctx.tenant_id, owner_ids=[owner_id])
        return [DealRead.model_validate(row) for row in rows]

    def list_stage_history(self, session: Session, ctx: DealContext, deal_id: uuid.UUID) -> list[DealStageHistoryRead]:
        deal = self._get_deal(session, ctx, deal_id)
        return [DealStageHistoryRead.model_validate(row) for row in self.deal_repository.list_history(session, deal.id)]

    def _validate_create(self, session: Session, ctx: DealContext, dto: DealCreate, today: date) -> PipelineStage:
        _, stage = self.validator.validate(
            session,
            ctx.tenant_id,
            pipeline_id=dto.pipeline_id,
            stage_id=dto.stage_id,
            today=today,
            amount=dto.amount,
            probability=dto.probability,
            currency=dto.currency,
            expected_close_date=dto.expected_close_date,
            deal_type=dto.deal_type,
        )
        return stage

    def _insert_deal(self, session: Session, ctx: DealContext, dto: DealCreate, now: datetime) -> Deal:
        stage = self._validate_create(session, ctx, dto, now.date())
        deal = Deal(
            tenant_id=ctx.tenant_id,
            pipeline_id=dto.pipeline_id,
            stage_id=dto.stage_id,
            account_id=dto.account_id,
            contact_id=dto.contact_id,
            name=dto.name.strip(),
            amount=dto.amount,
            currency=dto.currency,
            probability=dto.probability,
            expected_close_date=dto.expected_close_date,
            deal_type=dto.deal_type,
            lead_source=dto.lead_source,
            next_step=dto.next_step,
            description=dto.description,
            owner_id=dto.owner_id,
            tags=list(dto.tags),
            custom_fields=dict(dto.custom_fields),
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
        )
        explicit_probability = dto.probability
        apply_stage_state(deal, stage, now.date())
        if explicit_probability is not None:
            deal.probability = explicit_probability
        self.deal_repository.save(session, deal)
        self.deal_repository.append_history(
            session,
            DealStageHistory(
                deal_id=deal.id,
                tenant_id=ctx.tenant_id,
                from_stage_id=None,
                to_stage_id=stage.id,
                pipeline_id=deal.pipeline_id,
                changed_by=ctx.user_id,
                reason=REASON_CREATED,
                changed_at=now,
                duration_in_previous_stage_hours=None,
            ),
        )
        return deal

    def _apply_transition(
        self,
        session: Session,
        ctx: DealContext,
        deal: Deal,
        stage: PipelineStage,
        reason: str | None,
        now: datetime,
    ) -> _Transition:
        from_stage_id = deal.stage_id
        was_closed = deal.is_closed
        previous = self.deal_repository.latest_history(session, deal.id)

        deal.stage_id = stage.id
        apply_stage_state(deal, stage, now.date())
        deal.updated_by = ctx.user_id
        self.deal_repository.save(session, deal)

        duration = whole_hours_between(previous.changed_at, now) if previous is not None else None
        self.deal_repository.append_history(
            session,
            DealStageHistory(
                deal_id=deal.id,
                tenant_id=ctx.tenant_id,
                from_stage_id=from_stage_id,
                to_stage_id=stage.id,
                pipeline_id=deal.pipeline_id,
                changed_by=ctx.user_id,
                reason=reason,
                changed_at=now,
                duration_in_previous_stage_hours=duration,
            ),
        )
        return _Transition(snapshot=deal_snapshot(deal), from_stage_id=from_stage_id, was_closed=was_closed)

    def _delete(self, session: Session, ctx: DealContext, deal: Deal, *, action: str) -> dict[str, Any]:
        snapshot = deal_snapshot(deal)
        self.deal_repository.delete(session, deal)
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type=self.entity_type,
            entity_id=snapshot["deal_id"],
            action=action,
            before=snapshot,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        return snapshot

    def _get_deal(self, session: Session, ctx: DealContext, deal_id: uuid.UUID, *, for_update: bool = False) -> Deal:
        deal = self.deal_repository.get(session, ctx.tenant_id, deal_id, for_update=for_update)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def _get_all(self, session: Session, ctx: DealContext, deal_ids: Sequence[uuid.UUID]) -> list[Deal]:
        deals = self.deal_repository.get_many(session, ctx.tenant_id, deal_ids, for_update=True)
        missing = [deal_id for deal_id in deal_ids if deal_id not in deals]
        if missing:
            raise DealNotFoundError(missing[0])
        return [deals[deal_id] for deal_id in deal_ids]

    def _get_stage(self, session: Session, ctx: DealContext, stage_id: uuid.UUID) -> PipelineStage:
        stage = self.pipeline_repository.get_stage(session, ctx.tenant_id, stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        return stage

    def _check_batch_size(self, count: int) -> None:
        limit = get_settings().bulk_max_batch_size
        if count > limit:
            raise ValidationFailedError(
                f"Bulk operations are limited to {limit} deals",
                code="BULK_LIMIT_EXCEEDED",
                details={"count": count, "limit": limit},
            )


deal_service = DealService()
