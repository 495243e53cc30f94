from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date

from sqlalchemy import Select, and_, delete, func, select, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from dealflow.deals.errors import ConflictError
from dealflow.deals.models import Deal, DealStageHistory, Pipeline, PipelineStage, utcnow
from dealflow.deals.schemas import DealSearchFilter


@contextmanager
def transaction(session: Session) -> Iterator[None]:
    """Commit on success, roll back on any failure; a stale row version surfaces as a conflict."""
    try:
        yield
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError("Record was modified concurrently", details={"error": str(exc)}) from exc
    except Exception:
        session.rollback()
        raise


class PipelineRepository:
    """Tenant-scoped reads and writes for pipeline and stage definitions."""

    def get_pipeline(self, session: Session, tenant_id: str, pipeline_id: uuid.UUID) -> Pipeline | None:
        return session.scalar(
            select(Pipeline)
            .where(and_(Pipeline.id == pipeline_id, Pipeline.tenant_id == tenant_id))
            .options(selectinload(Pipeline.stages))
        )

    def list_pipelines(self, session: Session, tenant_id: str, *, include_inactive: bool = False) -> Sequence[Pipeline]:
        stmt = select(Pipeline).where(Pipeline.tenant_id == tenant_id).options(selectinload(Pipeline.stages))
        if not include_inactive:
            stmt = stmt.where(Pipeline.is_active.is_(True))
        return session.scalars(stmt.order_by(Pipeline.display_order.asc(), Pipeline.name.asc())).all()

    def get_default_pipeline(self, session: Session, tenant_id: str) -> Pipeline | None:
        return session.scalar(
            select(Pipeline)
            .where(and_(Pipeline.tenant_id == tenant_id, Pipeline.is_default.is_(True)))
            .options(selectinload(Pipeline.stages))
        )

    def get_stage(self, session: Session, tenant_id: str, stage_id: uuid.UUID) -> PipelineStage | None:
        return session.scalar(
            select(PipelineStage)
            .join(Pipeline, Pipeline.id == PipelineStage.pipeline_id)
            .where(and_(PipelineStage.id == stage_id, Pipeline.tenant_id == tenant_id))
        )

    def list_stages(self, session: Session, pipeline_id: uuid.UUID) -> Sequence[PipelineStage]:
        return session.scalars(
            select(PipelineStage)
            .where(PipelineStage.pipeline_id == pipeline_id)
            .order_by(PipelineStage.display_order.asc())
        ).all()

    def names_for_pipelines(self, session: Session, tenant_id: str, pipeline_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not pipeline_ids:
            return {}
        rows = session.execute(
            select(Pipeline.id, Pipeline.name).where(and_(Pipeline.tenant_id == tenant_id, Pipeline.id.in_(pipeline_ids)))
        ).all()
        return {row.id: row.name for row in rows}

    def names_for_stages(self, session: Session, tenant_id: str, stage_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not stage_ids:
            return {}
        rows = session.execute(
            select(PipelineStage.id, PipelineStage.name)
            .join(Pipeline, Pipeline.id == PipelineStage.pipeline_id)
            .where(and_(Pipeline.tenant_id == tenant_id, PipelineStage.id.in_(stage_ids)))
        ).all()
        return {row.id: row.name for row in rows}

    def unset_other_defaults(self, session: Session, tenant_id: str, pipeline_id: uuid.UUID) -> None:
        session.execute(
            update(Pipeline)
            .where(
                and_(
                    Pipeline.id != pipeline_id,
                    Pipeline.tenant_id == tenant_id,
                    Pipeline.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow())
        )


class DealRepository:
    """Tenant-scoped storage for deals and their append-only stage history."""

    sortable_fields = {
        "name": Deal.name,
        "amount": Deal.amount,
        "probability": Deal.probability,
        "expected_close_date": Deal.expected_close_date,
        "created_at": Deal.created_at,
        "updated_at": Deal.updated_at,
    }

    def get(self, session: Session, tenant_id: str, deal_id: uuid.UUID, *, for_update: bool = False) -> Deal | None:
        stmt = select(Deal).where(and_(Deal.id == deal_id, Deal.tenant_id == tenant_id))
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def get_many(
        self,
        session: Session,
        tenant_id: str,
        deal_ids: Sequence[uuid.UUID],
        *,
        for_update: bool = False,
    ) -> dict[uuid.UUID, Deal]:
        if not deal_ids:
            return {}
        stmt = select(Deal).where(and_(Deal.tenant_id == tenant_id, Deal.id.in_(deal_ids)))
        if for_update:
            stmt = stmt.with_for_update()
        return {deal.id: deal for deal in session.scalars(stmt).all()}

    def list_by(
        self,
        session: Session,
        tenant_id: str,
        *,
        pipeline_ids: Sequence[uuid.UUID] | None = None,
        stage_ids: Sequence[uuid.UUID] | None = None,
        owner_ids: Sequence[uuid.UUID] | None = None,
        close_from: date | None = None,
        close_to: date | None = None,
        currency: str | None = None,
        include_closed: bool = True,
    ) -> Sequence[Deal]:
        stmt = select(Deal).where(Deal.tenant_id == tenant_id)
        if pipeline_ids:
            stmt = stmt.where(Deal.pipeline_id.in_(pipeline_ids))
        if stage_ids:
            stmt = stmt.where(Deal.stage_id.in_(stage_ids))
        if owner_ids:
            stmt = stmt.where(Deal.owner_id.in_(owner_ids))
        if close_from is not None:
            stmt = stmt.where(Deal.expected_close_date >= close_from)
        if close_to is not None:
            stmt = stmt.where(Deal.expected_close_date <= close_to)
        if currency is not None:
            stmt = stmt.where(Deal.currency == currency)
        if not include_closed:
            stmt = stmt.where(Deal.is_closed.is_(False))
        return session.scalars(stmt.order_by(Deal.created_at.asc(), Deal.id.asc())).all()

    def search(self, session: Session, tenant_id: str, criteria: DealSearchFilter, *, size: int) -> tuple[Sequence[Deal], int]:
        stmt = self._apply_search_filter(select(Deal).where(Deal.tenant_id == tenant_id), criteria)
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        column = self.sortable_fields[criteria.sort_by]
        ordering = column.desc() if criteria.sort_direction == "desc" else column.asc()
        rows = session.scalars(stmt.order_by(ordering, Deal.id.asc()).offset(criteria.page * size).limit(size)).all()
        return rows, int(total)

    def _apply_search_filter(self, stmt: Select[tuple[Deal]], criteria: DealSearchFilter) -> Select[tuple[Deal]]:
        if criteria.name:
            stmt = stmt.where(Deal.name.icontains(criteria.name, autoescape=True))
        if criteria.pipeline_ids:
            stmt = stmt.where(Deal.pipeline_id.in_(criteria.pipeline_ids))
        if criteria.stage_ids:
            stmt = stmt.where(Deal.stage_id.in_(criteria.stage_ids))
        if criteria.owner_ids:
            stmt = stmt.where(Deal.owner_id.in_(criteria.owner_ids))
        if criteria.min_amount is not None:
            stmt = stmt.where(Deal.amount >= criteria.min_amount)
        if criteria.max_amount is not None:
            stmt = stmt.where(Deal.amount <= criteria.max_amount)
        if criteria.min_probability is not None:
            stmt = stmt.where(Deal.probability >= criteria.min_probability)
        if criteria.max_probability is not None:
            stmt = stmt.where(Deal.probability <= criteria.max_probability)
        if criteria.expected_close_from is not None:
            stmt = stmt.where(Deal.expected_close_date >= criteria.expected_close_from)
        if criteria.expected_close_to is not None:
            stmt = stmt.where(Deal.expected_close_date <= criteria.expected_close_to)
        if criteria.currency is not None:
            stmt = stmt.where(Deal.currency == criteria.currency)
        if criteria.is_closed is not None:
            stmt = stmt.where(Deal.is_closed.is_(criteria.is_closed))
        if criteria.is_won is not None:
            stmt = stmt.where(Deal.is_won.is_(criteria.is_won))
        return stmt

    def save(self, session: Session, deal: Deal) -> Deal:
        session.add(deal)
        session.flush()
        return deal

    def delete(self, session: Session, deal: Deal) -> None:
        session.execute(delete(DealStageHistory).where(DealStageHistory.deal_id == deal.id))
        session.delete(deal)
        session.flush()

    def append_history(self, session: Session, entry: DealStageHistory) -> DealStageHistory:
        session.add(entry)
        session.flush()
        return entry

    def latest_history(self, session: Session, deal_id: uuid.UUID) -> DealStageHistory | None:
        return session.scalar(
            select(DealStageHistory)
            .where(DealStageHistory.deal_id == deal_id)
            .order_by(DealStageHistory.changed_at.desc(), DealStageHistory.id.desc())
            .limit(1)
        )

    def list_history(self, session: Session, deal_id: uuid.UUID) -> Sequence[DealStageHistory]:
        return session.scalars(
            select(DealStageHistory)
            .where(DealStageHistory.deal_id == deal_id)
            .order_by(DealStageHistory.changed_at.asc(), DealStageHistory.id.asc())
        ).all()
