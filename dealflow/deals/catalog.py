from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealflow import audit
from dealflow.deals.context import DealContext
from dealflow.deals.errors import ConflictError, InvalidStateError, NotFoundError, PipelineNotFoundError, ValidationFailedError
from dealflow.deals.models import Pipeline, PipelineStage
from dealflow.deals.repository import PipelineRepository, transaction
from dealflow.deals.schemas import PipelineCreate, PipelineRead, PipelineStageCreate, PipelineStageRead
from dealflow.deals.validation import DealValidator


logger = logging.getLogger("dealflow.deals.catalog")

COLOR_PATTERN = re.compile(r"#[0-9A-Fa-f]{6}")


@dataclass(slots=True)
class PipelineCatalogService:
    """Maintains tenant pipelines and their ordered stages.

    Deal transitions and validation only read these definitions; every write goes through here.
    """

    entity_type = "deals.pipeline"

    pipeline_repository: PipelineRepository = PipelineRepository()
    validator: DealValidator = field(default_factory=DealValidator)

    def create_pipeline(self, session: Session, ctx: DealContext, dto: PipelineCreate) -> PipelineRead:
        with transaction(session):
            pipeline = Pipeline(
                tenant_id=ctx.tenant_id,
                name=dto.name.strip(),
                description=dto.description,
                is_active=dto.is_active,
                is_default=dto.is_default,
                display_order=dto.display_order,
                created_by=ctx.user_id,
                updated_by=ctx.user_id,
            )
            session.add(pipeline)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Pipeline already exists: {pipeline.name}", details={"name": pipeline.name}) from exc

            if dto.is_default:
                self.pipeline_repository.unset_other_defaults(session, ctx.tenant_id, pipeline.id)

            audit.record(
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                entity_type=self.entity_type,
                entity_id=str(pipeline.id),
                action="create",
                before=None,
                after={"name": pipeline.name, "is_default": pipeline.is_default, "is_active": pipeline.is_active},
                correlation_id=ctx.correlation_id,
            )
            pipeline_id = pipeline.id

        logger.info("pipeline_created", extra={"pipeline_id": str(pipeline_id), "tenant_id": ctx.tenant_id})
        return self._to_pipeline_read(session, ctx, pipeline_id)

    def add_stage(
        self,
        session: Session,
        ctx: DealContext,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        with transaction(session):
            pipeline = self.pipeline_repository.get_pipeline(session, ctx.tenant_id, pipeline_id)
            if pipeline is None:
                raise PipelineNotFoundError(pipeline_id)

            self._validate_stage_definition(pipeline, dto)

            stage = PipelineStage(
                pipeline_id=pipeline.id,
                name=dto.name.strip(),
                description=dto.description,
                display_order=dto.display_order,
                default_probability=dto.default_probability,
                is_active=dto.is_active,
                is_closed=dto.is_closed,
                is_won=dto.is_won,
                color=dto.color,
                created_by=ctx.user_id,
                updated_by=ctx.user_id,
            )
            session.add(stage)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Stage already exists: {stage.name}", details={"name": stage.name}) from exc

            audit.record(
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                entity_type=f"{self.entity_type}.stage",
                entity_id=str(stage.id),
                action="create",
                before=None,
                after={
                    "pipeline_id": str(stage.pipeline_id),
                    "name": stage.name,
                    "display_order": stage.display_order,
                    "is_closed": stage.is_closed,
                    "is_won": stage.is_won,
                },
                correlation_id=ctx.correlation_id,
            )

        logger.info(
            "pipeline_stage_created",
            extra={"pipeline_id": str(pipeline_id), "stage_id": str(stage.id), "tenant_id": ctx.tenant_id},
        )
        return PipelineStageRead.model_validate(stage)

    def get_pipeline(self, session: Session, ctx: DealContext, pipeline_id: uuid.UUID) -> PipelineRead:
        return self._to_pipeline_read(session, ctx, pipeline_id)

    def get_default_pipeline(self, session: Session, ctx: DealContext) -> PipelineRead:
        pipeline = self.pipeline_repository.get_default_pipeline(session, ctx.tenant_id)
        if pipeline is None:
            raise NotFoundError("Default pipeline not configured", code="PIPELINE_NOT_FOUND")
        return PipelineRead.model_validate(pipeline)

    def list_pipelines(self, session: Session, ctx: DealContext, *, include_inactive: bool = False) -> list[PipelineRead]:
        rows = self.pipeline_repository.list_pipelines(session, ctx.tenant_id, include_inactive=include_inactive)
        return [PipelineRead.model_validate(row) for row in rows]

    def list_stages(self, session: Session, ctx: DealContext, pipeline_id: uuid.UUID) -> list[PipelineStageRead]:
        pipeline = self.pipeline_repository.get_pipeline(session, ctx.tenant_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return [PipelineStageRead.model_validate(stage) for stage in self.pipeline_repository.list_stages(session, pipeline.id)]

    def _validate_stage_definition(self, pipeline: Pipeline, dto: PipelineStageCreate) -> None:
        if dto.is_won and not dto.is_closed:
            raise InvalidStateError(
                "A won stage must also be closed",
                code="INVALID_STAGE_FLAGS",
                details={"is_won": dto.is_won, "is_closed": dto.is_closed},
            )
        if any(existing.display_order == dto.display_order for existing in pipeline.stages):
            raise InvalidStateError(
                f"Display order {dto.display_order} is already used in this pipeline",
                code="DUPLICATE_STAGE_ORDER",
                details={"display_order": dto.display_order},
            )
        if dto.default_probability is not None:
            self.validator.validate_probability(Decimal(dto.default_probability))
        if dto.color is not None and not COLOR_PATTERN.fullmatch(dto.color):
            raise ValidationFailedError(
                "Color must be a hex value like #1A2B3C",
                code="INVALID_COLOR",
                details={"color": dto.color},
            )

    def _to_pipeline_read(self, session: Session, ctx: DealContext, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self.pipeline_repository.get_pipeline(session, ctx.tenant_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return PipelineRead.model_validate(pipeline)


pipeline_catalog_service = PipelineCatalogService()
