from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from dealflow import events
from dealflow.deals.context import DealContext
from dealflow.deals.models import Deal, utcnow
from dealflow.metrics import observe_event_publish_failure


logger = logging.getLogger("dealflow.deals.events")

DEAL_CREATED = "deals.deal.created"
DEAL_UPDATED = "deals.deal.updated"
DEAL_DELETED = "deals.deal.deleted"
DEAL_STAGE_CHANGED = "deals.deal.stage_changed"
DEAL_CLOSED = "deals.deal.closed"
DEAL_REOPENED = "deals.deal.reopened"


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def deal_snapshot(deal: Deal) -> dict[str, Any]:
    return {
        "deal_id": str(deal.id),
        "pipeline_id": str(deal.pipeline_id),
        "stage_id": str(deal.stage_id),
        "owner_id": _str_or_none(deal.owner_id),
        "name": deal.name,
        "amount": _str_or_none(deal.amount),
        "currency": deal.currency,
        "probability": _str_or_none(deal.probability),
        "weighted_amount": str(deal.weighted_amount),
        "is_closed": deal.is_closed,
        "is_won": deal.is_won,
        "expected_close_date": deal.expected_close_date.isoformat() if deal.expected_close_date else None,
        "actual_close_date": deal.actual_close_date.isoformat() if deal.actual_close_date else None,
        "deal_type": deal.deal_type,
        "lead_source": deal.lead_source,
        "account_id": _str_or_none(deal.account_id),
        "contact_id": _str_or_none(deal.contact_id),
        "tags": list(deal.tags or []),
        "custom_fields": dict(deal.custom_fields or {}),
    }


@dataclass(slots=True)
class DealEventPublisher:
    """Fire-and-forget notifications emitted after a deal mutation commits."""

    def deal_created(self, ctx: DealContext, snapshot: dict[str, Any]) -> None:
        self._send(self._envelope(ctx, DEAL_CREATED, snapshot))

    def deal_updated(self, ctx: DealContext, snapshot: dict[str, Any]) -> None:
        self._send(self._envelope(ctx, DEAL_UPDATED, snapshot))

    def deal_deleted(self, ctx: DealContext, snapshot: dict[str, Any]) -> None:
        self._send(self._envelope(ctx, DEAL_DELETED, snapshot))

    def stage_changed(
        self,
        ctx: DealContext,
        snapshot: dict[str, Any],
        *,
        from_stage_id: uuid.UUID | None,
        was_closed: bool,
    ) -> None:
        payload = {
            **snapshot,
            "stage_change": {"from_stage_id": _str_or_none(from_stage_id), "to_stage_id": snapshot["stage_id"]},
        }
        self._send(self._envelope(ctx, DEAL_STAGE_CHANGED, payload))

        if snapshot["is_closed"] and not was_closed:
            self._send(self._envelope(ctx, DEAL_CLOSED, snapshot))
        elif was_closed and not snapshot["is_closed"]:
            self._send(self._envelope(ctx, DEAL_REOPENED, snapshot))

    def _envelope(self, ctx: DealContext, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": ctx.user_id,
            "tenant_id": ctx.tenant_id,
            "deal_id": payload.get("deal_id"),
            "pipeline_id": payload.get("pipeline_id"),
            "stage_id": payload.get("stage_id"),
            "owner_id": payload.get("owner_id"),
            "correlation_id": ctx.correlation_id,
            "version": 1,
            "payload": payload,
        }

    def _send(self, envelope: dict[str, Any]) -> None:
        try:
            events.publish(envelope)
        except Exception as exc:
            observe_event_publish_failure(envelope["event_type"])
            logger.exception(
                "deal_event_publish_failed",
                extra={
                    "event_type": envelope["event_type"],
                    "deal_id": envelope.get("deal_id"),
                    "tenant_id": envelope.get("tenant_id"),
                    "error": str(exc),
                },
            )


deal_event_publisher = DealEventPublisher()
