from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class DealContext:
    """Tenant and actor identity passed explicitly to every deal operation."""

    tenant_id: str
    user_id: str
    correlation_id: str | None = None
    permissions: set[str] = field(default_factory=set)
