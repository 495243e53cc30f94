from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.core.context import RequestContextMiddleware
from dealflow.core.events import InternalEvent, event_bus
from dealflow.deals.notifications import DEAL_CLOSED, DEAL_REOPENED
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_deal_outcome(event: InternalEvent) -> None:
    logger.info(
        "deal_outcome",
        extra={
            "event_name": event.name,
            "deal_id": event.payload.get("deal_id"),
            "tenant_id": event.payload.get("tenant_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(DEAL_CLOSED, _on_deal_outcome)
        event_bus.subscribe(DEAL_REOPENED, _on_deal_outcome)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "dealflow"})
    yield


app = FastAPI(title="Dealflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("dealflow", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
