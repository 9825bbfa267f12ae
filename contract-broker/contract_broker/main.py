from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api.broker_routes import router as broker_router
from .api.routes import router
from .config import Settings, get_settings
from .core.broker import Broker
from .core.correlation_middleware import CorrelationIDMiddleware
from .core.errors import problem_type
from .core.exceptions import BrokerError, InvalidContract
from .core.schemas import ProblemDetails
from .logging_setup import setup_logging
from .webhooks.publisher import WebhookPublisher


def create_app(settings: Optional[Settings] = None, broker: Optional[Broker] = None) -> FastAPI:
    setup_logging()
    logger = logging.getLogger(__name__)
    settings = settings or get_settings()

    owns_broker = broker is None
    if broker is None:
        broker = Broker.from_settings(settings)
    broker.metrics.set_service_info(service=settings.SERVICE_NAME, version=__version__)

    webhooks = WebhookPublisher.from_settings(settings, metrics=broker.metrics)
    if webhooks.enabled:
        logger.info(f"Webhooks enabled for {len(webhooks.urls)} endpoint(s)")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_broker:
            broker.close()

    app = FastAPI(
        title="Contract Broker",
        description="""
        ## Consumer-Driven Contract Broker

        Stores consumer contracts, records provider verification results and
        answers whether a service version can be deployed to an environment.

        ### Key Features:
        - **Contracts**: append-only revisions per consumer version and provider
        - **Verifications**: results bound to the exact contract revision verified
        - **Tags**: environment and branch labels on participant versions
        - **can-i-deploy**: yes / no / unknown, with the unsatisfied contracts listed

        ### Authentication:
        When `BROKER_WRITE_TOKEN` is configured, write endpoints require the `X-Broker-Token` header.
        """,
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check and monitoring endpoints"},
            {"name": "contracts", "description": "Contract publishing and lookup"},
            {"name": "verifications", "description": "Provider verification results"},
            {"name": "tags", "description": "Participant version tags"},
            {"name": "deployment", "description": "Deployment-safety queries"},
            {"name": "metrics", "description": "Prometheus metrics for monitoring"},
        ],
    )
    app.state.settings = settings
    app.state.broker = broker
    app.state.webhooks = webhooks

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError):
        detail = exc.error_detail
        broker.metrics.record_structured_error(detail.category.value, detail.code.value, detail.severity.value)
        if detail.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.detail}", extra={"error": detail.to_dict()})
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.detail}", extra={"error": detail.to_dict()})
        problem = ProblemDetails(
            type=problem_type(detail.code),
            title=detail.code.name.replace("_", " ").title(),
            status=detail.http_status,
            detail=exc.detail,
            instance=request.url.path,
            errorCode=detail.code.value,
            issues=exc.issues if isinstance(exc, InvalidContract) else [],
        )
        return JSONResponse(
            status_code=detail.http_status,
            content=problem.model_dump(),
            headers={"Content-Type": "application/problem+json"}
        )

    app.add_middleware(CorrelationIDMiddleware)
    app.include_router(router)
    app.include_router(broker_router)
    return app


app = create_app()
