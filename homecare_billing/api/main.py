"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from homecare_billing.api.middleware import RequestIDMiddleware, MetricsMiddleware
from homecare_billing.api.v1 import receipts, rules, visits
from homecare_billing.infrastructure.observability.logging import setup_logging
from homecare_billing.config import settings

setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure the billing API"""
    app = FastAPI(
        title="Home-Visit Nursing Billing",
        description="Bonus rule evaluation and monthly receipt lifecycle",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Last added runs first
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(receipts.router, prefix="/v1", tags=["receipts"])
    app.include_router(visits.router, prefix="/v1", tags=["visits"])
    app.include_router(rules.router, prefix="/v1", tags=["rules"])

    return app


app = create_app()
