import os
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .errors import register_exception_handlers
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .routes.services import router as services_router
from .routes.admin import router as admin_router
from .services.container import Components, build_components
from .services.security_audit import SecurityAuditMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata


logger = structlog.get_logger(__name__)


def create_app(components: Optional[Components] = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # One instance per process, reachable through app.state
    components = components or build_components(settings)
    app.state.components = components
    app.state.security_audit = components.security_audit

    # Middlewares (last added runs first)
    app.add_middleware(SecurityAuditMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_exception_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(services_router)
    app.include_router(admin_router)

    # Metrics
    if settings.metrics_enabled:
        Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("startup_tables_verified", tables=sorted(Base.metadata.tables.keys()))
        report = components.security_audit.scan_for_vulnerabilities()
        if report["vulnerabilities"]:
            logger.warning(
                "security_posture",
                score=report["score"],
                findings=[v["type"] for v in report["vulnerabilities"]],
            )

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("service_integrity.main:app", host=settings.host, port=settings.port)
