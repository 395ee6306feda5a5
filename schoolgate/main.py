"""FastAPI application entry point — wires the decision engine and audit pipeline.

Usage:
    python -m schoolgate.main

Route modules are mounted by the host application; this module only
provides the shared components on ``app.state`` and a health check.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from schoolgate.audit.builder import AuditEventBuilder, RedactionPolicy
from schoolgate.audit.pipeline import AuditPipeline
from schoolgate.audit.writer import AuditWriter
from schoolgate.authz.assignments import RoleAssignmentService
from schoolgate.authz.cache import RedisPermissionCache, build_permission_cache
from schoolgate.authz.service import AccessControl
from schoolgate.authz.store import PermissionStore
from schoolgate.config import settings
from schoolgate.db.engine import async_session_factory, db_lifespan

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting SchoolGate (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Decision engine
        store = PermissionStore(async_session_factory, query_timeout=settings.db.query_timeout_seconds)
        cache = build_permission_cache(store, settings.authz, redis_url=settings.db.redis_url)
        access_control = AccessControl(cache, super_admin_role=settings.authz.super_admin_role)

        # 3. Audit pipeline
        writer = AuditWriter(
            async_session_factory,
            critical_tables=settings.audit.critical_table_set,
            retries=settings.audit.write_retries,
            backoff_seconds=settings.audit.retry_backoff_seconds,
        )
        builder = AuditEventBuilder(RedactionPolicy.from_settings(settings.audit))
        pipeline = AuditPipeline(writer, builder, max_size=settings.audit.queue_max_size)
        await pipeline.start()
        logger.info("Audit pipeline started (redaction version %s)", builder.policy.version)

        app.state.permission_store = store
        app.state.access_control = access_control
        app.state.audit_pipeline = pipeline
        app.state.role_assignments = RoleAssignmentService(access_control, pipeline)

        try:
            yield
        finally:
            logger.info("Shutting down SchoolGate...")

            await pipeline.stop()
            logger.info("Audit pipeline drained")

            if isinstance(cache, RedisPermissionCache):
                await cache.close()
                logger.info("Redis permission cache closed")

    logger.info("SchoolGate shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    app = FastAPI(
        title="SchoolGate",
        description="Authorization decisions and audit trail for the school management platform",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "schoolgate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
