"""
FastAPI application entry point for the tenant access service.

Tenant identity is attached by TenantContextMiddleware from the headers the
upstream auth gateway sets. All /api/ routes require a tenant context.

Run with:
    uvicorn tenant_access.main:app
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from tenant_access import __version__
from tenant_access.api.routes import access
from tenant_access.api.routes import feature_overrides
from tenant_access.database.session import create_tables
from tenant_access.entitlements.catalog import get_tier_catalog
from tenant_access.entitlements.errors import CatalogError
from tenant_access.platform.tenant_context import TenantContextMiddleware

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting tenant access API", extra={"version": __version__})

    # Load the tier catalog once at startup so a bad file shows in deploy logs
    try:
        catalog = get_tier_catalog()
        app.state.catalog_loaded = True
        logger.info("Tier catalog ready", extra={"catalog_version": catalog.version})
    except CatalogError as e:
        app.state.catalog_loaded = False
        logger.error(
            "Tier catalog failed to load. Access checks will return 503.",
            extra={"path": e.path, "error": e.detail},
        )

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Access checks will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True
        try:
            create_tables()
        except SQLAlchemyError as e:
            logger.error("Database schema check failed", extra={"error": str(e)})

    yield

    logger.info("Shutting down tenant access API")


app = FastAPI(
    title="Tenant Access API",
    description="Tenant lifecycle status and feature access decisions",
    version=__version__,
    lifespan=lifespan
)

# CRITICAL: Add tenant context middleware
tenant_middleware = TenantContextMiddleware()
app.middleware("http")(tenant_middleware)

app.include_router(access.router)
app.include_router(feature_overrides.router)


@app.get("/health", tags=["health"])
def health():
    """Liveness probe (no tenant context required)."""
    return {"status": "ok", "version": __version__}
