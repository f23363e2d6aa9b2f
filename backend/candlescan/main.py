"""
CandleScan — FastAPI Application Entry Point

Mounts the scan, data-pipeline and cache endpoints under /v1/api.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from candlescan.config import get_settings
from candlescan.routes import cache_router, data_router, health_router, scan_router

log = structlog.get_logger("candlescan.startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the store schema on startup; release connections on shutdown."""
    settings = get_settings()
    log.info(
        "startup",
        env=settings.app_env,
        store=settings.store_backend,
        cache=settings.cache_backend,
    )

    # ── Store: ensure schema ──
    from candlescan.container import get_service
    store = get_service().store
    ensure_tables = getattr(store, "ensure_tables", None)
    if ensure_tables is not None:
        try:
            ensure_tables()
            log.info("store.ready")
        except Exception as exc:
            log.warning("store.init_failed", error=str(exc))

    yield

    # ── Shutdown ──
    close = getattr(store, "close", None)
    if close is not None:
        close()
    log.info("shutdown")


def create_app() -> FastAPI:
    """Build the API app with handlers and versioned routers attached."""
    settings = get_settings()

    app = FastAPI(
        title="CandleScan",
        description="Candle roll-up pipeline and accumulation scanner.",
        version="1.0.0",
        debug=settings.app_debug,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Service health checks"},
            {"name": "Scans", "description": "Accumulation scans, cached and uncached"},
            {"name": "Data", "description": "Candle ingestion and timeframe roll-up"},
            {"name": "Cache", "description": "Scan result cache maintenance"},
        ],
    )

    # ── Global Error Handlers ──
    from candlescan.error_handlers import register_error_handlers
    register_error_handlers(app)

    # ── Routes (unversioned) ──
    app.include_router(health_router, tags=["Health"])

    # ── Routes (v1 API) ──
    API_V1 = "/v1/api"
    app.include_router(health_router, prefix=API_V1, tags=["Health"])
    app.include_router(scan_router, prefix=API_V1, tags=["Scans"])
    app.include_router(data_router, prefix=API_V1, tags=["Data"])
    app.include_router(cache_router, prefix=API_V1, tags=["Cache"])

    return app


app = create_app()
