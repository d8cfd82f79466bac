"""FastAPI application setup for storekb."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storekb.api.routes_admin import router as admin_router
from storekb.api.routes_ingest import router as ingest_router
from storekb.api.routes_query import router as query_router
from storekb.api.routes_status import router as status_router
from storekb.core.config import Settings, get_settings
from storekb.core.errors import StoreKBError
from storekb.core.logging import configure_logging, get_logger
from storekb.services import Services, build_services

logger = get_logger(__name__)


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API. Services are created on startup unless supplied."""
    app = FastAPI(
        title="storekb",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    app.include_router(ingest_router, prefix="/jobs", tags=["ingest"])
    app.include_router(status_router, prefix="/jobs", tags=["status"])
    app.include_router(query_router, prefix="", tags=["query"])
    app.include_router(admin_router, prefix="", tags=["admin"])

    @app.exception_handler(StoreKBError)
    async def storekb_error_handler(request: Request, exc: StoreKBError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.http_status,
            content={"code": exc.code, "message": exc.user_message},
        )

    @app.on_event("startup")
    async def startup() -> None:
        """Build services on first start."""
        if app.state.services is None:
            resolved = settings or get_settings()
            configure_logging(resolved.log_level, use_json=resolved.log_json)
            app.state.services = build_services(resolved)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if app.state.services is not None:
            await app.state.services.aclose()

    @app.get("/health", tags=["admin"])
    def health() -> dict[str, bool]:
        """Simple liveness check."""
        return {"ok": True}

    return app


app = create_app()
