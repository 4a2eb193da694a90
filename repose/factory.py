"""
FastAPI application factory.
"""

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings
from .core.database import close_db, init_db
from .core.errors import ReposeError, repose_error_handler
from .core.redis import close_redis
from .api.router import router

logger = logging.getLogger(__name__)


async def _http_error_handler(request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg', 'invalid')}" if where else first.get("msg", "Invalid request")
    return JSONResponse(status_code=422, content={"success": False, "error": message})


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Repose Studio",
        description="Fashion repose production pipeline",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors: one JSON shape for everything ────────────────────
    app.add_exception_handler(ReposeError, repose_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting Repose Studio (env=%s)", settings.env)

        await init_db()

        from .core.flags import get_flags
        flags = get_flags()
        logger.info(
            "Flags: auth0=%s s3=%s redis=%s firecrawl=%s",
            flags.use_auth0, flags.use_s3, flags.use_redis, flags.use_firecrawl,
        )
        if not settings.ai_gateway_api_key:
            logger.warning("AI_GATEWAY_API_KEY not set; generation will fail")

        logger.info("Repose Studio is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        from .services.ai_gateway import close_client
        await close_client()
        await close_db()
        await close_redis()
        logger.info("Repose Studio shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
