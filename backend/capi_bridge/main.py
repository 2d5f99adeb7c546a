"""FastAPI application entrypoint.

Configures CORS, error rendering, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .deps import get_settings
from .exceptions import ConversionError
from .routers import conversions as conversions_router
from .telemetry import init_observability
from . import schemas

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_PREFIX = "/api"

API_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class ConversionCORSMiddleware(BaseHTTPMiddleware):
    """Permissive CORS for the browser-facing /api routes.

    WHY: Tracking scripts run on storefront hosts we do not enumerate and
    send no credentials, so the wildcard origin is safe and required.
    Preflight requests are answered here with 204 before reaching routing.
    """

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith(API_PREFIX):
            return await call_next(request)

        if request.method == "OPTIONS":
            return StarletteResponse(status_code=204, headers=API_CORS_HEADERS)

        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = API_CORS_HEADERS["Access-Control-Allow-Origin"]
        return response


async def conversion_error_handler(request: Request, exc: ConversionError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"[CONVERSIONS] {exc.kind} on {request.url.path}: {exc.message}",
        extra={"kind": exc.kind, "status_code": exc.status_code}
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def create_app() -> FastAPI:
    status = init_observability()
    logger.info(f"[STARTUP] Observability initialized: {status}")

    app = FastAPI(
        title="Conversion Relay API",
        description="""
        Relays browser conversion signals to the Meta Conversions API.

        - Purchases are verified against Stripe Checkout before being reported
        - Clicks, outbound clicks, leads and named events are reported directly
        - PII is SHA-256 hashed before it leaves the service
        """,
        version="1.0.0",
    )

    settings = get_settings()

    cors_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added after CORSMiddleware so it runs first and owns /api preflights
    app.add_middleware(ConversionCORSMiddleware)

    app.add_exception_handler(ConversionError, conversion_error_handler)

    app.include_router(conversions_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
