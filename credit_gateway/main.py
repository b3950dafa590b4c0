from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import time

from credit_gateway.api.dependencies import Services
from credit_gateway.api.routes import VERSION, router
from credit_gateway.auth.api_key import KeyAuthenticator
from credit_gateway.auth.rate_limiter import RateLimiter
from credit_gateway.billing.database import create_database
from credit_gateway.billing.ledger import CreditLedger
from credit_gateway.billing.pricing import CostEstimator
from credit_gateway.billing.usage import UsageRecorder
from credit_gateway.config import Settings, settings as default_settings
from credit_gateway.errors import GatewayError, InvalidRequest, NotFound
from credit_gateway.gateway import Gateway
from credit_gateway.providers.catalog import ModelCatalog
from credit_gateway.providers.openrouter import OpenRouterProvider, create_http_client
from credit_gateway.utils.logging import setup_logging, get_logger
from credit_gateway.utils.tasks import TaskTracker

# Setup logging
setup_logging()
logger = get_logger(__name__)


async def build_services(settings: Settings) -> Services:
    """Create the shared storage client, HTTP client and pipeline components."""
    database = create_database(settings)
    http_client = create_http_client(settings)
    tracker = TaskTracker()
    provider = OpenRouterProvider(http_client, settings)
    gateway = Gateway(
        authenticator=KeyAuthenticator(database, tracker),
        rate_limiter=RateLimiter(database),
        estimator=CostEstimator(database, settings),
        ledger=CreditLedger(database),
        provider=provider,
        recorder=UsageRecorder(database, tracker),
    )
    return Services(
        database=database,
        http_client=http_client,
        tracker=tracker,
        gateway=gateway,
        catalog=ModelCatalog(provider, ttl=settings.models_cache_ttl),
    )


async def close_services(services: Services) -> None:
    """Flush background work, then release connections."""
    await services.tracker.drain()
    await services.http_client.aclose()
    await services.database.dispose()


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_envelope(),
        headers=exc.headers or None,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tests may install their own services before startup
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = await build_services(settings)
            logger.info("Gateway services initialized")
        try:
            yield
        finally:
            if owned:
                await close_services(app.state.services)
                logger.info("Gateway services closed")

    app = FastAPI(
        title="Credit Gateway",
        description="Credit-metered, per-API-key gateway for OpenAI-compatible model APIs",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests."""
        start_time = time.time()
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
            },
        )
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time": process_time,
            },
        )
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(NotFound())
        error = InvalidRequest(str(exc.detail), code=exc.status_code)
        error.status_code = exc.status_code
        return error_response(error)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(InvalidRequest("Invalid request", code="invalid_request"))

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint."""
        return {
            "service": "Credit Gateway",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    # Register routes; the router ends with a catch-all, so it goes last
    app.include_router(router)

    return app


app = create_app()
