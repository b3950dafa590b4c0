"""HTTP routes: the proxy endpoint plus models, health and metrics."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel

from credit_gateway.api.dependencies import get_catalog, get_credential, get_gateway
from credit_gateway.errors import NotFound
from credit_gateway.gateway import Gateway
from credit_gateway.providers.catalog import ModelCatalog

VERSION = "1.0.0"

router = APIRouter()


class HealthResponse(BaseModel):
    """Liveness probe response."""

    status: str
    timestamp: datetime
    version: str


class ModelList(BaseModel):
    """OpenAI-compatible model list."""

    object: str = "list"
    data: List[Dict[str, Any]]


@router.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc), version=VERSION)


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/v1/models", response_model=ModelList)
async def list_models(catalog: ModelCatalog = Depends(get_catalog)):
    """List models available through the gateway."""
    return ModelList(data=await catalog.list_models())


@router.post("/v1/{path:path}")
async def proxy(
    path: str,
    request: Request,
    credential: Optional[str] = Depends(get_credential),
    gateway: Gateway = Depends(get_gateway),
):
    """
    OpenAI-compatible proxy endpoint with credit metering.

    The upstream body is returned unchanged on success.
    """
    body = await gateway.handle(f"/v1/{path}", credential, await request.body())
    return JSONResponse(content=body)


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def not_found(path: str):
    """Catch-all for unsupported paths and methods."""
    raise NotFound()
