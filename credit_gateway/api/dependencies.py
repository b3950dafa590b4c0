"""FastAPI dependencies resolving the shared services."""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from credit_gateway.billing.database import Database
from credit_gateway.gateway import Gateway
from credit_gateway.providers.catalog import ModelCatalog
from credit_gateway.utils.tasks import TaskTracker

# HTTP Bearer token scheme; a missing header is rejected by the authenticator
security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Process-wide state built once at startup and shared by every request."""

    database: Database
    http_client: httpx.AsyncClient
    tracker: TaskTracker
    gateway: Gateway
    catalog: ModelCatalog


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_gateway(request: Request) -> Gateway:
    return get_services(request).gateway


def get_catalog(request: Request) -> ModelCatalog:
    return get_services(request).catalog


def get_credential(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> Optional[str]:
    """Bearer secret from the Authorization header, if any."""
    if credentials is None:
        return None
    return credentials.credentials.strip()
