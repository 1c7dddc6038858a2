from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from civicwatch.config import settings
from civicwatch.exceptions import AppError
from civicwatch.services.enrichment import EnrichmentClient
from civicwatch.services.progress import ProgressHub
from civicwatch.services.scheduler import Scheduler


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: Optional[str] = Security(_api_key_header),
) -> str:
    """Guards every /api/v1 route plus the admin metrics and cache routes."""
    if not api_key or not hmac.compare_digest(api_key.encode(), settings.API_KEY.encode()):
        raise AuthenticationError("Invalid or missing API key")
    return api_key


def get_progress_hub(request: Request) -> ProgressHub:
    return request.app.state.progress_hub


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def get_enricher(request: Request) -> Optional[EnrichmentClient]:
    return request.app.state.enricher
