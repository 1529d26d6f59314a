from __future__ import annotations

from typing import Any

import httpx

from sommelier.config import ServiceSettings
from sommelier.errors import RateLimited, ServiceError, parse_retry_after


def build_service_client(settings: ServiceSettings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Shared AsyncClient for the voice gateway endpoints."""
    headers = {}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return httpx.AsyncClient(
        base_url=settings.base_url,
        headers=headers,
        timeout=httpx.Timeout(settings.timeout_seconds, connect=5.0),
        transport=transport,
    )


def error_detail(response: httpx.Response) -> tuple[str | None, Any]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return (text or None), None
    if isinstance(body, dict):
        return body.get("error") or body.get("message"), body.get("details")
    return None, body


def raise_for_service_status(response: httpx.Response) -> None:
    """Map a non-2xx gateway response onto the pipeline's error types."""
    if response.is_success:
        return
    message, details = error_detail(response)
    if response.status_code == 429:
        raise RateLimited(message, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    raise ServiceError(
        message or f"Service responded with {response.status_code}",
        status_code=response.status_code,
        details=details,
    )


__all__ = ["build_service_client", "error_detail", "raise_for_service_status"]
