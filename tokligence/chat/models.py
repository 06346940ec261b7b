"""Model listing for the gateway's OpenAI-compatible surface."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tokligence.config import GatewayConfig

logger = logging.getLogger(__name__)

MODELS_TIMEOUT = 10.0  # seconds


class ModelListError(Exception):
    """Raised when the models endpoint cannot be queried."""

    pass


def parse_models(body: Any) -> list[str]:
    """Extract model ids from either supported response shape.

    Accepts {"data": [{"id": ...}]} or {"models": [id | {"id": ...}]}.
    """
    if not isinstance(body, dict):
        return []

    ids: list[Any] = []
    if isinstance(body.get("data"), list):
        ids = [m.get("id") if isinstance(m, dict) else None for m in body["data"]]
    elif isinstance(body.get("models"), list):
        ids = [m.get("id") if isinstance(m, dict) else m for m in body["models"]]

    return [str(m) for m in ids if m]


async def list_models(
    config: GatewayConfig,
    api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """List the models the gateway exposes."""
    url = config.endpoint(config.models_path)
    headers = dict(config.request_headers)
    key = api_key or config.api_key
    if key and "Authorization" not in headers:
        headers["Authorization"] = f"Bearer {key}"

    try:
        async with httpx.AsyncClient(timeout=MODELS_TIMEOUT, transport=transport) as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ModelListError(f"Models endpoint returned HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error(f"Failed to list models from {url}: {e}")
        raise ModelListError(f"Failed to list models: {e}") from e

    try:
        body = response.json()
    except ValueError as e:
        raise ModelListError("Models endpoint did not return JSON") from e

    return parse_models(body)
