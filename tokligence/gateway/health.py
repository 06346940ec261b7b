"""Health probe for the gateway HTTP surface."""

from __future__ import annotations

import logging

import httpx

from tokligence.schemas import HealthResult, HealthState

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PATH = "/health"
DEFAULT_TIMEOUT = 5.0  # seconds

# Body fields surfaced from a healthy response
DETAIL_FIELDS = ("status", "pii_firewall_enabled", "pii_firewall_mode")


class HealthProbe:
    """Issues a bounded GET against the health endpoint and classifies it."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def check(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        path: str = DEFAULT_HEALTH_PATH,
    ) -> HealthResult:
        """Probe the gateway.

        Args:
            base_url: Gateway base URL
            timeout: Overall request timeout in seconds
            path: Health endpoint path

        Returns:
            HealthResult: healthy on 2xx, degraded on any other status,
            unreachable on connection errors and timeouts
        """
        url = base_url.rstrip("/") + "/" + path.lstrip("/")
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            logger.debug(f"Health probe timed out: {url}")
            return HealthResult(state=HealthState.UNREACHABLE, error=f"timed out after {timeout}s: {e}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Health probe failed: {url}: {e}")
            return HealthResult(state=HealthState.UNREACHABLE, error=str(e) or type(e).__name__)

        if not response.is_success:
            return HealthResult(state=HealthState.DEGRADED, status_code=response.status_code)

        details = {}
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            details = {k: body[k] for k in DETAIL_FIELDS if k in body}

        return HealthResult(
            state=HealthState.HEALTHY,
            status_code=response.status_code,
            details=details,
        )


def describe(result: HealthResult) -> str:
    """One-line human description of a health result."""
    if result.state == HealthState.HEALTHY:
        text = f"Gateway OK: {result.details.get('status') or 'healthy'}"
        if result.details.get("pii_firewall_enabled"):
            text += f" | PII: {result.details.get('pii_firewall_mode') or 'enabled'}"
        return text
    if result.state == HealthState.DEGRADED:
        return f"Gateway responded: {result.status_code}"
    return f"Gateway not reachable: {result.error}"
