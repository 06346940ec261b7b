"""Tests for the gateway health probe."""

import httpx
import pytest

from conftest import GATEWAY_URL
from tokligence.gateway.health import HealthProbe, describe
from tokligence.schemas import HealthResult, HealthState


def _probe(mock_transport, handler) -> HealthProbe:
    return HealthProbe(transport=mock_transport(handler))


class TestHealthProbe:
    """Test health classification."""

    @pytest.mark.asyncio
    async def test_healthy(self, mock_transport):
        """A 2xx response is healthy and keeps the known body fields."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"status": "ok", "pii_firewall_enabled": True, "pii_firewall_mode": "redact", "uptime": 12},
            )

        result = await _probe(mock_transport, handler).check(GATEWAY_URL + "/")

        assert result.state == HealthState.HEALTHY
        assert result.healthy
        assert result.status_code == 200
        assert result.details == {"status": "ok", "pii_firewall_enabled": True, "pii_firewall_mode": "redact"}
        assert str(seen[0].url) == "http://gateway.test/health"

    @pytest.mark.asyncio
    async def test_healthy_without_json(self, mock_transport):
        """A non-JSON 2xx body is still healthy."""
        result = await _probe(mock_transport, lambda r: httpx.Response(204)).check(GATEWAY_URL)
        assert result.state == HealthState.HEALTHY
        assert result.details == {}

    @pytest.mark.asyncio
    async def test_custom_path(self, mock_transport):
        """The health path is configurable."""
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={})

        await _probe(mock_transport, handler).check(GATEWAY_URL, path="healthz")
        assert seen == ["/healthz"]

    @pytest.mark.asyncio
    async def test_degraded(self, mock_transport):
        """Any other status is degraded with the code recorded."""
        result = await _probe(mock_transport, lambda r: httpx.Response(503)).check(GATEWAY_URL)
        assert result.state == HealthState.DEGRADED
        assert result.status_code == 503
        assert not result.healthy

    @pytest.mark.asyncio
    async def test_connection_refused(self, mock_transport):
        """Connection errors are unreachable."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _probe(mock_transport, handler).check(GATEWAY_URL)
        assert result.state == HealthState.UNREACHABLE
        assert "connection refused" in result.error
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_timeout(self, mock_transport):
        """Timeouts are unreachable."""

        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = await _probe(mock_transport, handler).check(GATEWAY_URL, timeout=0.5)
        assert result.state == HealthState.UNREACHABLE
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_malformed_url(self, mock_transport):
        """A malformed base URL is unreachable, not an exception."""
        probe = _probe(mock_transport, lambda r: httpx.Response(200))
        result = await probe.check("http://gateway.test:notaport")
        assert result.state == HealthState.UNREACHABLE
        assert result.error


class TestDescribe:
    """Test the human-readable summary."""

    def test_healthy_with_pii(self):
        result = HealthResult(
            state=HealthState.HEALTHY,
            status_code=200,
            details={"status": "ok", "pii_firewall_enabled": True, "pii_firewall_mode": "enforce"},
        )
        assert describe(result) == "Gateway OK: ok | PII: enforce"

    def test_healthy_without_details(self):
        assert describe(HealthResult(state=HealthState.HEALTHY)) == "Gateway OK: healthy"

    def test_degraded(self):
        result = HealthResult(state=HealthState.DEGRADED, status_code=502)
        assert describe(result) == "Gateway responded: 502"

    def test_unreachable(self):
        result = HealthResult(state=HealthState.UNREACHABLE, error="connection refused")
        assert describe(result) == "Gateway not reachable: connection refused"
