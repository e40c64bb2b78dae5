"""Tests for the async API client (httpx.MockTransport, no network)."""

import httpx
import pytest

from services.api.client import CallScopeClient, error_from_response
from services.errors import AppError, ErrorKind


def api_client(handler):
    transport = httpx.MockTransport(handler)
    return CallScopeClient(
        "http://callscope.test/",
        user_id="u1",
        user_email="jane@example.com",
        client=httpx.AsyncClient(transport=transport),
    )


# ── Error mapping ──

class TestErrorFromResponse:
    def test_maps_known_statuses(self):
        err = error_from_response(httpx.Response(403, json={"error": "Forbidden", "code": "FORBIDDEN"}))
        assert err.kind == ErrorKind.AUTH
        assert err.status_code == 403
        assert err.code == "FORBIDDEN"
        assert err.message == "Forbidden"

    def test_unknown_status_is_external(self):
        err = error_from_response(httpx.Response(502, text="bad gateway"))
        assert err.kind == ErrorKind.EXTERNAL_SERVICE
        assert err.message == "bad gateway"

    def test_empty_body(self):
        err = error_from_response(httpx.Response(404))
        assert err.kind == ErrorKind.NOT_FOUND
        assert err.message == "HTTP 404"


# ── Requests ──

class TestCallScopeClient:
    @pytest.mark.asyncio
    async def test_sends_identity_and_triggers(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"analysis_id": "c1_u1_v1"})

        async with api_client(handler) as client:
            assert await client.trigger_analysis("c1") == "c1_u1_v1"

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/calls/c1/analyze"
        assert seen[0].headers["X-User-Id"] == "u1"
        assert seen[0].headers["X-User-Email"] == "jane@example.com"

    @pytest.mark.asyncio
    async def test_list_calls_passes_date_range(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["from"] == "2025-01-01"
            assert "to" not in request.url.params
            return httpx.Response(200, json=[])

        async with api_client(handler) as client:
            assert await client.list_calls("2025-01-01") == []

    @pytest.mark.asyncio
    async def test_status_read(self):
        handler = lambda request: httpx.Response(200, json={"status": "failed", "error": "boom"})
        async with api_client(handler) as client:
            status = await client.get_job_status("c1_u1_v1")
        assert (status.status, status.error) == ("failed", "boom")

    @pytest.mark.asyncio
    async def test_error_response_raises_app_error(self):
        handler = lambda request: httpx.Response(404, json={"error": "Analysis not found", "code": "NOT_FOUND"})
        async with api_client(handler) as client:
            with pytest.raises(AppError) as exc_info:
                await client.get_analysis("c1")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
