"""CallScope API client — async httpx wrapper over the HTTP API.

Identity travels as X-User-Id / X-User-Email headers, the same way the
session layer in front of the server supplies it. Error responses come back
as AppError with the kind implied by the status code.
"""

import httpx
from loguru import logger

from config.schemas import AnalysisJob, CallSummary, StatusResponse
from services.errors import AppError, ErrorKind

_KIND_BY_STATUS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    404: ErrorKind.NOT_FOUND,
}


def error_from_response(resp: httpx.Response) -> AppError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    kind = _KIND_BY_STATUS.get(resp.status_code, ErrorKind.EXTERNAL_SERVICE)
    message = body.get("error") or resp.text or f"HTTP {resp.status_code}"
    return AppError(kind, message, resp.status_code, body.get("code") or kind.name)


class CallScopeClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        user_email: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"X-User-Id": user_id, "X-User-Email": user_email}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "CallScopeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs):
        resp = await self._client.request(method, f"{self.base_url}{path}", headers=self._headers, **kwargs)
        if resp.status_code >= 400:
            err = error_from_response(resp)
            logger.debug(f"{method} {path} -> {resp.status_code}: {err.message}")
            raise err
        return resp.json()

    # ── Calls ──

    async def list_calls(self, date_from: str | None = None, date_to: str | None = None) -> list[CallSummary]:
        params = {k: v for k, v in (("from", date_from), ("to", date_to)) if v}
        data = await self._request("GET", "/api/calls", params=params)
        return [CallSummary.model_validate(c) for c in data]

    async def get_call(self, call_id: str) -> dict:
        return await self._request("GET", f"/api/calls/{call_id}")

    # ── Analysis ──

    async def trigger_analysis(self, call_id: str) -> str:
        data = await self._request("POST", f"/api/calls/{call_id}/analyze")
        return data["analysis_id"]

    async def get_status(self, call_id: str) -> StatusResponse:
        return StatusResponse.model_validate(await self._request("GET", f"/api/calls/{call_id}/analysis/status"))

    async def get_job_status(self, analysis_id: str) -> StatusResponse:
        return StatusResponse.model_validate(await self._request("GET", f"/api/analyses/{analysis_id}/status"))

    async def get_analysis(self, call_id: str) -> AnalysisJob:
        return AnalysisJob.model_validate(await self._request("GET", f"/api/calls/{call_id}/analysis"))
