"""
Client for the upstream production-line REST API.
Used to seed the cache and to refresh the line list.
"""
from typing import Any, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from lineops.core.config import settings
from lineops.core.exceptions import UpstreamAPIError
from lineops.core.logging import get_logger
from lineops.schemas.status import ProductionLine, StatusChange


logger = get_logger(__name__)

_lines_adapter = TypeAdapter(list[ProductionLine])
_history_adapter = TypeAdapter(list[StatusChange])


class LinesClient:
    """
    Thin async wrapper around the lines endpoints.

    Responses use the envelope {"data": ...} on success and
    {"error": {"code", "message", "details"}} on failure.

    Usage:
        async with LinesClient() as client:
            lines = await client.get_lines()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.upstream_api_url,
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "LinesClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_lines(self) -> list[ProductionLine]:
        data = await self._get("/lines")
        return self._parse(_lines_adapter, data or [], "/lines")

    async def get_line(self, line_id: str) -> ProductionLine:
        path = f"/lines/{line_id}"
        data = await self._get(path)
        if data is None:
            raise UpstreamAPIError(f"Empty response for {path}", status_code=404)
        return self._parse(TypeAdapter(ProductionLine), data, path)

    async def get_history(self, line_id: str, limit: Optional[int] = None) -> list[StatusChange]:
        """
        Fetch a line's status log.

        Args:
            line_id: Line identifier
            limit: Maximum number of records (defaults to settings.history_limit)

        Returns:
            List of StatusChange records as returned by the API
        """
        path = f"/lines/{line_id}/history"
        data = await self._get(path, params={"limit": limit or settings.history_limit})
        return self._parse(_history_adapter, data or [], path)

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            logger.error("upstream.request_failed", path=path, error=str(e))
            raise UpstreamAPIError(f"Network error - {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error:
            error = payload.get("error") or {} if isinstance(payload, dict) else {}
            logger.warning(
                "upstream.error_response",
                path=path,
                status_code=response.status_code,
                error_code=error.get("code")
            )
            raise UpstreamAPIError(
                error.get("message") or f"HTTP {response.status_code} for {path}",
                status_code=response.status_code,
                error_code=error.get("code"),
                details=error.get("details"),
            )

        if not isinstance(payload, dict):
            raise UpstreamAPIError(f"Unexpected response body for {path}", status_code=response.status_code)
        return payload.get("data")

    @staticmethod
    def _parse(adapter: TypeAdapter, data: Any, path: str) -> Any:
        try:
            return adapter.validate_python(data)
        except ValidationError as e:
            raise UpstreamAPIError(f"Invalid response body for {path}", details=e.errors(include_url=False, include_context=False)) from e
