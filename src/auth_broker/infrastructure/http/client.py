"""Async HTTP client for external user-directory APIs.

Every request carries the integration's API key as both a Bearer token
and an X-API-Key header. Timeouts and transport failures surface as
UpstreamError; non-2xx responses are returned to the caller, which decides
whether they mean "bad credentials" or "upstream down".
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from auth_broker.core.auth.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    status: int
    data: Any

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300


class ApiClient:
    """Thin wrapper over httpx.AsyncClient bound to one base URL.

    Parameters
    ----------
    base_url:
        Root URL of the external system.
    api_key:
        Credential sent with every request.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests pass an httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
            self._headers["X-API-Key"] = api_key

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        url = f"{self._base_url}{path}"
        merged_headers = {**self._headers, **(headers or {})}

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, json=json, headers=merged_headers)
        except httpx.TimeoutException as e:
            logger.error(f"Request to {url} timed out: {e}")
            raise UpstreamError(f"Request to {path} timed out")
        except httpx.HTTPError as e:
            logger.error(f"Request to {url} failed: {e}")
            raise UpstreamError(f"Request to {path} failed")

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            logger.warning(f"{method} {url} returned {response.status_code}")
        return ApiResponse(status=response.status_code, data=data)

    async def get(self, path: str, **kwargs) -> ApiResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> ApiResponse:
        return await self.request("POST", path, **kwargs)
