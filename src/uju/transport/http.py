"""
HTTP transport: one POST (or GET for the mailbox) per exchange.
"""

import logging
from typing import Optional

import httpx

from uju.errors import TransportError
from uju.transport import routes
from uju.transport.base import session_header

DEFAULT_BASE_URL = "http://localhost:8080"

logger = logging.getLogger(__name__)


class HttpTransport:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}{routes.ROOT}",
            headers={"User-Agent": "uju-client/0.1.0", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self, session: Optional[str]) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if session:
            headers.update(session_header(session))
        return headers

    async def request(self, route: str, body: Optional[bytes] = None, session: Optional[str] = None) -> bytes:
        try:
            if route == routes.FLUSH_MAILBOX:
                resp = await self._client.get(route, headers=self._headers(session))
            else:
                resp = await self._client.post(route, content=body or b"", headers=self._headers(session))
        except httpx.HTTPError as e:
            raise TransportError(f"{route} failed: {e}", details={"route": route}) from e
        logger.debug("%s -> HTTP %s (%d bytes)", route, resp.status_code, len(resp.content))
        if resp.status_code >= 400:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                details={"route": route, "status": resp.status_code},
            )
        return resp.content

    async def close(self) -> None:
        await self._client.aclose()
