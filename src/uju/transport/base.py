"""
Transport capability the session client depends on.

A transport delivers one request body on a named route and returns the one
response body. When ``session`` is given it must travel as the
``Authorization: Session <id>`` credential (or the transport's equivalent).
"""

from typing import Optional, Protocol, runtime_checkable

SESSION_AUTH_SCHEME = "Session"


@runtime_checkable
class Transport(Protocol):
    async def request(self, route: str, body: Optional[bytes] = None, session: Optional[str] = None) -> bytes:
        ...

    async def close(self) -> None:
        ...


def session_header(session: str) -> dict[str, str]:
    return {"Authorization": f"{SESSION_AUTH_SCHEME} {session}"}
