from __future__ import annotations

from typing import TYPE_CHECKING, AsyncGenerator, Generator

import httpx

from collabboard.client.errors import SessionEndedError
from collabboard.logging import get_logger

if TYPE_CHECKING:
    from collabboard.client.session import ClientSessionController

logger = get_logger(__name__)

PUBLIC_PATH_SUFFIXES = (
    "/auth/register",
    "/auth/login",
    "/auth/refresh",
    "/health",
    "/health/ready",
)


def is_public_path(path: str) -> bool:
    """True only for endpoints that must never carry the access token."""
    return path.rstrip("/").endswith(PUBLIC_PATH_SUFFIXES)


class SessionAuth(httpx.Auth):
    """Attach the current access token and recover once from a 401.

    Public endpoints pass through untouched. Protected requests get the
    access token, renewed first when it is about to lapse. A 401 triggers one
    renewal (joined with any renewal already in flight) and exactly one
    retry; a second 401 is returned to the caller as is.
    """

    def __init__(self, controller: "ClientSessionController") -> None:
        self.controller = controller

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("SessionAuth only supports httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        if is_public_path(request.url.path):
            yield request
            return

        token = await self.controller.ensure_fresh_access_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        if response.status_code != 401 or not token:
            return

        logger.info("access_token_rejected", path=request.url.path)
        try:
            renewed = await self.controller.renew(stale_token=token)
        except SessionEndedError:
            return
        request.headers["Authorization"] = f"Bearer {renewed}"
        yield request
