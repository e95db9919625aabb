from __future__ import annotations

from typing import Any, Optional


class ClientError(Exception):
    """Base class for client-side session errors."""


class SessionEndedError(ClientError):
    """The session could not be renewed and local credentials were discarded."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"session ended: {reason}")
        self.reason = reason


class AuthRequestError(ClientError):
    """The server rejected a login, registration or other auth call."""

    def __init__(
        self,
        status_code: int,
        code: Optional[str],
        message: str,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
