"""Client-side session controller.

Keeps ``{user, access_token, refresh_token}`` in a pluggable storage,
renews the access token shortly before it expires, and guarantees that at
most one renewal request is on the wire at any time no matter how many
requests, timers or 401 handlers ask for one concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from collabboard.client.errors import AuthRequestError, SessionEndedError
from collabboard.client.interceptor import SessionAuth
from collabboard.client.singleflight import SingleFlight
from collabboard.client.storage import MemorySessionStorage, SessionStorage, StoredSession
from collabboard.logging import get_logger
from collabboard.service.errors import InvalidTokenError
from collabboard.service.tokens import decode_unverified

logger = get_logger(__name__)

DEFAULT_LOOKAHEAD_SECONDS = 120

SessionEndCallback = Callable[[str], Union[None, Awaitable[None]]]


def _error_from_response(response: httpx.Response) -> AuthRequestError:
    code: Optional[str] = None
    message = f"request failed with status {response.status_code}"
    details: Any = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        code = payload["error"].get("code")
        message = payload["error"].get("message") or message
        details = payload["error"].get("details")
    return AuthRequestError(response.status_code, code, message, details)


class ClientSessionController:
    def __init__(
        self,
        base_url: str,
        *,
        storage: Optional[SessionStorage] = None,
        lookahead_seconds: float = DEFAULT_LOOKAHEAD_SECONDS,
        on_session_end: Optional[SessionEndCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage: SessionStorage = storage or MemorySessionStorage()
        self.lookahead_seconds = lookahead_seconds
        self.on_session_end = on_session_end
        self._clock = clock
        self._state: Optional[StoredSession] = None
        self._renewal: SingleFlight[str] = SingleFlight()
        self._timer: Optional[asyncio.Task] = None
        self.renewal_count = 0
        self.client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            auth=SessionAuth(self),
        )

    # -- state ---------------------------------------------------------------

    @property
    def current_user(self) -> Optional[dict[str, Any]]:
        return self._state.user if self._state else None

    @property
    def access_token(self) -> Optional[str]:
        return self._state.access_token if self._state else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._state.refresh_token if self._state else None

    @property
    def is_authenticated(self) -> bool:
        return self._state is not None

    @property
    def is_admin(self) -> bool:
        return bool(self._state and self._state.user.get("role") == "admin")

    @property
    def renewal_in_flight(self) -> bool:
        return self._renewal.in_flight

    def _access_expiry(self) -> Optional[float]:
        if not self._state:
            return None
        try:
            exp = decode_unverified(self._state.access_token).get("exp")
        except InvalidTokenError:
            return None
        try:
            return float(exp)
        except (TypeError, ValueError):
            return None

    def _expiring_soon(self) -> bool:
        exp = self._access_expiry()
        if exp is None:
            return True
        return exp - self.lookahead_seconds <= self._clock()

    def _persist(self, state: StoredSession) -> None:
        self._state = state
        self.storage.save(state)

    def _clear_local(self) -> None:
        self._cancel_timer()
        self._state = None
        self.storage.clear()

    # -- timer ---------------------------------------------------------------

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        exp = self._access_expiry()
        if exp is None:
            return
        delay = max(0.0, exp - self.lookahead_seconds - self._clock())
        self._timer = asyncio.create_task(self._fire_timer(delay))

    async def _fire_timer(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach so a successful renewal re-arms without cancelling this task
        if self._timer is asyncio.current_task():
            self._timer = None
        try:
            await self.renew()
        except SessionEndedError as exc:
            logger.info("scheduled_renewal_ended_session", reason=exc.reason)
        except Exception as exc:
            logger.error(
                "scheduled_renewal_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> bool:
        """Rehydrate a stored session; returns whether one is active afterwards."""
        stored = self.storage.load()
        if stored is None:
            return False
        self._state = stored
        if self._expiring_soon():
            try:
                await self.renew()
            except SessionEndedError:
                return False
        else:
            self._arm_timer()
        return True

    async def _authenticate(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(path, json=payload)
        if response.status_code >= 400:
            raise _error_from_response(response)
        data = response.json()["data"]
        self._persist(
            StoredSession(
                user=data["user"],
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
            )
        )
        self._arm_timer()
        return data["user"]

    async def register(self, name: str, email: str, password: str) -> dict[str, Any]:
        return await self._authenticate(
            "/auth/register", {"name": name, "email": email, "password": password}
        )

    async def login(self, email: str, password: str) -> dict[str, Any]:
        return await self._authenticate("/auth/login", {"email": email, "password": password})

    async def ensure_fresh_access_token(self) -> Optional[str]:
        if not self._state:
            return None
        if not self._expiring_soon():
            return self._state.access_token
        try:
            return await self.renew()
        except SessionEndedError:
            return None

    async def renew(self, *, stale_token: Optional[str] = None) -> str:
        """Obtain a fresh access token, joining any renewal already running.

        With ``stale_token`` set, a token that has already been replaced is
        not renewed again; the current one is returned instead.
        """
        if self._state is None:
            # Already ended; the end-of-session callback has fired
            raise SessionEndedError("no active session")
        if stale_token is not None and self._state.access_token != stale_token:
            return self._state.access_token
        return await self._renewal.run(self._perform_renewal)

    async def _perform_renewal(self) -> str:
        state = self._state
        if state is None:
            raise SessionEndedError("no active session")
        if not state.refresh_token:
            await self._end_session("no refresh token")
        self.renewal_count += 1
        try:
            response = await self.client.post(
                "/auth/refresh", json={"refresh_token": state.refresh_token}
            )
        except httpx.HTTPError as exc:
            self._drop_if_superseded(state)
            logger.warning("token_renewal_unreachable", error=str(exc))
            await self._end_session("refresh endpoint unreachable")
        self._drop_if_superseded(state)
        if response.status_code != 200:
            error = _error_from_response(response)
            logger.info(
                "token_renewal_rejected",
                status_code=response.status_code,
                error_code=error.code,
            )
            await self._end_session(error.code or "refresh rejected")
        try:
            data = response.json()["data"]
            access_token = data["access_token"]
            user = data.get("user") or state.user
            renewed = StoredSession(
                user=user,
                access_token=access_token,
                refresh_token=state.refresh_token,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("token_renewal_malformed", error_type=type(exc).__name__)
            await self._end_session("malformed refresh response")
        self._persist(renewed)
        self._arm_timer()
        logger.debug("token_renewed", user_id=renewed.user.get("id"))
        return renewed.access_token

    def _drop_if_superseded(self, state: StoredSession) -> None:
        # Logout or a new login happened while the refresh was on the wire
        current = self._state
        if current is None or current.refresh_token != state.refresh_token:
            logger.info("token_renewal_discarded")
            raise SessionEndedError("session ended during renewal")

    async def _end_session(self, reason: str) -> None:
        """Discard local credentials and raise after notifying ``on_session_end``."""
        self._clear_local()
        logger.info("client_session_ended", reason=reason)
        if self.on_session_end is not None:
            outcome = self.on_session_end(reason)
            if inspect.isawaitable(outcome):
                await outcome
        raise SessionEndedError(reason)

    async def logout(self) -> None:
        """Revoke this device's refresh token; local state is cleared regardless."""
        refresh_token = self.refresh_token
        try:
            if refresh_token:
                await self.client.post("/auth/logout", json={"refresh_token": refresh_token})
        except httpx.HTTPError as exc:
            logger.warning("logout_request_failed", error=str(exc))
        finally:
            self._clear_local()

    async def logout_all(self) -> None:
        try:
            if self._state:
                await self.client.post("/auth/logout-all")
        except httpx.HTTPError as exc:
            logger.warning("logout_all_request_failed", error=str(exc))
        finally:
            self._clear_local()

    async def fetch_profile(self) -> dict[str, Any]:
        response = await self.client.get("/auth/me")
        if response.status_code >= 400:
            raise _error_from_response(response)
        user = response.json()["data"]
        if self._state:
            self._persist(self._state.model_copy(update={"user": user}))
        return user

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.client.request(method, url, **kwargs)

    async def aclose(self) -> None:
        self._cancel_timer()
        self._renewal.cancel()
        await self.client.aclose()

    async def __aenter__(self) -> "ClientSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
