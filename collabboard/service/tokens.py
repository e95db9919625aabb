"""Signed access and refresh tokens.

Both token kinds are compact HS256 JWTs. Each kind is signed with its own
secret, so a refresh token can never pass as an access token (and the other
way round) even before the ``type`` claim is inspected.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from collabboard.logging import get_logger
from collabboard.service.errors import InvalidTokenError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    id: str
    email: str
    role: str
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    id: str
    exp: int
    jti: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise InvalidTokenError()
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise InvalidTokenError() from None
    return header_b64, payload_b64, sig_b64


def decode_unverified(token: str) -> dict[str, Any]:
    """Return the payload without checking the signature.

    Only for introspection (reading ``exp`` on the client); never for
    authorization decisions.
    """
    _, payload_b64, _ = _split(token)
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError):
        raise InvalidTokenError() from None
    if not isinstance(payload, dict):
        raise InvalidTokenError()
    return payload


class TokenCodec:
    """Issue and verify access/refresh tokens. Pure; performs no I/O."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        for label, secret in (("access", access_secret), ("refresh", refresh_secret)):
            if not secret or len(secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{label} token secret must be at least {MIN_SECRET_LENGTH} characters"
                )
        self._access_secret = access_secret.encode()
        self._refresh_secret = refresh_secret.encode()
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return _encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token: str, secret: bytes) -> dict[str, Any]:
        header_b64, payload_b64, sig_b64 = _split(token)

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError()

        payload = decode_unverified(token)
        exp = payload.get("exp")
        try:
            exp_ts = int(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError() from None
        if exp_ts <= self._now():
            raise InvalidTokenError()
        if not payload.get("id"):
            raise InvalidTokenError()
        return payload

    def issue_access(self, subject_id: str, email: str, role: str) -> str:
        now = self._now()
        payload = {
            "id": subject_id,
            "email": email,
            "role": role,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return self._encode(payload, self._access_secret)

    def issue_refresh(self, subject_id: str) -> str:
        now = self._now()
        payload = {
            "id": subject_id,
            "type": REFRESH_TOKEN_TYPE,
            # Two logins in the same second must still yield distinct set entries
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
        }
        return self._encode(payload, self._refresh_secret)

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._access_secret)
        if payload.get("type") == REFRESH_TOKEN_TYPE:
            raise InvalidTokenError()
        return AccessClaims(
            id=str(payload["id"]),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "user")),
            exp=int(payload["exp"]),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self._refresh_secret)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise InvalidTokenError()
        return RefreshClaims(
            id=str(payload["id"]),
            exp=int(payload["exp"]),
            jti=payload.get("jti"),
        )


__all__ = [
    "AccessClaims",
    "RefreshClaims",
    "TokenCodec",
    "decode_unverified",
]
