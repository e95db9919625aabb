from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from collabboard.logging import get_logger
from collabboard.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from collabboard.service.tokens import TokenCodec, decode_unverified
from collabboard.storage.errors import ConstraintViolation
from collabboard.storage.models import ROLES, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    """Per-user refresh token set. Every call touches exactly one user."""

    def add_token(self, user_id: str, token: str) -> None: ...

    def remove_token(self, user_id: str, token: str) -> None: ...

    def clear_tokens(self, user_id: str) -> None: ...

    def replace_tokens(self, user_id: str, tokens: Iterable[str]) -> None: ...

    def contains_token(self, user_id: str, token: str) -> bool: ...

    def list_tokens(self, user_id: str) -> set[str]: ...

    def iter_users_with_tokens(self) -> Iterator[str]: ...


class AuthStore(CredentialStore, Protocol):
    def create_user(
        self,
        name: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_last_login(self, user_id: str) -> None: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def verify_connection(self) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


@dataclass
class RefreshResult:
    user: User
    access_token: str


@dataclass
class SweepResult:
    valid: int
    removed: int


@dataclass
class CleanupReport:
    users_affected: int = 0
    total_tokens_removed: int = 0
    users_scanned: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Cleaned up {self.total_tokens_removed} expired tokens "
            f"from {self.users_affected} users"
        )


class SessionManager:
    """Register, login, refresh, logout and sweep refresh tokens.

    Access tokens are stateless: verifying one needs only the codec. Refresh
    tokens are valid only while they verify cryptographically *and* are still
    a member of the owner's token set in the store, which is what makes
    logout and logout-all effective before a token's natural expiry.
    """

    def __init__(self, store: AuthStore, codec: TokenCodec) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown emails so both login failures cost the same
        self._dummy_hash = self._pwd_hasher.hash("collabboard-timing-equalizer")

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            pass

    def _issue_pair(self, user: User) -> AuthResult:
        access_token = self.codec.issue_access(user.id, user.email, user.role)
        refresh_token = self.codec.issue_refresh(user.id)
        return AuthResult(user=user, access_token=access_token, refresh_token=refresh_token)

    # -- lifecycle -----------------------------------------------------------

    async def register(
        self, name: str, email: str, password: str, *, role: str = "user"
    ) -> AuthResult:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"role": role})
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("user with this email already exists")
        try:
            user = self.store.create_user(name, normalized, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists") from exc
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        result = self._issue_pair(user)
        self.store.add_token(user.id, result.refresh_token)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return result

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            self._burn_dummy_verify(password)
            self.logger.info("login_rejected", reason="unknown_email")
            raise InvalidCredentialsError()
        if not self.verify_password(user.id, password):
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_rejected", reason="account_disabled", user_id=user.id)
            raise AccountDisabledError()
        self.store.update_last_login(user.id)
        swept = self.sweep(user.id)
        result = self._issue_pair(user)
        self.store.add_token(user.id, result.refresh_token)
        self.logger.info(
            "user_logged_in",
            user_id=user.id,
            active_sessions=swept.valid + 1,
            pruned=swept.removed,
        )
        return result

    async def refresh(self, presented: str) -> RefreshResult:
        try:
            claims = self.codec.verify_refresh(presented)
        except InvalidTokenError:
            self._prune_rejected(presented)
            self.logger.info("refresh_rejected", reason="verification_failed")
            raise
        user = self.store.get_user(claims.id)
        if not user or not user.is_active:
            self.logger.info(
                "refresh_rejected",
                reason="user_missing" if not user else "account_disabled",
                user_id=claims.id,
            )
            raise InvalidTokenError()
        if not self.store.contains_token(user.id, presented):
            self.logger.info("refresh_rejected", reason="revoked", user_id=user.id)
            raise InvalidTokenError()
        self.sweep(user.id)
        access_token = self.codec.issue_access(user.id, user.email, user.role)
        return RefreshResult(user=user, access_token=access_token)

    def _prune_rejected(self, presented: str) -> None:
        """Sweep the claimed owner when a dead token is still stored for them."""
        try:
            user_id = decode_unverified(presented).get("id")
        except InvalidTokenError:
            return
        if not isinstance(user_id, str) or not user_id:
            return
        try:
            if self.store.contains_token(user_id, presented):
                self.sweep(user_id)
        except Exception as exc:
            self.logger.warning("refresh_prune_failed", user_id=user_id, error=str(exc))

    async def logout(self, user_id: str, presented: Optional[str]) -> None:
        if presented:
            self.store.remove_token(user_id, presented)
        self.logger.info("user_logged_out", user_id=user_id, token_supplied=bool(presented))

    async def logout_all(self, user_id: str) -> None:
        self.store.clear_tokens(user_id)
        self.logger.info("user_logged_out_everywhere", user_id=user_id)

    def sweep(self, user_id: str) -> SweepResult:
        """Drop the user's refresh tokens that no longer verify.

        Works from a snapshot and writes back once, only when something was
        pruned. A token added between the snapshot and the write is lost; that
        device simply has to log in again.
        """
        snapshot = self.store.list_tokens(user_id)
        valid: list[str] = []
        for token in snapshot:
            try:
                claims = self.codec.verify_refresh(token)
            except InvalidTokenError:
                continue
            if claims.id == user_id:
                valid.append(token)
        removed = len(snapshot) - len(valid)
        if removed:
            self.store.replace_tokens(user_id, valid)
            self.logger.debug(
                "refresh_tokens_swept", user_id=user_id, removed=removed, valid=len(valid)
            )
        return SweepResult(valid=len(valid), removed=removed)

    def cleanup_all_expired_tokens(self) -> CleanupReport:
        report = CleanupReport()
        for user_id in self.store.iter_users_with_tokens():
            report.users_scanned += 1
            try:
                result = self.sweep(user_id)
            except Exception as exc:
                report.failures.append(user_id)
                self.logger.error(
                    "token_cleanup_user_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if result.removed:
                report.users_affected += 1
                report.total_tokens_removed += result.removed
        self.logger.info(
            "token_cleanup_completed",
            users_scanned=report.users_scanned,
            users_affected=report.users_affected,
            tokens_removed=report.total_tokens_removed,
            failures=len(report.failures),
        )
        return report

    # -- request authentication ----------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("access token required")
        claims = self.codec.verify_access(token)
        ctx = AuthContext(user_id=claims.id, email=claims.email, role=claims.role)
        if required_role == "admin" and not ctx.is_admin:
            raise ForbiddenError("admin access required")
        return ctx

    # -- account management --------------------------------------------------

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        self.get_profile(user_id)
        if not self.verify_password(user_id, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        pwd_hash, algo = self._hash_password(new_password)
        self.store.save_password(user_id, pwd_hash, algo)
        self.store.clear_tokens(user_id)
        self.logger.info("password_changed_sessions_revoked", user_id=user_id)

    async def set_user_active(self, user_id: str, is_active: bool) -> User:
        user = self.store.set_user_active(user_id, is_active)
        if not user:
            raise NotFoundError("user not found")
        if not is_active:
            self.store.clear_tokens(user_id)
        self.logger.info("user_status_changed", user_id=user_id, is_active=is_active)
        return user

    async def set_user_role(self, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"role": role})
        user = self.store.update_user_role(user_id, role)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("user_role_updated", user_id=user_id, role=role)
        return user

    async def create_admin(self, name: str, email: str, password: str) -> AuthResult:
        return await self.register(name, email, password, role="admin")
