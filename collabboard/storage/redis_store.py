from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Iterable, Iterator, Optional, Set

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from collabboard.logging import get_logger
from collabboard.storage.errors import ConstraintViolation, StoreUnavailable
from collabboard.storage.models import User

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed user records with refresh tokens held in native sets.

    Layout (``p`` is the key prefix)::

        p:user:<id>          JSON user document
        p:email:<email>      user id, claimed with SET NX for uniqueness
        p:password:<id>      JSON [hash, algo]
        p:refresh:<id>       SET of refresh tokens

    Every token operation is a single command (or one MULTI block for the
    bulk replace), so concurrent requests for the same user never interleave
    inside an update. Redis deletes a set once its last member is removed,
    which lets ``iter_users_with_tokens`` scan keys without loading members.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "collabboard",
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    def _email_key(self, email: str) -> str:
        return f"{self.prefix}:email:{email}"

    def _password_key(self, user_id: str) -> str:
        return f"{self.prefix}:password:{user_id}"

    def _refresh_key(self, user_id: str) -> str:
        return f"{self.prefix}:refresh:{user_id}"

    @contextlib.contextmanager
    def _guard(self, op: str):
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_store_unavailable", op=op, error=str(exc))
            raise StoreUnavailable("credential store unavailable", {"op": op}) from exc

    def verify_connection(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    # -- users ---------------------------------------------------------------

    def _load_user(self, user_id: str) -> Optional[User]:
        raw = self.client.get(self._user_key(user_id))
        return User.from_dict(json.loads(raw)) if raw else None

    def _update_user(self, user_id: str, mutate) -> Optional[User]:
        key = self._user_key(user_id)
        result: dict[str, Optional[User]] = {"user": None}

        def _apply(pipe) -> None:
            raw = pipe.get(key)
            if not raw:
                result["user"] = None
                return
            user = User.from_dict(json.loads(raw))
            mutate(user)
            pipe.multi()
            pipe.set(key, json.dumps(user.to_dict()))
            result["user"] = user

        self.client.transaction(_apply, key)
        return result["user"]

    def create_user(
        self,
        name: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user = User.new(name, email, role=role, is_active=is_active)
        with self._guard("create_user"):
            if not self.client.set(self._email_key(user.email), user.id, nx=True):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.client.set(self._user_key(user.id), json.dumps(user.to_dict()))
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"):
            return self._load_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email"):
            user_id = self.client.get(self._email_key(email.strip().lower()))
            return self._load_user(user_id) if user_id else None

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        stamp = when or datetime.utcnow()

        def _touch(user: User) -> None:
            user.last_login = stamp

        with self._guard("update_last_login"):
            self._update_user(user_id, _touch)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        def _toggle(user: User) -> None:
            user.is_active = is_active

        with self._guard("set_user_active"):
            return self._update_user(user_id, _toggle)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        def _assign(user: User) -> None:
            user.role = role

        with self._guard("update_user_role"):
            return self._update_user(user_id, _assign)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._guard("save_password"):
            if not self.client.exists(self._user_key(user_id)):
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.client.set(
                self._password_key(user_id), json.dumps([password_hash, password_algo])
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._guard("get_password_record"):
            raw = self.client.get(self._password_key(user_id))
        if not raw:
            return None
        password_hash, algo = json.loads(raw)
        return password_hash, algo

    # -- refresh token sets ----------------------------------------------------

    def add_token(self, user_id: str, token: str) -> None:
        with self._guard("add_token"):
            self.client.sadd(self._refresh_key(user_id), token)

    def remove_token(self, user_id: str, token: str) -> None:
        with self._guard("remove_token"):
            self.client.srem(self._refresh_key(user_id), token)

    def clear_tokens(self, user_id: str) -> None:
        with self._guard("clear_tokens"):
            self.client.delete(self._refresh_key(user_id))

    def replace_tokens(self, user_id: str, tokens: Iterable[str]) -> None:
        members = list(tokens)
        key = self._refresh_key(user_id)
        with self._guard("replace_tokens"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            if members:
                pipe.sadd(key, *members)
            pipe.execute()

    def contains_token(self, user_id: str, token: str) -> bool:
        with self._guard("contains_token"):
            return bool(self.client.sismember(self._refresh_key(user_id), token))

    def list_tokens(self, user_id: str) -> Set[str]:
        with self._guard("list_tokens"):
            return set(self.client.smembers(self._refresh_key(user_id)))

    def iter_users_with_tokens(self) -> Iterator[str]:
        marker = f"{self.prefix}:refresh:"
        with self._guard("iter_users_with_tokens"):
            keys = list(self.client.scan_iter(match=f"{marker}*"))
        for key in keys:
            yield key[len(marker):]
