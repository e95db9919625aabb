from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Set

from collabboard.logging import get_logger
from collabboard.storage.errors import ConstraintViolation
from collabboard.storage.models import User


class MemoryStore:
    """In-process user and refresh token store with JSON snapshots on disk.

    Every mutation happens under one re-entrant lock and is followed by a
    full snapshot write, so a restart picks up exactly the last committed
    state. Token sets are keyed by user id and only touched through the
    single-record helpers below.
    """

    def __init__(self, fs_root: str = "/tmp/collabboard", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(name, normalized, role=role, is_active=is_active)
            self.users[user.id] = user
            self.refresh_tokens[user.id] = set()
            self._persist_state()
            return user.copy()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return user.copy() if user else None

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = when or datetime.utcnow()
            self._persist_state()

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user.copy()

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user.copy()

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- refresh token sets ----------------------------------------------------

    def add_token(self, user_id: str, token: str) -> None:
        with self._data_lock:
            tokens = self.refresh_tokens.setdefault(user_id, set())
            if token in tokens:
                return
            tokens.add(token)
            self._persist_state()

    def remove_token(self, user_id: str, token: str) -> None:
        with self._data_lock:
            tokens = self.refresh_tokens.get(user_id)
            if not tokens or token not in tokens:
                return
            tokens.discard(token)
            self._persist_state()

    def clear_tokens(self, user_id: str) -> None:
        with self._data_lock:
            if not self.refresh_tokens.get(user_id):
                return
            self.refresh_tokens[user_id] = set()
            self._persist_state()

    def replace_tokens(self, user_id: str, tokens: Iterable[str]) -> None:
        with self._data_lock:
            self.refresh_tokens[user_id] = set(tokens)
            self._persist_state()

    def contains_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            return token in self.refresh_tokens.get(user_id, ())

    def list_tokens(self, user_id: str) -> Set[str]:
        with self._data_lock:
            return set(self.refresh_tokens.get(user_id, ()))

    def iter_users_with_tokens(self) -> Iterator[str]:
        # Snapshot the ids so callers can mutate sets while iterating
        with self._data_lock:
            user_ids = [uid for uid, tokens in self.refresh_tokens.items() if tokens]
        return iter(user_ids)

    # -- persistence -------------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [u.to_dict() for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": {
                user_id: sorted(tokens) for user_id, tokens in self.refresh_tokens.items()
            },
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".state_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except Exception as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            user_id: set(tokens)
            for user_id, tokens in (data.get("refresh_tokens") or {}).items()
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            path=str(path),
        )
        return True
