from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ValidationError

from collabboard.logging import get_logger

logger = get_logger(__name__)


class StoredSession(BaseModel):
    """What the client keeps between runs."""

    user: dict[str, Any]
    access_token: str
    refresh_token: str


class SessionStorage(Protocol):
    def load(self) -> Optional[StoredSession]: ...

    def save(self, session: StoredSession) -> None: ...

    def clear(self) -> None: ...


class MemorySessionStorage:
    def __init__(self, initial: Optional[StoredSession] = None) -> None:
        self._session = initial

    def load(self) -> Optional[StoredSession]:
        return self._session

    def save(self, session: StoredSession) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


class FileSessionStorage:
    """JSON file readable only by the owner, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[StoredSession]:
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            logger.warning("stored_session_unreadable", path=str(self.path))
            return None
        try:
            return StoredSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("stored_session_invalid", path=str(self.path), errors=exc.error_count())
            return None

    def save(self, session: StoredSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".session_", suffix=".tmp"
        )
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as handle:
                json.dump(session.model_dump(), handle)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
