from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

ROLES = ("user", "admin")


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email.strip().lower(),
            role=role,
            is_active=is_active,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def copy(self) -> "User":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        last_login = data.get("last_login")
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
        )
