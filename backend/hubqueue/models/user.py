"""
User model for authentication and role checks
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .task import now_ms


class Role(str, Enum):
    ADMIN = "admin"
    TRUSTED = "trusted"
    USER = "user"
    BANNED = "banned"


class UserRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    username: str
    password_hash: str
    role: Role = Role.USER
    created_at: Optional[int] = Field(default_factory=now_ms)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def can_claim(self) -> bool:
        return self.role in (Role.ADMIN, Role.TRUSTED)

    @property
    def is_banned(self) -> bool:
        return self.role == Role.BANNED

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


LEGACY_ROLE_FLAGS = ("isAdmin", "isTrusted", "isBanned")


def needs_migration(raw: dict) -> bool:
    return "role" not in raw or any(flag in raw for flag in LEGACY_ROLE_FLAGS)


def migrate_user_record(raw: dict) -> dict:
    """
    Translate a boolean-flag user record into the single-role schema.

    Older documents store `isAdmin` / `isTrusted` / `isBanned` instead of
    `role`. An explicit `role` wins over the flags when both are present.
    """
    record = {k: v for k, v in raw.items() if k not in LEGACY_ROLE_FLAGS}
    if "role" in raw:
        return record

    if raw.get("isBanned"):
        role = Role.BANNED
    elif raw.get("isAdmin"):
        role = Role.ADMIN
    elif raw.get("isTrusted"):
        role = Role.TRUSTED
    else:
        role = Role.USER
    record["role"] = role.value
    return record
