"""
Auth schemas for request/response validation
"""
from pydantic import BaseModel, Field
from typing import Optional

from ...models.user import Role, UserRecord


class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)


class UserLogin(BaseModel):
    username: str
    password: str


class UserResponse(BaseModel):
    username: str
    role: Role
    isAdmin: bool
    isTrusted: bool
    createdAt: Optional[int] = None

    @classmethod
    def from_record(cls, user: UserRecord) -> "UserResponse":
        return cls(
            username=user.username,
            role=user.role,
            isAdmin=user.is_admin,
            isTrusted=user.can_claim,
            createdAt=user.created_at,
        )


class Token(BaseModel):
    access_token: str
    token_type: str
    user: UserResponse


class RoleUpdate(BaseModel):
    role: Role
