"""
System module schemas
"""
from pydantic import BaseModel
from typing import Optional

from ..auth.schemas import UserResponse


class MaintenanceState(BaseModel):
    isMaintenance: bool


class SessionResponse(BaseModel):
    user: Optional[UserResponse] = None
    isMaintenance: bool

