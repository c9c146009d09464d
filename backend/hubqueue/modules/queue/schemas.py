"""
Queue module schemas
"""
from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=4000)


class QueueSnapshot(BaseModel):
    active: List[dict]
    history: List[dict]


class UserStats(BaseModel):
    uploaded: int = 0
    inProgress: int = 0
    completed: int = 0


class StatsResponse(BaseModel):
    totalUploaded: int
    totalCompleted: int
    totalWaiting: int
    totalInProgress: int
    users: Dict[str, UserStats]
