from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    """one role-attributed message; id is set by the store after a successful write"""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None
