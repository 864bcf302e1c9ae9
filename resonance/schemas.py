"""Response schemas for the worker's HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class QueueHealthSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    connected: bool
    active: int = Field(default=0, ge=0)
    queued: int = Field(default=0, ge=0)


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    timestamp: datetime
    uptime_s: float = Field(ge=0)
    version: str
    queues: dict[str, QueueHealthSchema] = Field(default_factory=dict)
