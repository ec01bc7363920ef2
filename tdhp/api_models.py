from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"


class StatusResponse(BaseModel):
    state: str = Field(..., description="initializing|ready|rebuilding")
    generation: int | None = Field(None, description="Generation of the served snapshot")
    built_at: str | None = None
    containers: int = Field(0, description="Running containers the snapshot was built from")
    routers: int = 0
    services: int = 0
    middlewares: int = 0
    warnings: list[str] = Field(default_factory=list)
    failed_rebuilds: int = 0
    source_degraded: bool = False


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    container: str | None = None
    message: str
