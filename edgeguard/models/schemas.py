#  EdgeGuard - Pydantic Schemas
#
#  Request/response models for the REST API.
#
#  Depends on: (none)
#  Used by:    routes/*

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Admin ban API
# ---------------------------------------------------------------------------

class BanRequest(BaseModel):
    action: str  # Validated against BanAction in the route (400, not 422)
    ip: str | None = Field(default=None, max_length=256)
    cidr: str | None = Field(default=None, max_length=64)
    reason: str | None = Field(default=None, max_length=1000)
    seconds: float | None = Field(default=None, gt=0)  # TTL for ban metadata
    banned_by: str | None = Field(default=None, max_length=200)


class BanResponse(BaseModel):
    success: bool = True
    message: str
    data: Any = None


class BanError(BaseModel):
    success: bool = False
    error: str


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthOut(BaseModel):
    status: str    # "ok" | "degraded"
    store: str     # "up" | "down"
    governor: dict = Field(default_factory=dict)
