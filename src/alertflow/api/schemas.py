"""Pydantic request/response schemas for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from alertflow.models import Severity

# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    active_alerts: int
    channels: int
    rules: int
    pending_escalations: int


# --- Alerts ---


class AlertResponse(BaseModel):
    """An alert as returned by the API. Action handlers are not exposed."""

    id: str
    type: str
    severity: Severity
    title: str
    message: str
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    actions: list[dict[str, Any]] = Field(default_factory=list)


class ResolveRequest(BaseModel):
    resolved_by: str = "manual"


# --- Channels ---


class ChannelResponse(BaseModel):
    """Public channel view. Transport config (secrets) is never included."""

    id: str
    name: str
    type: str
    enabled: bool
    severity_filter: list[Severity]
    rate_limit_minutes: float
    last_sent: float | None = None


class ChannelUpdateRequest(BaseModel):
    enabled: bool | None = None
    severity_filter: list[Severity] | None = None
    rate_limit_minutes: float | None = Field(default=None, ge=0)


class OkResponse(BaseModel):
    ok: bool
