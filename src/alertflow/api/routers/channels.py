"""Notification channel listing, testing and administration."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from alertflow.api.schemas import ChannelResponse, ChannelUpdateRequest, OkResponse
from alertflow.channels.registry import ConfigurationError
from alertflow.service import AlertingService

router = APIRouter(prefix="/api/channels", tags=["channels"])

_service: AlertingService | None = None


def init_router(service: AlertingService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AlertingService:
    assert _service is not None, "AlertingService not initialized"
    return _service


@router.get("", response_model=list[ChannelResponse])
def list_channels() -> list[ChannelResponse]:
    return [ChannelResponse(**c.summary()) for c in _svc().get_channels()]


@router.post("/{channel_id}/test", response_model=OkResponse)
async def test_channel(channel_id: str) -> OkResponse:
    svc = _svc()
    if svc.channels.get(channel_id) is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return OkResponse(ok=await svc.test_channel(channel_id))


@router.patch("/{channel_id}", response_model=ChannelResponse)
def update_channel(channel_id: str, body: ChannelUpdateRequest) -> ChannelResponse:
    updates = body.model_dump(exclude_none=True)
    if "severity_filter" in updates:
        updates["severity_filter"] = set(updates["severity_filter"])
    try:
        updated = _svc().update_channel(channel_id, **updates)
    except ConfigurationError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if updated is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return ChannelResponse(**updated.summary())


@router.delete("/{channel_id}", response_model=OkResponse)
def delete_channel(channel_id: str) -> OkResponse:
    if not _svc().remove_channel(channel_id):
        raise HTTPException(status_code=404, detail="Channel not found")
    return OkResponse(ok=True)
