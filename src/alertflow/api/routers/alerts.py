"""Active alerts, alert history and manual resolution."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from alertflow.api.schemas import AlertResponse, OkResponse, ResolveRequest
from alertflow.models import Alert
from alertflow.service import AlertingService

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

_service: AlertingService | None = None


def init_router(service: AlertingService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AlertingService:
    assert _service is not None, "AlertingService not initialized"
    return _service


def _to_response(alert: Alert) -> AlertResponse:
    return AlertResponse.model_validate(alert.model_dump(mode="json"))


@router.get("/active", response_model=list[AlertResponse])
def list_active() -> list[AlertResponse]:
    return [_to_response(a) for a in _svc().get_active_alerts()]


@router.get("/history", response_model=list[AlertResponse])
def list_history(
    limit: int | None = Query(None, ge=1, le=1000),
) -> list[AlertResponse]:
    return [_to_response(a) for a in _svc().get_alert_history(limit)]


@router.post("/{alert_id}/resolve", response_model=OkResponse)
def resolve_alert(alert_id: str, body: ResolveRequest | None = None) -> OkResponse:
    svc = _svc()
    alert = svc.alerts.get_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    resolved_by = body.resolved_by if body is not None else "manual"
    return OkResponse(ok=svc.resolve_alert(alert_id, resolved_by))
