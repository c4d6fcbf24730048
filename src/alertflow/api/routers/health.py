"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from alertflow import __version__
from alertflow.api.schemas import HealthResponse
from alertflow.service import AlertingService

router = APIRouter(tags=["health"])

_service: AlertingService | None = None


def init_router(service: AlertingService) -> None:
    global _service  # noqa: PLW0603
    _service = service


@router.get("/api/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    assert _service is not None, "AlertingService not initialized"
    return HealthResponse(
        version=__version__,
        active_alerts=len(_service.get_active_alerts()),
        channels=len(_service.channels),
        rules=len(_service.rules.get_rules()),
        pending_escalations=_service.escalations.pending_count(),
    )
