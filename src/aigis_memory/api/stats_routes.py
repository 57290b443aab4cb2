"""
Pipeline Statistics

Operator view of the ingestion pipeline: per-stage counters, drop reasons,
queue depths and the committed feed cursor.

Security
--------
Protected by `verify_admin`, which requires the configured admin key via the
`x-admin-key` header or the `key` query parameter. With no key configured the
endpoint is disabled.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..config import Settings
from ..runtime import MemoryRuntime
from .dependencies import get_runtime, get_settings
from .models import PipelineStatsResponse

router = APIRouter(prefix="/stats", tags=["stats"])


# ---------------------------------------------------------------------
# Security Dependency
# ---------------------------------------------------------------------

async def verify_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_key: Optional[str] = Header(None, alias="x-admin-key"),
    key: Optional[str] = Query(None),
) -> None:
    """
    Verify the request carries the configured admin key.
    Checks header first, then query param.
    """
    expected_key = settings.admin_api_key.get_secret_value() if settings.admin_api_key else None

    if not expected_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access is not configured (ADMIN_API_KEY missing)",
        )

    provided_key = x_admin_key or key

    if not provided_key or provided_key != expected_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing admin API key",
        )


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------

@router.get(
    "",
    response_model=PipelineStatsResponse,
    dependencies=[Depends(verify_admin)],
)
async def pipeline_stats(
    runtime: Annotated[MemoryRuntime, Depends(get_runtime)],
) -> PipelineStatsResponse:
    coordinator = runtime.coordinator
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline has not started",
        )

    snapshot = coordinator.stats.snapshot()
    return PipelineStatsResponse(
        **snapshot,
        queue_depths=coordinator.queue_depths(),
        committed_cursor=coordinator.tracker.committed,
        in_flight=coordinator.tracker.in_flight,
        feed_malformed=getattr(coordinator.feed, "malformed", 0),
        feed_reconnects=getattr(coordinator.feed, "reconnects", 0),
    )
