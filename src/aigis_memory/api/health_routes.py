from typing import Annotated

from fastapi import APIRouter, Depends

from .dependencies import get_runtime
from .models import HealthStatus
from ..runtime import MemoryRuntime

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthStatus)
def health(runtime: Annotated[MemoryRuntime, Depends(get_runtime)]) -> HealthStatus:
    return HealthStatus(pipeline="running" if runtime.running else "stopped")
