from fastapi import HTTPException, Request, status

from ..config import Settings
from ..runtime import MemoryRuntime
from ..store.retriever import MemoryRetriever


def get_runtime(request: Request) -> MemoryRuntime:
    return request.app.state.runtime


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_retriever(request: Request) -> MemoryRetriever:
    retriever = get_runtime(request).retriever
    if retriever is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Memory store is not ready",
        )
    return retriever
