"""
Memory Routes

Semantic recall over stored chat events, for reply generation and for
operators inspecting what the bot remembers.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from ..store.models import MemoryFilter
from ..store.retriever import MemoryRetriever
from .dependencies import get_retriever
from .models import MemoryItem, MemorySearchRequest, MemorySearchResult, ThreadResponse

router = APIRouter(prefix="/memory", tags=["memory"])


@router.post(
    "/search",
    response_model=List[MemorySearchResult],
    summary="Vector-based recall of stored events",
    status_code=status.HTTP_200_OK,
)
async def search(
    req: MemorySearchRequest,
    retriever: Annotated[MemoryRetriever, Depends(get_retriever)],
) -> List[MemorySearchResult]:
    """
    Embed `req.query` and return the `req.k` most similar stored events,
    optionally limited to one author and a time window.
    """
    memory_filter = MemoryFilter(
        author_id=req.author_id,
        since=req.since,
        until=req.until,
    )
    hits = await retriever.recall(req.query, k=req.k, filter=memory_filter)
    return [MemorySearchResult.from_hit(hit) for hit in hits]


@router.get(
    "/thread/{conversation_id:path}",
    response_model=ThreadResponse,
    summary="Stored events of one conversation, oldest first",
)
async def thread(
    conversation_id: str,
    retriever: Annotated[MemoryRetriever, Depends(get_retriever)],
) -> ThreadResponse:
    records = await retriever.get_thread(conversation_id)
    return ThreadResponse(
        conversation_id=conversation_id,
        memories=[MemoryItem.from_record(r) for r in records],
    )
