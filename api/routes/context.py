"""
Context retrieval routes: the HTTP face of ContextService.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/context")


class ContextRequest(BaseModel):
    consumer_id: str
    query: str = Field(..., min_length=1)
    max_chunks: Optional[int] = Field(default=None, ge=0)
    max_tokens: Optional[int] = Field(default=None, ge=0)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    intent_tags: List[str] = Field(default_factory=list)
    record_usage: bool = False


@router.post("")
async def retrieve_context(request: ContextRequest, services: Services = Depends(get_services)):
    """
    Retrieve an attributed context bundle for a consumer's query.

    With record_usage set, the bundle's chunks count as used by the
    consumer, which feeds the recency boost of later queries.
    """
    bundle = await services.context_service.retrieve_context(
        request.consumer_id,
        request.query,
        max_chunks=request.max_chunks,
        max_tokens=request.max_tokens,
        threshold=request.threshold,
        intent_tags=request.intent_tags,
    )
    if request.record_usage:
        await services.context_service.record_usage(request.consumer_id, bundle)

    result = bundle.to_dict()
    result["rendered"] = bundle.render()
    return result
