"""
Raw similarity search route.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter()


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    dataset_ids: List[str]
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


@router.post("/search")
async def search(request: SearchRequest, services: Services = Depends(get_services)):
    """Similarity search over explicit datasets, without reranking."""
    results = await services.context_service.search(
        request.query,
        request.dataset_ids,
        threshold=request.threshold,
        top_k=request.top_k,
    )
    return {
        "query": request.query,
        "total": len(results),
        "results": [r.to_dict() for r in results],
    }
