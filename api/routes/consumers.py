"""
Consumer and consumer-link routes.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from retrieval.errors import NotFoundError

from ..services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/consumers")


class ConsumerUpsert(BaseModel):
    display_name: Optional[str] = None
    specialty_tags: Optional[List[str]] = None


class LinkCreate(BaseModel):
    dataset_id: str
    weight: float = 1.0
    access_level: str = Field(default="full", description="full, summary or reference_only")
    enabled: bool = True


class LinkUpdate(BaseModel):
    weight: Optional[float] = None
    access_level: Optional[str] = None
    enabled: Optional[bool] = None


def consumer_to_dict(consumer) -> dict:
    return {
        "id": consumer.id,
        "display_name": consumer.display_name,
        "specialty_tags": consumer.specialty_tags_json or [],
        "created_at": consumer.created_at.isoformat() if consumer.created_at else None,
    }


@router.get("")
async def list_consumers(services: Services = Depends(get_services)):
    consumers = await services.registry.list_consumers()
    return {"consumers": [consumer_to_dict(c) for c in consumers]}


@router.put("/{consumer_id}")
async def upsert_consumer(
    consumer_id: str,
    request: ConsumerUpsert,
    services: Services = Depends(get_services),
):
    """Create a consumer or update its name and specialty tags."""
    consumer = await services.registry.upsert_consumer(
        consumer_id,
        display_name=request.display_name,
        specialty_tags=request.specialty_tags,
    )
    return consumer_to_dict(consumer)


@router.get("/{consumer_id}")
async def get_consumer(consumer_id: str, services: Services = Depends(get_services)):
    consumer = await services.registry.get_consumer(consumer_id)
    if consumer is None:
        raise NotFoundError("Consumer", consumer_id)
    return consumer_to_dict(consumer)


@router.get("/{consumer_id}/links")
async def list_links(consumer_id: str, services: Services = Depends(get_services)):
    links = await services.registry.get_links(consumer_id)
    return {"consumer_id": consumer_id, "links": [link.to_dict() for link in links]}


@router.post("/{consumer_id}/links", status_code=201)
async def create_link(
    consumer_id: str,
    request: LinkCreate,
    services: Services = Depends(get_services),
):
    """Link a dataset to the consumer (creating the consumer if needed)."""
    link = await services.registry.link_dataset(
        consumer_id,
        request.dataset_id,
        weight=request.weight,
        access_level=request.access_level,
        enabled=request.enabled,
    )
    return link.to_dict()


@router.patch("/{consumer_id}/links/{dataset_id}")
async def update_link(
    consumer_id: str,
    dataset_id: str,
    request: LinkUpdate,
    services: Services = Depends(get_services),
):
    link = await services.registry.update_link(
        consumer_id,
        dataset_id,
        weight=request.weight,
        access_level=request.access_level,
        enabled=request.enabled,
    )
    return link.to_dict()


@router.delete("/{consumer_id}/links/{dataset_id}")
async def delete_link(consumer_id: str, dataset_id: str, services: Services = Depends(get_services)):
    if not await services.registry.unlink(consumer_id, dataset_id):
        raise NotFoundError("ConsumerLink", f"{consumer_id}/{dataset_id}")
    return {"status": "deleted", "consumer_id": consumer_id, "dataset_id": dataset_id}
