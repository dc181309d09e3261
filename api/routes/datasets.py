"""
Dataset management and ingestion routes.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field

from database.models import Dataset
from ingestion.chunking_strategies import ChunkingOptions
from retrieval.errors import NotFoundError

from ..services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/datasets")


class DatasetCreate(BaseModel):
    """Request to register a dataset."""
    name: str = Field(..., min_length=1, max_length=255)
    source_category: Optional[str] = None
    description: Optional[str] = None
    backend: Optional[str] = Field(default=None, description="local or cloud")


class IngestTextRequest(BaseModel):
    """Raw text ingestion request."""
    text: str
    strategy: Optional[str] = None
    chunk_size: Optional[int] = None
    overlap: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def dataset_to_dict(dataset: Dataset) -> Dict[str, Any]:
    return {
        "id": dataset.id,
        "name": dataset.name,
        "description": dataset.description,
        "source_category": dataset.source_category,
        "file_name": dataset.file_name,
        "file_type": dataset.file_type,
        "embedding_backend": dataset.embedding_backend,
        "embedding_model": dataset.embedding_model,
        "embedding_dimension": dataset.embedding_dimension,
        "status": dataset.status,
        "chunk_count": dataset.chunk_count,
        "error_message": dataset.error_message,
        "created_at": dataset.created_at.isoformat() if dataset.created_at else None,
        "processed_at": dataset.processed_at.isoformat() if dataset.processed_at else None,
        "metadata": dataset.metadata_json or {},
    }


def chunking_options(
    services: Services,
    strategy: Optional[str],
    chunk_size: Optional[int],
    overlap: Optional[int],
) -> ChunkingOptions:
    defaults = services.pipeline.options
    options = ChunkingOptions(
        chunk_size=chunk_size or defaults.chunk_size,
        overlap=defaults.overlap if overlap is None else overlap,
        strategy=strategy or defaults.strategy,
    )
    options.validate()
    return options


async def _require_dataset(services: Services, dataset_id: str) -> Dataset:
    dataset = await services.store.get_dataset(dataset_id)
    if dataset is None:
        raise NotFoundError("Dataset", dataset_id)
    return dataset


@router.post("", status_code=201)
async def create_dataset(request: DatasetCreate, services: Services = Depends(get_services)):
    """Register a dataset; it stays pending until its first ingestion."""
    dataset = await services.pipeline.create_dataset(
        request.name,
        source_category=request.source_category,
        backend=request.backend or services.settings.default_embedding_backend,
        description=request.description,
    )
    return dataset_to_dict(dataset)


@router.get("")
async def list_datasets(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    datasets = await services.store.list_datasets(status=status, limit=limit, offset=offset)
    return {"total": len(datasets), "datasets": [dataset_to_dict(d) for d in datasets]}


@router.get("/{dataset_id}")
async def get_dataset(dataset_id: str, services: Services = Depends(get_services)):
    return dataset_to_dict(await _require_dataset(services, dataset_id))


@router.get("/{dataset_id}/status")
async def dataset_status(dataset_id: str, services: Services = Depends(get_services)):
    dataset = await _require_dataset(services, dataset_id)
    return {
        "id": dataset.id,
        "status": dataset.status,
        "chunk_count": dataset.chunk_count,
        "error_message": dataset.error_message,
        "processed_at": dataset.processed_at.isoformat() if dataset.processed_at else None,
    }


@router.get("/{dataset_id}/chunks")
async def list_chunks(
    dataset_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    chunks = await services.store.list_chunks(dataset_id, limit=limit, offset=offset)
    return {"dataset_id": dataset_id, "chunks": [c.to_dict() for c in chunks]}


@router.post("/{dataset_id}/ingest")
async def ingest_document(
    dataset_id: str,
    file: UploadFile = File(...),
    strategy: Optional[str] = Form(None),
    chunk_size: Optional[int] = Form(None),
    overlap: Optional[int] = Form(None),
    services: Services = Depends(get_services),
):
    """Upload a document and ingest it into the dataset."""
    await _require_dataset(services, dataset_id)
    options = chunking_options(services, strategy, chunk_size, overlap)

    suffix = Path(file.filename or "").suffix.lower()
    content = await file.read()
    fd, tmp_path = tempfile.mkstemp(suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(content)
        report = await services.pipeline.ingest_file(
            dataset_id, tmp_path, options=options, file_name=file.filename
        )
    finally:
        os.unlink(tmp_path)

    logger.info(f"Ingested upload {file.filename} ({len(content)} bytes) into {dataset_id}")
    result = report.to_dict()
    result["file_name"] = file.filename
    return result


@router.post("/{dataset_id}/ingest-text")
async def ingest_text(
    dataset_id: str,
    request: IngestTextRequest,
    services: Services = Depends(get_services),
):
    """Ingest raw text into the dataset."""
    options = chunking_options(services, request.strategy, request.chunk_size, request.overlap)
    report = await services.pipeline.ingest_text(
        dataset_id, request.text, options=options, metadata=request.metadata
    )
    return report.to_dict()


@router.delete("/{dataset_id}")
async def delete_dataset(dataset_id: str, services: Services = Depends(get_services)):
    """Delete a dataset with its chunks and links."""
    if not await services.store.delete_dataset(dataset_id):
        raise NotFoundError("Dataset", dataset_id)
    return {"status": "deleted", "dataset_id": dataset_id}
