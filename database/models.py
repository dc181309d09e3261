"""
SQLAlchemy ORM models for the RAG support engine.

Persistent entities: datasets, chunks (with their vectors), consumers,
consumer-dataset links and per-chunk usage.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    JSON, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class DatasetStatus(str, Enum):
    """Processing status of a dataset."""
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class Base(DeclarativeBase):
    pass


class Dataset(Base):
    __tablename__ = "datasets"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    source_category = Column(String(100), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_type = Column(String(20), nullable=True)
    embedding_backend = Column(String(10), nullable=False, default="local")  # local, cloud
    embedding_model = Column(String(255), nullable=True)
    embedding_dimension = Column(Integer, nullable=True)
    status = Column(String(12), nullable=False, default="pending")  # pending, processing, ready, failed
    chunk_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    metadata_json = Column(JSON, default=dict)

    chunks = relationship("Chunk", back_populates="dataset", cascade="all, delete-orphan", passive_deletes=True)
    links = relationship("ConsumerLinkRow", back_populates="dataset", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("ix_dataset_status", "status"),
    )


class Chunk(Base):
    __tablename__ = "chunks"

    id = Column(String(36), primary_key=True, default=_uuid)
    dataset_id = Column(String(36), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    ordinal = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    char_start = Column(Integer, nullable=False)
    char_end = Column(Integer, nullable=False)
    section_title = Column(String(500), nullable=True)
    page_number = Column(Integer, nullable=True)
    token_count = Column(Integer, nullable=False)
    chunk_type = Column(String(20), default="body")
    tags_json = Column(JSON, default=list)
    vector_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    dataset = relationship("Dataset", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("dataset_id", "ordinal", name="uq_chunk_dataset_ordinal"),
    )


class Consumer(Base):
    """A persona (or any other caller) that reads datasets through links."""
    __tablename__ = "consumers"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)
    specialty_tags_json = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    links = relationship("ConsumerLinkRow", back_populates="consumer", cascade="all, delete-orphan", passive_deletes=True)


class ConsumerLinkRow(Base):
    __tablename__ = "consumer_links"

    id = Column(String(36), primary_key=True, default=_uuid)
    consumer_id = Column(String(64), ForeignKey("consumers.id", ondelete="CASCADE"), nullable=False, index=True)
    dataset_id = Column(String(36), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    weight = Column(Float, nullable=False, default=1.0)
    access_level = Column(String(20), nullable=False, default="full")  # full, summary, reference_only
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    consumer = relationship("Consumer", back_populates="links")
    dataset = relationship("Dataset", back_populates="links")

    __table_args__ = (
        UniqueConstraint("consumer_id", "dataset_id", name="uq_link_consumer_dataset"),
        CheckConstraint("weight >= 0.1 AND weight <= 2.0", name="ck_link_weight_range"),
    )


class ChunkUsage(Base):
    __tablename__ = "chunk_usage"

    id = Column(String(36), primary_key=True, default=_uuid)
    consumer_id = Column(String(64), nullable=False)
    chunk_id = Column(String(36), ForeignKey("chunks.id", ondelete="CASCADE"), nullable=False)
    use_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("consumer_id", "chunk_id", name="uq_usage_consumer_chunk"),
        Index("ix_usage_consumer_time", "consumer_id", "last_used_at"),
    )
