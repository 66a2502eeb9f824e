"""
SQLAlchemy ORM models for the business knowledge store
Defines rag_knowledge_base, rag_chunks and rag_query_history
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    ARRAY, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from database.connection import Base
from ingestion.config import EMBEDDING_CONFIG

EMBEDDING_DIMENSIONS = EMBEDDING_CONFIG['dimensions']


class SourceType(str, Enum):
    """Category tag used to scope retrieval"""
    PRODUCT = "product"
    DOCUMENT = "document"
    CONTACT = "contact"
    ERP_RECORD = "erp_record"
    EMAIL = "email"

    @classmethod
    def all_types(cls) -> List[str]:
        return [t.value for t in cls]

    @classmethod
    def is_valid(cls, source_type: str) -> bool:
        return source_type in cls.all_types()


class EntryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class KnowledgeBaseEntry(Base):
    """One logical source document per (tenant, source_type, source_id)"""
    __tablename__ = 'rag_knowledge_base'
    __table_args__ = (
        Index(
            'idx_rag_kb_active_hash', 'tenant_id', 'source_type', 'content_hash',
            unique=True, postgresql_where=text("status = 'active'"),
        ),
        Index('idx_rag_kb_source', 'tenant_id', 'source_type', 'source_id'),
        CheckConstraint("status IN ('active', 'archived')", name='rag_knowledge_base_status_check'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    raw_content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_metadata: Mapped[Dict[str, Any]] = mapped_column('metadata', JSONB, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EntryStatus.ACTIVE.value)
    embedding_model: Mapped[str] = mapped_column(String(100), nullable=False)
    embedding_dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp(), onupdate=func.current_timestamp())

    chunks: Mapped[List["KnowledgeChunk"]] = relationship(
        "KnowledgeChunk",
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="KnowledgeChunk.chunk_index",
    )

    def __repr__(self):
        return f"<KnowledgeBaseEntry(id={self.id}, tenant_id='{self.tenant_id}', source_type='{self.source_type}', status='{self.status}')>"

    @property
    def is_active(self) -> bool:
        return self.status == EntryStatus.ACTIVE.value


class KnowledgeChunk(Base):
    """A bounded slice of an entry's content plus its embedding"""
    __tablename__ = 'rag_chunks'
    __table_args__ = (
        UniqueConstraint('knowledge_base_id', 'chunk_index', name='rag_chunks_entry_index_unique'),
        CheckConstraint('chunk_index >= 0', name='rag_chunks_index_check'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    knowledge_base_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey('rag_knowledge_base.id', ondelete='CASCADE'), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[List[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    overlap_with_previous: Mapped[bool] = mapped_column(Boolean, default=False)
    overlap_with_next: Mapped[bool] = mapped_column(Boolean, default=False)
    chunk_metadata: Mapped[Dict[str, Any]] = mapped_column('metadata', JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp())

    entry: Mapped["KnowledgeBaseEntry"] = relationship("KnowledgeBaseEntry", back_populates="chunks")

    def __repr__(self):
        return f"<KnowledgeChunk(id={self.id}, knowledge_base_id={self.knowledge_base_id}, chunk_index={self.chunk_index})>"


class QueryRecord(Base):
    """Append-only retrieval audit trail"""
    __tablename__ = 'rag_query_history'

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    query_embedding: Mapped[Optional[List[float]]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=True)
    source_types_searched: Mapped[List[str]] = mapped_column(ARRAY(String(50)), default=list)
    chunk_ids_returned: Mapped[List[uuid.UUID]] = mapped_column(ARRAY(UUID(as_uuid=True)), default=list)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.current_timestamp())

    def __repr__(self):
        return f"<QueryRecord(id={self.id}, tenant_id='{self.tenant_id}', chunks={len(self.chunk_ids_returned or [])})>"
