"""
FastAPI Endpoints for Knowledge Ingestion
Ingest, archive, delete and inspect a tenant's knowledge base
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from api.dependencies import get_rag_service
from database.models import SourceType
from ingestion.knowledge_ingestor import IngestContent, IngestOptions
from rag.rag_service import RAGService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/knowledge", tags=["Knowledge Base"])


# Pydantic models for API
class IngestOptionsModel(BaseModel):
    chunk_size: Optional[int] = Field(default=None, gt=0, description="Target chunk size in tokens")
    chunk_overlap: Optional[int] = Field(default=None, ge=0, description="Overlap between chunks in tokens")
    preserve_structure: bool = True
    custom_metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_options(self) -> IngestOptions:
        return IngestOptions(**self.model_dump())


class IngestRequest(BaseModel):
    """One content item to ingest"""
    source_type: SourceType
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1)
    source_id: Optional[str] = Field(default=None, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    force_update: bool = False
    options: Optional[IngestOptionsModel] = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, v):
        if not v.strip():
            raise ValueError('title cannot be empty')
        return v.strip()

    def to_content(self) -> IngestContent:
        return IngestContent(
            source_type=self.source_type.value,
            title=self.title,
            content=self.content,
            source_id=self.source_id,
            metadata=self.metadata,
            force_update=self.force_update,
        )


class BatchIngestRequest(BaseModel):
    items: List[IngestRequest] = Field(..., min_length=1, max_length=500)
    options: Optional[IngestOptionsModel] = None


class IngestResultResponse(BaseModel):
    knowledge_base_id: Optional[str] = None
    chunks_created: int
    tokens_processed: int
    success: bool
    processing_time_ms: int
    skipped: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None


class ArchiveRequest(BaseModel):
    """Live upstream source ids; active entries of this type not listed are archived"""
    source_type: SourceType
    live_source_ids: List[str] = Field(default_factory=list)


class ArchiveResponse(BaseModel):
    archived: int


class KnowledgeStatsResponse(BaseModel):
    total_entries: int
    total_chunks: int
    source_type_breakdown: Dict[str, int]
    average_chunk_tokens: int
    last_updated: Optional[datetime] = None


@router.post(
    "/{tenant_id}/ingest",
    response_model=IngestResultResponse,
    summary="Ingest Content",
    description="Chunk, embed and store one content item; re-ingesting identical content is a no-op"
)
async def ingest_content(
    tenant_id: str,
    request: IngestRequest,
    service: RAGService = Depends(get_rag_service)
) -> IngestResultResponse:
    options = request.options.to_options() if request.options else None
    result = await service.ingest(tenant_id, request.to_content(), options)
    return IngestResultResponse(**asdict(result))


@router.post(
    "/{tenant_id}/ingest/batch",
    response_model=List[IngestResultResponse],
    summary="Ingest Content Batch",
    description="Sequentially ingest many items; each item reports its own outcome"
)
async def ingest_batch(
    tenant_id: str,
    request: BatchIngestRequest,
    service: RAGService = Depends(get_rag_service)
) -> List[IngestResultResponse]:
    options = request.options.to_options() if request.options else None
    results = await service.ingest_batch(tenant_id, [item.to_content() for item in request.items], options)
    return [IngestResultResponse(**asdict(r)) for r in results]


@router.post(
    "/{tenant_id}/archive",
    response_model=ArchiveResponse,
    summary="Archive Vanished Sources"
)
async def archive_missing_sources(
    tenant_id: str,
    request: ArchiveRequest,
    service: RAGService = Depends(get_rag_service)
) -> ArchiveResponse:
    archived = await service.archive_missing_sources(
        tenant_id, request.source_type.value, request.live_source_ids
    )
    return ArchiveResponse(archived=archived)


@router.post(
    "/{tenant_id}/entries/{entry_id}/archive",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Archive Entry"
)
async def archive_entry(
    tenant_id: str,
    entry_id: UUID,
    service: RAGService = Depends(get_rag_service)
) -> None:
    if not await service.archive_entry(tenant_id, entry_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Active entry {entry_id} not found"
        )


@router.delete(
    "/{tenant_id}/entries/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Entry",
    description="Hard delete an entry and all of its chunks"
)
async def delete_entry(
    tenant_id: str,
    entry_id: UUID,
    service: RAGService = Depends(get_rag_service)
) -> None:
    if not await service.delete_entry(tenant_id, entry_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entry {entry_id} not found"
        )


@router.get(
    "/{tenant_id}/stats",
    response_model=KnowledgeStatsResponse,
    summary="Knowledge Base Statistics"
)
async def knowledge_stats(
    tenant_id: str,
    service: RAGService = Depends(get_rag_service)
) -> KnowledgeStatsResponse:
    return KnowledgeStatsResponse(**await service.get_stats(tenant_id))
