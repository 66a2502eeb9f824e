"""
FastAPI Endpoints for Question Answering and similarity search over a tenant's knowledge base
"""

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from api.dependencies import get_rag_service
from database.models import SourceType
from ingestion.config import SEARCH_CONFIG
from rag.rag_service import RAGService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rag", tags=["RAG"])


class AnswerRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    contact_id: Optional[str] = None
    max_context_tokens: Optional[int] = Field(default=None, gt=0)
    include_recommendations: bool = False
    limit: int = Field(default=SEARCH_CONFIG['default_limit'], ge=1, le=SEARCH_CONFIG['max_limit'])
    similarity_threshold: float = Field(default=SEARCH_CONFIG['similarity_threshold'], ge=0.0, le=1.0)

    @field_validator('query')
    @classmethod
    def validate_query(cls, v):
        if not v.strip():
            raise ValueError('query cannot be empty')
        return v.strip()


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    source_types: Optional[List[SourceType]] = Field(default=None, min_length=1)
    limit: int = Field(default=SEARCH_CONFIG['default_limit'], ge=1, le=SEARCH_CONFIG['max_limit'])
    similarity_threshold: float = Field(default=SEARCH_CONFIG['similarity_threshold'], ge=0.0, le=1.0)

    @field_validator('query')
    @classmethod
    def validate_query(cls, v):
        if not v.strip():
            raise ValueError('query cannot be empty')
        return v.strip()


class CitationModel(BaseModel):
    chunk_id: str
    source_title: str
    source_type: str
    similarity_score: float
    excerpt: str


class SourceModel(BaseModel):
    chunk_id: str
    knowledge_base_id: str
    title: str
    source_type: str
    similarity: float
    chunk_index: int


class ChunkModel(BaseModel):
    chunk_id: str
    knowledge_base_id: str
    title: str
    source_type: str
    content: str
    similarity: float
    chunk_index: int
    metadata: Dict[str, Any]


class SearchResponse(BaseModel):
    chunks: List[ChunkModel]
    total_found: int
    source_types: List[str]
    processing_time_ms: int
    query_id: str


class AnswerResponse(BaseModel):
    answer: str
    confidence: float
    sources: List[SourceModel]
    citations: List[CitationModel]
    context_used: str
    tokens_used: int
    processing_time_ms: int
    query_id: str


@router.post(
    "/{tenant_id}/answer",
    response_model=AnswerResponse,
    summary="Answer Question",
    description="Retrieve relevant knowledge for the tenant and generate a grounded, cited answer"
)
async def answer_question(
    tenant_id: str,
    request: AnswerRequest,
    service: RAGService = Depends(get_rag_service)
) -> AnswerResponse:
    response = await service.answer(
        request.query,
        tenant_id,
        contact_id=request.contact_id,
        max_context_tokens=request.max_context_tokens,
        include_recommendations=request.include_recommendations,
        limit=request.limit,
        similarity_threshold=request.similarity_threshold,
    )
    return AnswerResponse(**asdict(response))


@router.post(
    "/{tenant_id}/search",
    response_model=SearchResponse,
    summary="Search Knowledge",
    description="Return the tenant's chunks ranked by similarity to the query, without generating an answer"
)
async def search_knowledge(
    tenant_id: str,
    request: SearchRequest,
    service: RAGService = Depends(get_rag_service)
) -> SearchResponse:
    source_types = [t.value for t in request.source_types] if request.source_types is not None else None
    result = await service.retrieve(
        request.query,
        tenant_id,
        source_types=source_types,
        limit=request.limit,
        similarity_threshold=request.similarity_threshold,
    )
    return SearchResponse(
        chunks=[
            ChunkModel(
                chunk_id=str(m.chunk_id),
                knowledge_base_id=str(m.knowledge_base_id),
                title=m.title,
                source_type=m.source_type,
                content=m.content,
                similarity=m.similarity,
                chunk_index=m.chunk_index,
                metadata=m.metadata,
            )
            for m in result.matches
        ],
        total_found=result.total_found,
        source_types=result.source_types,
        processing_time_ms=result.processing_time_ms,
        query_id=result.query_id,
    )
