"""
Caller-facing facade: ingest content and answer questions for one tenant.

Wires the pipeline components around one database session. Long-lived
clients (embedder, chat client) are created once by the application and
passed in.
"""

from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from database.repositories import KnowledgeBaseRepository
from database.vector_search import SimilaritySearchService, build_search_backend
from ingestion.config import SEARCH_CONFIG
from ingestion.knowledge_ingestor import IngestContent, IngestOptions, IngestResult, KnowledgeIngestor
from ingestion.vector_embedder import VectorEmbedder
from rag.generation_client import GeminiChatClient
from rag.query_router import QueryRouter
from rag.response_generator import QueryContext, RAGResponse, ResponseGenerator, RetrievalResult

log = structlog.get_logger(__name__)


class RAGService:
    def __init__(self, ingestor: KnowledgeIngestor, generator: ResponseGenerator):
        self.ingestor = ingestor
        self.generator = generator

    async def ingest(
        self,
        tenant_id: str,
        content: IngestContent,
        options: Optional[IngestOptions] = None
    ) -> IngestResult:
        result = await self.ingestor.ingest(tenant_id, content, options)
        log.info(
            "knowledge.ingested",
            tenant_id=tenant_id,
            source_type=content.source_type,
            success=result.success,
            skipped=result.skipped,
            chunks_created=result.chunks_created,
        )
        return result

    async def ingest_batch(
        self,
        tenant_id: str,
        items: List[IngestContent],
        options: Optional[IngestOptions] = None
    ) -> List[IngestResult]:
        results = await self.ingestor.ingest_batch(tenant_id, items, options)
        log.info(
            "knowledge.batch_ingested",
            tenant_id=tenant_id,
            items=len(items),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    async def archive_missing_sources(self, tenant_id: str, source_type: str, live_source_ids: Iterable[str]) -> int:
        return await self.ingestor.archive_missing_sources(tenant_id, source_type, live_source_ids)

    async def archive_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        return await self.ingestor.archive_entry(tenant_id, knowledge_base_id)

    async def delete_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        return await self.ingestor.delete_entry(tenant_id, knowledge_base_id)

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        return await self.ingestor.get_stats(tenant_id)

    async def answer(
        self,
        query: str,
        tenant_id: str,
        contact_id: Optional[str] = None,
        max_context_tokens: Optional[int] = None,
        include_recommendations: bool = False,
        **search_options: Any
    ) -> RAGResponse:
        context = QueryContext(
            contact_id=contact_id,
            max_context_tokens=max_context_tokens,
            include_recommendations=include_recommendations,
            **search_options,
        )
        response = await self.generator.generate(query, tenant_id, context)
        log.info(
            "rag.answered",
            tenant_id=tenant_id,
            query_id=response.query_id,
            confidence=round(response.confidence, 3),
            citations=len(response.citations),
            processing_time_ms=response.processing_time_ms,
        )
        return response

    async def retrieve(
        self,
        query: str,
        tenant_id: str,
        source_types: Optional[List[str]] = None,
        limit: int = SEARCH_CONFIG['default_limit'],
        similarity_threshold: float = SEARCH_CONFIG['similarity_threshold']
    ) -> RetrievalResult:
        result = await self.generator.retrieve(query, tenant_id, source_types, limit, similarity_threshold)
        log.info(
            "rag.retrieved",
            tenant_id=tenant_id,
            query_id=result.query_id,
            source_types=result.source_types,
            total_found=result.total_found,
            processing_time_ms=result.processing_time_ms,
        )
        return result


def build_rag_service(
    session: AsyncSession,
    embedder: VectorEmbedder,
    chat_client: GeminiChatClient,
    search_backend: Optional[str] = None,
    router: Optional[QueryRouter] = None,
) -> RAGService:
    """Assemble the pipeline for one session"""
    repository = KnowledgeBaseRepository(session)
    search_service = SimilaritySearchService(
        build_search_backend(session, search_backend),
        dimensions=embedder.dimensions,
    )
    ingestor = KnowledgeIngestor(repository, embedder)
    generator = ResponseGenerator(
        embedder=embedder,
        search_service=search_service,
        chat_client=chat_client,
        repository=repository,
        router=router,
    )
    return RAGService(ingestor, generator)
