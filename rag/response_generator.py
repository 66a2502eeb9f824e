"""
Answer generation for the RAG pipeline.

Embeds the query, routes it to source types, retrieves ranked chunks, and
issues one grounded generation call. Every failure path still produces a
well-formed RAGResponse. `retrieve` stops after the search for callers that
only want the ranked chunks.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from database.models import QueryRecord
from database.repositories import KnowledgeBaseRepository
from database.vector_search import SearchMatch, SimilaritySearchService
from ingestion.config import SEARCH_CONFIG
from ingestion.vector_embedder import EmbeddingFailure, VectorEmbedder
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe
from rag.citations import Citation, CitationBuilder, ConfidenceScorer
from rag.context_builder import ContextBuilder
from rag.generation_client import GeminiChatClient, GenerationFailure
from rag.query_router import QueryRouter

logger = logging.getLogger(__name__)

INSUFFICIENT_INFORMATION_ANSWER = (
    "I don't have enough relevant information to answer your question accurately."
)
INSUFFICIENT_INFORMATION_CONFIDENCE = 0.1
GENERATION_ERROR_ANSWER = (
    "I encountered an error while processing your request. Please try again."
)


@dataclass
class QueryContext:
    contact_id: Optional[str] = None
    max_context_tokens: Optional[int] = None
    include_recommendations: bool = False
    limit: int = SEARCH_CONFIG['default_limit']
    similarity_threshold: float = SEARCH_CONFIG['similarity_threshold']


@dataclass
class SourceReference:
    chunk_id: str
    knowledge_base_id: str
    title: str
    source_type: str
    similarity: float
    chunk_index: int


@dataclass
class RetrievalResult:
    """Ranked chunks for one query, without generation"""
    query_id: str
    matches: List[SearchMatch] = field(default_factory=list)
    source_types: List[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def total_found(self) -> int:
        return len(self.matches)


@dataclass
class RAGResponse:
    answer: str
    confidence: float
    sources: List[SourceReference] = field(default_factory=list)
    citations: List[Citation] = field(default_factory=list)
    context_used: str = ""
    tokens_used: int = 0
    processing_time_ms: int = 0
    query_id: str = ""


class ResponseGenerator:
    """Retrieval plus grounded generation with graceful degradation"""

    def __init__(
        self,
        embedder: VectorEmbedder,
        search_service: SimilaritySearchService,
        chat_client: GeminiChatClient,
        repository: Optional[KnowledgeBaseRepository] = None,
        router: Optional[QueryRouter] = None,
        context_builder: Optional[ContextBuilder] = None,
        citation_builder: Optional[CitationBuilder] = None,
        confidence_scorer: Optional[ConfidenceScorer] = None,
    ):
        self.embedder = embedder
        self.search_service = search_service
        self.chat_client = chat_client
        self.repository = repository
        self.router = router or QueryRouter()
        self.context_builder = context_builder or ContextBuilder()
        self.citation_builder = citation_builder or CitationBuilder()
        self.confidence_scorer = confidence_scorer or ConfidenceScorer()

    async def generate(
        self,
        query_text: str,
        tenant_id: str,
        context: Optional[QueryContext] = None
    ) -> RAGResponse:
        context = context or QueryContext()
        start_time = time.time()
        query_id = uuid.uuid4()

        if not query_text or not query_text.strip():
            logger.warning("Empty query received, returning insufficient-information answer")
            return self._insufficient(query_id, start_time)

        matches, _ = await self._retrieve(
            query_id, query_text, tenant_id, None, context.limit, context.similarity_threshold, start_time
        )

        if not matches:
            await metrics_inc("rag_queries_total", labels={"outcome": "insufficient"})
            return self._insufficient(query_id, start_time)

        built = self.context_builder.build(matches, context.max_context_tokens)
        if not built.matches:
            await metrics_inc("rag_queries_total", labels={"outcome": "insufficient"})
            return self._insufficient(query_id, start_time)

        system_prompt = self.context_builder.system_prompt(
            built,
            contact_id=context.contact_id,
            include_recommendations=context.include_recommendations,
        )

        try:
            answer, tokens_used = await self.chat_client.complete(system_prompt, query_text)
        except GenerationFailure as e:
            logger.error(f"Answer generation failed for tenant {tenant_id}: {e}")
            await metrics_inc("rag_queries_total", labels={"outcome": "generation_error"})
            return RAGResponse(
                answer=GENERATION_ERROR_ANSWER,
                confidence=0.0,
                processing_time_ms=self._elapsed_ms(start_time),
                query_id=str(query_id),
            )

        response = RAGResponse(
            answer=answer,
            confidence=self.confidence_scorer.score(built.matches, answer),
            sources=[
                SourceReference(
                    chunk_id=str(m.chunk_id),
                    knowledge_base_id=str(m.knowledge_base_id),
                    title=m.title,
                    source_type=m.source_type,
                    similarity=m.similarity,
                    chunk_index=m.chunk_index,
                )
                for m in built.matches
            ],
            citations=self.citation_builder.build(built.matches),
            context_used=built.text,
            tokens_used=tokens_used,
            processing_time_ms=self._elapsed_ms(start_time),
            query_id=str(query_id),
        )

        await metrics_inc("rag_queries_total", labels={"outcome": "answered"})
        await metrics_observe("rag_query_ms", response.processing_time_ms)
        logger.info(
            f"Generated response with {len(response.citations)} citations "
            f"(confidence {response.confidence:.2f}) in {response.processing_time_ms}ms"
        )
        return response

    async def retrieve(
        self,
        query_text: str,
        tenant_id: str,
        source_types: Optional[List[str]] = None,
        limit: int = SEARCH_CONFIG['default_limit'],
        similarity_threshold: float = SEARCH_CONFIG['similarity_threshold']
    ) -> RetrievalResult:
        """
        Embed, route and search without calling the generative model.

        Explicit source_types bypass the router. The query is recorded in
        the audit trail like any answered question.
        """
        start_time = time.time()
        query_id = uuid.uuid4()

        if not query_text or not query_text.strip():
            return RetrievalResult(query_id=str(query_id), processing_time_ms=self._elapsed_ms(start_time))

        matches, searched = await self._retrieve(
            query_id, query_text, tenant_id, source_types, limit, similarity_threshold, start_time
        )
        await metrics_inc("rag_retrievals_total", labels={"outcome": "found" if matches else "empty"})
        return RetrievalResult(
            query_id=str(query_id),
            matches=matches,
            source_types=searched,
            processing_time_ms=self._elapsed_ms(start_time),
        )

    async def _retrieve(
        self,
        query_id: uuid.UUID,
        query_text: str,
        tenant_id: str,
        source_types: Optional[List[str]],
        limit: int,
        similarity_threshold: float,
        start_time: float
    ) -> Tuple[List[SearchMatch], List[str]]:
        if source_types is None:
            source_types = self.router.route_sources(query_text)
        query_embedding: Optional[List[float]] = None
        matches: List[SearchMatch] = []

        try:
            query_embedding = await self.embedder.embed(query_text)
        except EmbeddingFailure as e:
            logger.warning(f"Query embedding failed, continuing without retrieval: {e}")

        if query_embedding is not None:
            matches = await self.search_service.search(
                query_embedding,
                tenant_id,
                source_types=source_types,
                limit=limit,
                similarity_threshold=similarity_threshold,
            )

        await self._record_query(query_id, tenant_id, query_text, query_embedding, source_types, matches, start_time)
        return matches, list(source_types)

    async def _record_query(
        self,
        query_id: uuid.UUID,
        tenant_id: str,
        query_text: str,
        query_embedding: Optional[List[float]],
        source_types: List[str],
        matches: List[SearchMatch],
        start_time: float
    ) -> None:
        """Append to the audit trail; failures are logged, never raised"""
        if self.repository is None:
            return
        record = QueryRecord(
            id=query_id,
            tenant_id=tenant_id,
            query_text=query_text,
            query_embedding=query_embedding,
            source_types_searched=list(source_types),
            chunk_ids_returned=[m.chunk_id for m in matches],
            processing_time_ms=self._elapsed_ms(start_time),
        )
        try:
            async with self.repository.savepoint():
                await self.repository.record_query(record)
        except Exception as e:
            logger.warning(f"Failed to record query {query_id}: {e}")

    def _insufficient(self, query_id: uuid.UUID, start_time: float) -> RAGResponse:
        return RAGResponse(
            answer=INSUFFICIENT_INFORMATION_ANSWER,
            confidence=INSUFFICIENT_INFORMATION_CONFIDENCE,
            processing_time_ms=self._elapsed_ms(start_time),
            query_id=str(query_id),
        )

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)
