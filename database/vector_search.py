"""
Vector search over knowledge chunks using pgvector
Thresholded, tenant-scoped nearest-neighbour search with one backend chosen at startup
"""

import asyncio
import logging
import math
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import EntryStatus, KnowledgeBaseEntry, KnowledgeChunk
from ingestion.config import EMBEDDING_CONFIG, SEARCH_CONFIG
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SearchFailure(Exception):
    """Storage or query error during similarity search"""
    pass


@dataclass
class SearchMatch:
    """One ranked chunk match"""
    chunk_id: UUID
    knowledge_base_id: UUID
    content: str
    similarity: float
    title: str
    source_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    chunk_index: int = 0


class OrmSimilarityBackend:
    """pgvector cosine distance through SQLAlchemy"""
    name = "orm"

    def __init__(self, session: AsyncSession):
        self.session = session

    async def fetch(
        self,
        query_embedding: List[float],
        tenant_id: str,
        source_types: Optional[List[str]],
        limit: int,
        similarity_threshold: float
    ) -> List[SearchMatch]:
        distance = KnowledgeChunk.embedding.cosine_distance(query_embedding)
        similarity = (1 - distance).label('similarity')

        stmt = (
            select(
                KnowledgeChunk.id,
                KnowledgeChunk.knowledge_base_id,
                KnowledgeChunk.content,
                similarity,
                KnowledgeBaseEntry.title,
                KnowledgeBaseEntry.source_type,
                KnowledgeChunk.chunk_metadata,
                KnowledgeChunk.chunk_index,
                KnowledgeBaseEntry.updated_at,
            )
            .join(KnowledgeBaseEntry, KnowledgeBaseEntry.id == KnowledgeChunk.knowledge_base_id)
            .where(
                KnowledgeChunk.tenant_id == tenant_id,
                KnowledgeBaseEntry.tenant_id == tenant_id,
                KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                (1 - distance) >= similarity_threshold,
            )
        )
        if source_types is not None:
            stmt = stmt.where(KnowledgeBaseEntry.source_type.in_(source_types))

        stmt = stmt.order_by(distance.asc(), KnowledgeBaseEntry.updated_at.desc()).limit(limit)

        async with self.session.begin_nested():
            result = await self.session.execute(stmt)
            rows = result.all()
        return [
            SearchMatch(
                chunk_id=row[0],
                knowledge_base_id=row[1],
                content=row[2],
                similarity=float(row[3]),
                title=row[4],
                source_type=row[5],
                metadata=row[6] or {},
                chunk_index=row[7],
                updated_at=row[8],
            )
            for row in rows
        ]


class RpcSimilarityBackend:
    """Stored procedure rag_similarity_search() created by the migrations"""
    name = "rpc"

    def __init__(self, session: AsyncSession, function_name: str = SEARCH_CONFIG['rpc_function']):
        if not _IDENTIFIER.match(function_name):
            raise ValueError(f"Invalid search function name: {function_name!r}")
        self.session = session
        self.function_name = function_name

    async def fetch(
        self,
        query_embedding: List[float],
        tenant_id: str,
        source_types: Optional[List[str]],
        limit: int,
        similarity_threshold: float
    ) -> List[SearchMatch]:
        stmt = text(
            f"SELECT * FROM {self.function_name}("
            "CAST(:query_embedding AS vector), :tenant_id, "
            "CAST(:source_types AS VARCHAR[]), :similarity_threshold, :max_results)"
        )
        async with self.session.begin_nested():
            result = await self.session.execute(stmt, {
                'query_embedding': '[' + ','.join(repr(float(v)) for v in query_embedding) + ']',
                'tenant_id': tenant_id,
                'source_types': source_types,
                'similarity_threshold': similarity_threshold,
                'max_results': limit,
            })
            rows = result.mappings().all()
        return [
            SearchMatch(
                chunk_id=row['chunk_id'],
                knowledge_base_id=row['knowledge_base_id'],
                content=row['content'],
                similarity=float(row['similarity']),
                title=row['title'],
                source_type=row['source_type'],
                metadata=row['metadata'] or {},
                chunk_index=row['chunk_index'],
                updated_at=row['updated_at'],
            )
            for row in rows
        ]


SEARCH_BACKENDS = {
    OrmSimilarityBackend.name: OrmSimilarityBackend,
    RpcSimilarityBackend.name: RpcSimilarityBackend,
}


def validate_backend_name(backend_name: Optional[str] = None) -> str:
    """Normalized backend name; raises ValueError for anything not in SEARCH_BACKENDS"""
    name = (backend_name or SEARCH_CONFIG['backend']).strip().lower()
    if name not in SEARCH_BACKENDS:
        expected = ', '.join(repr(n) for n in sorted(SEARCH_BACKENDS))
        raise ValueError(f"Unknown vector search backend: {name!r} (expected one of {expected})")
    return name


def build_search_backend(session: AsyncSession, backend_name: Optional[str] = None):
    """Resolve the configured backend for one request session"""
    return SEARCH_BACKENDS[validate_backend_name(backend_name)](session)


def rank_matches(matches: Sequence[SearchMatch], similarity_threshold: float, limit: int) -> List[SearchMatch]:
    """Threshold, order by similarity desc then entry recency desc, truncate"""
    kept = [m for m in matches if m.similarity >= similarity_threshold]
    kept.sort(key=lambda m: m.updated_at.timestamp() if m.updated_at else float('-inf'), reverse=True)
    kept.sort(key=lambda m: m.similarity, reverse=True)
    return kept[:limit]


class SimilaritySearchService:
    """Service for thresholded similarity search scoped to one tenant"""

    def __init__(
        self,
        backend,
        dimensions: int = EMBEDDING_CONFIG['dimensions'],
        max_attempts: int = SEARCH_CONFIG['max_attempts'],
        retry_delay: float = SEARCH_CONFIG['retry_delay'],
    ):
        self.backend = backend
        self.dimensions = dimensions
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def search(
        self,
        query_embedding: List[float],
        tenant_id: str,
        source_types: Optional[List[str]] = None,
        limit: int = SEARCH_CONFIG['default_limit'],
        similarity_threshold: float = SEARCH_CONFIG['similarity_threshold']
    ) -> List[SearchMatch]:
        """
        Return chunks at or above the threshold, best first.

        Never raises: any backend failure is logged and degraded to an empty list.
        """
        start_time = time.time()
        try:
            matches = await self._search(query_embedding, tenant_id, source_types, limit, similarity_threshold)
        except SearchFailure as e:
            logger.error(f"Similarity search failed for tenant {tenant_id}: {e}")
            await metrics_inc("vector_search_errors_total", labels={"backend": self.backend.name})
            return []
        except Exception as e:
            logger.error(
                f"Similarity search failed for tenant {tenant_id}: {type(e).__name__}: {e}", exc_info=True
            )
            await metrics_inc("vector_search_errors_total", labels={"backend": self.backend.name})
            return []

        query_time_ms = (time.time() - start_time) * 1000
        await metrics_observe("vector_search_query_ms", query_time_ms, labels={"backend": self.backend.name})
        logger.info(f"Vector search completed: {len(matches)} results in {query_time_ms:.2f}ms")
        return matches

    async def _search(
        self,
        query_embedding: List[float],
        tenant_id: str,
        source_types: Optional[List[str]],
        limit: int,
        similarity_threshold: float
    ) -> List[SearchMatch]:
        self._validate(query_embedding, tenant_id)
        if limit <= 0 or (source_types is not None and len(source_types) == 0):
            return []
        types = sorted(set(source_types)) if source_types is not None else None

        # Execute search with retry and exponential backoff
        for attempt in range(self.max_attempts):
            try:
                rows = await self.backend.fetch(
                    list(query_embedding), tenant_id, types, limit, similarity_threshold
                )
                return rank_matches(rows, similarity_threshold, limit)
            except SQLAlchemyError as e:
                if attempt < self.max_attempts - 1:
                    delay = self.retry_delay * (2 ** attempt) + random.uniform(0, 0.1)
                    logger.warning(
                        f"Vector search DB error (attempt {attempt + 1}/{self.max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise SearchFailure(f"Database error after {self.max_attempts} attempts: {e}") from e
        return []

    def _validate(self, query_embedding: List[float], tenant_id: str) -> None:
        if not tenant_id:
            raise SearchFailure("tenant_id is required")
        if not isinstance(query_embedding, (list, tuple)) or len(query_embedding) != self.dimensions:
            size = len(query_embedding) if isinstance(query_embedding, (list, tuple)) else 'n/a'
            raise SearchFailure(f"Query vector must be {self.dimensions}-dimensional (got {size})")
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in query_embedding):
            raise SearchFailure("Query vector contains non-finite values")
