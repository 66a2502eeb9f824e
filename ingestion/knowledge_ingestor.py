"""
Knowledge ingestion orchestration
Hash/dedupe, chunk, embed and persist source content for one tenant
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from database.models import KnowledgeChunk, SourceType
from database.repositories import KnowledgeBaseRepository
from ingestion.config import INGESTION_CONFIG
from ingestion.document_chunker import (
    ChunkingConfig, ChunkingFailure, DocumentChunk, DocumentChunker, RECORD_CHUNKING_CONFIG, chunking_stats,
)
from ingestion.error_handling import ErrorType, classify_error
from ingestion.logging_config import PipelineLogContext, get_pipeline_logger, log_pipeline_metrics
from ingestion.vector_embedder import EmbeddingFailure, VectorEmbedder, validate_embedding
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe

logger = logging.getLogger(__name__)

# Structured fields picked up from product metadata
_RECORD_FIELDS = ('sku', 'category', 'specifications', 'attributes')


@dataclass
class IngestContent:
    """One piece of source content to ingest"""
    source_type: str
    title: str
    content: str
    source_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    force_update: bool = False


@dataclass
class IngestOptions:
    """Per-call chunking overrides and extra chunk metadata"""
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    preserve_structure: bool = True
    custom_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    knowledge_base_id: Optional[str]
    chunks_created: int
    tokens_processed: int
    success: bool
    processing_time_ms: int = 0
    skipped: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None


def content_hash(content: str) -> str:
    """SHA-256 hex digest of the raw content"""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def _error_type(error: Exception) -> ErrorType:
    if isinstance(error, (ValueError, ChunkingFailure)):
        return ErrorType.VALIDATION
    if isinstance(error, EmbeddingFailure) and error.last_error is not None:
        return classify_error(error.last_error)[0]
    return classify_error(error)[0]


class KnowledgeIngestor:
    """
    Ingests content into the knowledge store.

    Each item runs inside its own savepoint: a failure anywhere in the item
    leaves no partial entry or chunk rows, and is reported in that item's
    result instead of being raised.
    """

    def __init__(
        self,
        repository: KnowledgeBaseRepository,
        embedder: VectorEmbedder,
        chunker: Optional[DocumentChunker] = None,
        item_delay: float = INGESTION_CONFIG['item_delay'],
    ):
        self.repository = repository
        self.embedder = embedder
        self.chunker = chunker or DocumentChunker()
        self.item_delay = item_delay

    async def ingest(
        self,
        tenant_id: str,
        content: IngestContent,
        options: Optional[IngestOptions] = None
    ) -> IngestResult:
        """Ingest one item; never raises"""
        options = options or IngestOptions()
        start_time = time.time()
        log = get_pipeline_logger(__name__, tenant_id=tenant_id, stage='ingest')

        try:
            self._validate(tenant_id, content)
            with PipelineLogContext(
                logger, f"ingest {content.source_type} '{content.title}'",
                tenant_id=tenant_id, stage='ingest', log_level=logging.DEBUG,
            ):
                async with self.repository.savepoint():
                    result = await self._ingest(tenant_id, content, options)
        except Exception as e:
            error_type = _error_type(e)
            log.error(f"Ingestion failed for '{content.title}': {e}", extra={'error_type': error_type.value})
            await metrics_inc("ingestion_items_total", labels={"status": "failed", "error_type": error_type.value})
            return IngestResult(
                knowledge_base_id=None,
                chunks_created=0,
                tokens_processed=0,
                success=False,
                processing_time_ms=int((time.time() - start_time) * 1000),
                error=str(e),
                error_type=error_type.value,
            )

        result.processing_time_ms = int((time.time() - start_time) * 1000)
        status = "skipped" if result.skipped else "ingested"
        await metrics_inc("ingestion_items_total", labels={"status": status})
        await metrics_observe("ingestion_item_ms", result.processing_time_ms, labels={"source_type": content.source_type})
        log.info(
            f"{status.capitalize()} {content.source_type} '{content.title}': "
            f"{result.chunks_created} chunks, {result.tokens_processed} tokens in {result.processing_time_ms}ms",
            extra={'knowledge_base_id': result.knowledge_base_id},
        )
        return result

    async def ingest_batch(
        self,
        tenant_id: str,
        items: List[IngestContent],
        options: Optional[IngestOptions] = None
    ) -> List[IngestResult]:
        """Sequential ingestion with a small pause between items; per-item results"""
        results: List[IngestResult] = []
        for i, item in enumerate(items):
            results.append(await self.ingest(tenant_id, item, options))
            if i < len(items) - 1:
                await asyncio.sleep(self.item_delay)

        log_pipeline_metrics(logger, {
            'items': len(items),
            'succeeded': sum(1 for r in results if r.success),
            'skipped': sum(1 for r in results if r.skipped),
            'failed': sum(1 for r in results if not r.success),
            'chunks_created': sum(r.chunks_created for r in results),
            'tokens_processed': sum(r.tokens_processed for r in results),
        }, tenant_id=tenant_id, stage='ingest_batch')
        return results

    async def archive_missing_sources(
        self,
        tenant_id: str,
        source_type: str,
        live_source_ids: Iterable[str]
    ) -> int:
        """Archive active entries whose upstream source no longer exists"""
        if not SourceType.is_valid(source_type):
            raise ValueError(f"Unknown source type: {source_type}")
        archived = await self.repository.archive_missing_sources(tenant_id, source_type, live_source_ids)
        logger.info(f"Archived {archived} {source_type} entries with vanished sources for tenant {tenant_id}")
        return archived

    async def archive_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        return await self.repository.archive_entry(tenant_id, knowledge_base_id)

    async def delete_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        deleted = await self.repository.delete_entry(tenant_id, knowledge_base_id)
        if deleted:
            logger.info(f"Deleted knowledge base entry {knowledge_base_id} for tenant {tenant_id}")
        return deleted

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        return await self.repository.get_stats(tenant_id)

    # Private helpers
    @staticmethod
    def _validate(tenant_id: str, content: IngestContent) -> None:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if not SourceType.is_valid(content.source_type):
            raise ValueError(f"Unknown source type: {content.source_type}")
        if not content.title or not content.title.strip():
            raise ValueError("title is required")
        if content.content is None:
            raise ValueError("content is required")

    async def _ingest(self, tenant_id: str, content: IngestContent, options: IngestOptions) -> IngestResult:
        digest = content_hash(content.content)

        duplicate = await self.repository.find_active_by_hash(tenant_id, content.source_type, digest)
        if duplicate is not None and not content.force_update:
            logger.debug(f"Content already ingested as {duplicate.id}, skipping")
            return IngestResult(
                knowledge_base_id=str(duplicate.id),
                chunks_created=0,
                tokens_processed=0,
                success=True,
                skipped=True,
            )

        existing = None
        if content.source_id:
            existing = await self.repository.find_by_source_id(tenant_id, content.source_type, content.source_id)
        existing = existing or duplicate

        chunks = self._chunk(content, options)
        vectors = await self.embedder.embed_batch([chunk.content for chunk in chunks])
        for chunk, vector in zip(chunks, vectors):
            if not validate_embedding(vector, self.embedder.dimensions):
                raise EmbeddingFailure(
                    f"Invalid embedding for chunk {chunk.index}: expected {self.embedder.dimensions} finite values"
                )

        entry = await self.repository.upsert_entry(
            existing,
            tenant_id=tenant_id,
            source_type=content.source_type,
            source_id=content.source_id,
            title=content.title.strip(),
            raw_content=content.content,
            content_hash=digest,
            metadata=dict(content.metadata or {}),
            embedding_model=self.embedder.model,
            embedding_dimensions=self.embedder.dimensions,
        )
        if existing is not None:
            removed = await self.repository.delete_chunks(entry.id)
            logger.debug(f"Removed {removed} previous chunks of entry {entry.id}")

        rows = [
            KnowledgeChunk(
                knowledge_base_id=entry.id,
                tenant_id=tenant_id,
                content=chunk.content,
                embedding=vector,
                chunk_index=chunk.index,
                token_count=chunk.token_count,
                overlap_with_previous=chunk.overlap_with_previous,
                overlap_with_next=chunk.overlap_with_next,
                chunk_metadata={**chunk.metadata, **options.custom_metadata},
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        await self.repository.insert_chunks(rows)

        stats = chunking_stats(chunks)
        logger.debug(f"Chunk stats for entry {entry.id}: {stats}")
        return IngestResult(
            knowledge_base_id=str(entry.id),
            chunks_created=len(rows),
            tokens_processed=stats['total_tokens'],
            success=True,
        )

    def _chunk(self, content: IngestContent, options: IngestOptions) -> List[DocumentChunk]:
        if content.source_type == SourceType.PRODUCT.value:
            record = {'name': content.title, 'description': content.content}
            for key in _RECORD_FIELDS:
                if key in (content.metadata or {}):
                    record[key] = content.metadata[key]
            return self.chunker.chunk_record(record, self._chunking_config(options, RECORD_CHUNKING_CONFIG))
        return self.chunker.chunk(content.content, self._chunking_config(options, ChunkingConfig()))

    @staticmethod
    def _chunking_config(options: IngestOptions, base: ChunkingConfig) -> ChunkingConfig:
        overrides: Dict[str, Any] = {'preserve_structure': options.preserve_structure}
        if options.chunk_size is not None:
            overrides['chunk_size'] = options.chunk_size
        if options.chunk_overlap is not None:
            overrides['chunk_overlap'] = options.chunk_overlap
        elif options.chunk_size is not None:
            overrides['chunk_overlap'] = min(base.chunk_overlap, options.chunk_size // 5)
        return replace(base, **overrides)
