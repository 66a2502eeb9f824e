"""
Repository layer for knowledge base storage
Entry upsert/dedupe lookups, chunk replacement in bounded batches, archival
and the query audit trail
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import EntryStatus, KnowledgeBaseEntry, KnowledgeChunk, QueryRecord
from ingestion.config import INGESTION_CONFIG

logger = logging.getLogger(__name__)


class KnowledgeRepositoryError(Exception):
    """Custom exception for knowledge repository operations"""
    pass


class KnowledgeBaseRepository:
    """Repository for knowledge base entries, their chunks and query history"""

    def __init__(self, session: AsyncSession, insert_batch_size: int = INGESTION_CONFIG['insert_batch_size']):
        self.session = session
        self.insert_batch_size = insert_batch_size

    def savepoint(self):
        """Nested transaction; rolled back on error so a failed item leaves no rows"""
        return self.session.begin_nested()

    async def find_active_by_hash(
        self,
        tenant_id: str,
        source_type: str,
        content_hash: str
    ) -> Optional[KnowledgeBaseEntry]:
        try:
            stmt = select(KnowledgeBaseEntry).where(
                KnowledgeBaseEntry.tenant_id == tenant_id,
                KnowledgeBaseEntry.source_type == source_type,
                KnowledgeBaseEntry.content_hash == content_hash,
                KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
            )
            result = await self.session.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up entry by hash for tenant {tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def find_by_source_id(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str
    ) -> Optional[KnowledgeBaseEntry]:
        """Entry for an upstream source, active or archived (most recent first)"""
        try:
            stmt = (
                select(KnowledgeBaseEntry)
                .where(
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                    KnowledgeBaseEntry.source_type == source_type,
                    KnowledgeBaseEntry.source_id == source_id,
                )
                .order_by(KnowledgeBaseEntry.updated_at.desc())
            )
            result = await self.session.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up entry {source_type}/{source_id} for tenant {tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def upsert_entry(
        self,
        existing: Optional[KnowledgeBaseEntry],
        *,
        tenant_id: str,
        source_type: str,
        source_id: Optional[str],
        title: str,
        raw_content: str,
        content_hash: str,
        metadata: Dict[str, Any],
        embedding_model: str,
        embedding_dimensions: int,
    ) -> KnowledgeBaseEntry:
        """Update `existing` in place (reactivating it), or create a new active entry"""
        try:
            if existing is None:
                entry = KnowledgeBaseEntry(
                    tenant_id=tenant_id,
                    source_type=source_type,
                    source_id=source_id,
                    title=title,
                    raw_content=raw_content,
                    content_hash=content_hash,
                    entry_metadata=metadata,
                    status=EntryStatus.ACTIVE.value,
                    embedding_model=embedding_model,
                    embedding_dimensions=embedding_dimensions,
                )
                self.session.add(entry)
            else:
                entry = existing
                entry.source_id = source_id or entry.source_id
                entry.title = title
                entry.raw_content = raw_content
                entry.content_hash = content_hash
                entry.entry_metadata = metadata
                entry.status = EntryStatus.ACTIVE.value
                entry.embedding_model = embedding_model
                entry.embedding_dimensions = embedding_dimensions
                entry.updated_at = func.current_timestamp()

            await self.session.flush()
            # updated_at is server-computed on update
            await self.session.refresh(entry)
            return entry
        except SQLAlchemyError as e:
            logger.error(f"Error upserting entry for tenant {tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def delete_chunks(self, knowledge_base_id: UUID) -> int:
        try:
            result = await self.session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.knowledge_base_id == knowledge_base_id)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting chunks for entry {knowledge_base_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def insert_chunks(self, chunks: List[KnowledgeChunk]) -> int:
        """Persist chunks in bounded batches, flushing after each batch"""
        try:
            for i in range(0, len(chunks), self.insert_batch_size):
                batch = chunks[i:i + self.insert_batch_size]
                self.session.add_all(batch)
                await self.session.flush()
                logger.debug(f"Inserted chunk batch {i // self.insert_batch_size + 1} ({len(batch)} rows)")
            return len(chunks)
        except SQLAlchemyError as e:
            logger.error(f"Error inserting chunks: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def archive_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        try:
            result = await self.session.execute(
                update(KnowledgeBaseEntry)
                .where(
                    KnowledgeBaseEntry.id == knowledge_base_id,
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                    KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                )
                .values(status=EntryStatus.ARCHIVED.value, updated_at=func.current_timestamp())
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Error archiving entry {knowledge_base_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def archive_missing_sources(
        self,
        tenant_id: str,
        source_type: str,
        live_source_ids: Iterable[str]
    ) -> int:
        """Archive active entries whose source_id is no longer present upstream"""
        live = list(live_source_ids)
        try:
            stmt = (
                update(KnowledgeBaseEntry)
                .where(
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                    KnowledgeBaseEntry.source_type == source_type,
                    KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                    KnowledgeBaseEntry.source_id.is_not(None),
                )
                .values(status=EntryStatus.ARCHIVED.value, updated_at=func.current_timestamp())
            )
            if live:
                stmt = stmt.where(KnowledgeBaseEntry.source_id.not_in(live))
            result = await self.session.execute(stmt)
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error archiving missing {source_type} sources for tenant {tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def delete_entry(self, tenant_id: str, knowledge_base_id: UUID) -> bool:
        """Hard delete; chunks go with it through the cascade"""
        try:
            result = await self.session.execute(
                delete(KnowledgeBaseEntry).where(
                    KnowledgeBaseEntry.id == knowledge_base_id,
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                )
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting entry {knowledge_base_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Active entries per source type, chunk totals and last update"""
        try:
            by_type = await self.session.execute(
                select(KnowledgeBaseEntry.source_type, func.count(KnowledgeBaseEntry.id))
                .where(
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                    KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                )
                .group_by(KnowledgeBaseEntry.source_type)
            )
            breakdown = {source_type: count for source_type, count in by_type.all()}

            chunk_row = (await self.session.execute(
                select(func.count(KnowledgeChunk.id), func.avg(KnowledgeChunk.token_count))
                .join(KnowledgeBaseEntry, KnowledgeBaseEntry.id == KnowledgeChunk.knowledge_base_id)
                .where(
                    KnowledgeChunk.tenant_id == tenant_id,
                    KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                )
            )).one()

            last_updated = (await self.session.execute(
                select(func.max(KnowledgeBaseEntry.updated_at)).where(
                    KnowledgeBaseEntry.tenant_id == tenant_id,
                    KnowledgeBaseEntry.status == EntryStatus.ACTIVE.value,
                )
            )).scalar()

            return {
                'total_entries': sum(breakdown.values()),
                'total_chunks': int(chunk_row[0] or 0),
                'source_type_breakdown': breakdown,
                'average_chunk_tokens': round(float(chunk_row[1] or 0)),
                'last_updated': last_updated,
            }
        except SQLAlchemyError as e:
            logger.error(f"Error computing knowledge stats for tenant {tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")

    async def record_query(self, record: QueryRecord) -> QueryRecord:
        try:
            self.session.add(record)
            await self.session.flush()
            return record
        except SQLAlchemyError as e:
            logger.error(f"Error recording query for tenant {record.tenant_id}: {e}")
            raise KnowledgeRepositoryError(f"Database error: {str(e)}")
