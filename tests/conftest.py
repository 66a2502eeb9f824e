"""
Shared fixtures: in-memory stand-ins for the database, embedding provider and LLM
"""

import dataclasses
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from database.models import EntryStatus
from database.vector_search import SearchMatch, SimilaritySearchService
from ingestion.knowledge_ingestor import KnowledgeIngestor
from ingestion.vector_embedder import VectorEmbedder, cosine_similarity
from monitoring.metrics import MetricsRegistry
from rag.generation_client import GenerationFailure
from rag.rag_service import RAGService
from rag.response_generator import ResponseGenerator

# One dimension per keyword plus a small constant bias so no vector is all zeros
VOCABULARY = (
    'brake', 'pad', 'rotor', 'price', 'xl200', 'ceramic', 'invoice', 'manual',
    'warranty', 'install', 'customer', 'email', 'weather', 'football', 'delivery',
)
BIAS = 0.1
# Descriptive vocabulary counts for less than product and document nouns
DESCRIPTIVE_WEIGHTS = {'ceramic': 0.4, 'warranty': 0.4, 'install': 0.4, 'customer': 0.4, 'delivery': 0.4}


def keyword_vector(text: str) -> List[float]:
    lowered = text.lower()
    return [
        DESCRIPTIVE_WEIGHTS.get(word, 1.0) if word in lowered else 0.0 for word in VOCABULARY
    ] + [BIAS]


class KeywordEmbedder(VectorEmbedder):
    """Deterministic embedder: weighted keyword presence, no network"""

    def __init__(self, **kwargs):
        kwargs.setdefault('api_key', 'test-key')
        kwargs.setdefault('dimensions', len(VOCABULARY) + 1)
        kwargs.setdefault('retry_delay', 0)
        kwargs.setdefault('batch_delay', 0)
        super().__init__(**kwargs)
        self.provider_calls: List[List[str]] = []

    async def _call_provider(self, texts: List[str]) -> List[List[float]]:
        self.provider_calls.append(list(texts))
        return [keyword_vector(text) for text in texts]


@dataclass
class StoredEntry:
    tenant_id: str
    source_type: str
    source_id: Optional[str]
    title: str
    raw_content: str
    content_hash: str
    entry_metadata: Dict[str, Any]
    embedding_model: str
    embedding_dimensions: int
    status: str = EntryStatus.ACTIVE.value
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryKnowledgeRepository:
    """Mirrors KnowledgeBaseRepository; savepoints snapshot and restore state"""

    def __init__(self):
        self.entries: Dict[uuid.UUID, StoredEntry] = {}
        self.chunks: List[Any] = []
        self.queries: List[Any] = []
        self.fail_record_query = False

    @asynccontextmanager
    async def savepoint(self):
        entries = {k: dataclasses.replace(v) for k, v in self.entries.items()}
        chunks = list(self.chunks)
        try:
            yield
        except Exception:
            self.entries = entries
            self.chunks = chunks
            raise

    async def find_active_by_hash(self, tenant_id, source_type, content_hash):
        for entry in self.entries.values():
            if (entry.tenant_id, entry.source_type, entry.content_hash, entry.status) == (
                tenant_id, source_type, content_hash, EntryStatus.ACTIVE.value
            ):
                return entry
        return None

    async def find_by_source_id(self, tenant_id, source_type, source_id):
        found = [
            e for e in self.entries.values()
            if (e.tenant_id, e.source_type, e.source_id) == (tenant_id, source_type, source_id)
        ]
        found.sort(key=lambda e: e.updated_at, reverse=True)
        return found[0] if found else None

    async def upsert_entry(self, existing, **values):
        metadata = values.pop('metadata')
        if existing is None:
            entry = StoredEntry(entry_metadata=metadata, **values)
            self.entries[entry.id] = entry
            return entry
        # savepoints hold copies, so mutate the live instance only
        entry = self.entries[existing.id]
        source_id = values.pop('source_id') or entry.source_id
        for key, value in values.items():
            setattr(entry, key, value)
        entry.source_id = source_id
        entry.entry_metadata = metadata
        entry.status = EntryStatus.ACTIVE.value
        entry.updated_at = datetime.now(timezone.utc)
        return entry

    async def delete_chunks(self, knowledge_base_id):
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if c.knowledge_base_id != knowledge_base_id]
        return before - len(self.chunks)

    async def insert_chunks(self, chunks):
        for chunk in chunks:
            if chunk.id is None:
                chunk.id = uuid.uuid4()
        self.chunks.extend(chunks)
        return len(chunks)

    async def archive_entry(self, tenant_id, knowledge_base_id):
        entry = self.entries.get(knowledge_base_id)
        if entry is None or entry.tenant_id != tenant_id or entry.status != EntryStatus.ACTIVE.value:
            return False
        entry.status = EntryStatus.ARCHIVED.value
        return True

    async def archive_missing_sources(self, tenant_id, source_type, live_source_ids):
        live = set(live_source_ids)
        archived = 0
        for entry in self.entries.values():
            if (entry.tenant_id == tenant_id and entry.source_type == source_type
                    and entry.status == EntryStatus.ACTIVE.value
                    and entry.source_id is not None and entry.source_id not in live):
                entry.status = EntryStatus.ARCHIVED.value
                archived += 1
        return archived

    async def delete_entry(self, tenant_id, knowledge_base_id):
        entry = self.entries.get(knowledge_base_id)
        if entry is None or entry.tenant_id != tenant_id:
            return False
        del self.entries[knowledge_base_id]
        await self.delete_chunks(knowledge_base_id)
        return True

    async def get_stats(self, tenant_id):
        active = {
            e.id: e for e in self.entries.values()
            if e.tenant_id == tenant_id and e.status == EntryStatus.ACTIVE.value
        }
        breakdown: Dict[str, int] = {}
        for entry in active.values():
            breakdown[entry.source_type] = breakdown.get(entry.source_type, 0) + 1
        chunks = [c for c in self.chunks if c.knowledge_base_id in active]
        return {
            'total_entries': len(active),
            'total_chunks': len(chunks),
            'source_type_breakdown': breakdown,
            'average_chunk_tokens': round(sum(c.token_count for c in chunks) / len(chunks)) if chunks else 0,
            'last_updated': max((e.updated_at for e in active.values()), default=None),
        }

    async def record_query(self, record):
        if self.fail_record_query:
            raise RuntimeError("query history unavailable")
        self.queries.append(record)
        return record

    def active_chunks(self, knowledge_base_id) -> List[Any]:
        return sorted(
            (c for c in self.chunks if c.knowledge_base_id == knowledge_base_id),
            key=lambda c: c.chunk_index,
        )


class InMemorySearchBackend:
    """Brute-force cosine search over the in-memory repository"""
    name = "memory"

    def __init__(self, repository: InMemoryKnowledgeRepository):
        self.repository = repository
        self.calls: List[Dict[str, Any]] = []

    async def fetch(self, query_embedding, tenant_id, source_types, limit, similarity_threshold):
        self.calls.append({'tenant_id': tenant_id, 'source_types': source_types, 'limit': limit})
        matches = []
        for chunk in self.repository.chunks:
            entry = self.repository.entries.get(chunk.knowledge_base_id)
            if entry is None or entry.tenant_id != tenant_id or entry.status != EntryStatus.ACTIVE.value:
                continue
            if source_types is not None and entry.source_type not in source_types:
                continue
            similarity = cosine_similarity(query_embedding, chunk.embedding)
            if similarity < similarity_threshold:
                continue
            matches.append(SearchMatch(
                chunk_id=chunk.id,
                knowledge_base_id=entry.id,
                content=chunk.content,
                similarity=similarity,
                title=entry.title,
                source_type=entry.source_type,
                metadata=chunk.chunk_metadata or {},
                updated_at=entry.updated_at,
                chunk_index=chunk.chunk_index,
            ))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]


class FakeChatClient:
    """Records prompts; answers with a canned reply or raises GenerationFailure"""

    def __init__(self, answer: str = "The XL200 brake pad costs 49.99 EUR [1].", tokens: int = 42, fail: bool = False):
        self.answer = answer
        self.tokens = tokens
        self.fail = fail
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system_prompt: str, user_prompt: str):
        self.calls.append({'system_prompt': system_prompt, 'user_prompt': user_prompt})
        if self.fail:
            raise GenerationFailure("Generation failed after 3 attempts", RuntimeError("503 service unavailable"))
        return self.answer, self.tokens


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Isolate the process-wide metrics registry per test"""
    MetricsRegistry._instance = None
    yield
    MetricsRegistry._instance = None


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def repository():
    return InMemoryKnowledgeRepository()


@pytest.fixture
def search_backend(repository):
    return InMemorySearchBackend(repository)


@pytest.fixture
def chat_client():
    return FakeChatClient()


@pytest.fixture
def ingestor(repository, embedder):
    return KnowledgeIngestor(repository, embedder, item_delay=0)


@pytest.fixture
def generator(embedder, search_backend, chat_client, repository):
    search_service = SimilaritySearchService(search_backend, dimensions=embedder.dimensions, retry_delay=0)
    return ResponseGenerator(
        embedder=embedder,
        search_service=search_service,
        chat_client=chat_client,
        repository=repository,
    )


@pytest.fixture
def rag_service(ingestor, generator):
    return RAGService(ingestor, generator)
