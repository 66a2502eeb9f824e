"""
Tests for the Gemini embedding client: batching, retry, caching and validation
"""

import math
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from database.cache import LRUCache
from ingestion.vector_embedder import (
    EmbeddingFailure, ProviderError, VectorEmbedder, cosine_similarity, validate_embedding,
)
from monitoring.metrics import MetricsRegistry

from conftest import KeywordEmbedder, keyword_vector


class ScriptedEmbedder(VectorEmbedder):
    """Raises the scripted errors in order, then succeeds"""

    def __init__(self, errors, **kwargs):
        kwargs.setdefault('api_key', 'test-key')
        kwargs.setdefault('dimensions', 3)
        kwargs.setdefault('retry_delay', 0)
        kwargs.setdefault('enable_cache', False)
        super().__init__(**kwargs)
        self.errors = list(errors)
        self.calls = 0

    async def _call_provider(self, texts):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return [[0.1, 0.2, 0.3] for _ in texts]


class TestConstruction:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setattr('ingestion.vector_embedder.GOOGLE_API_KEY', None)
        with pytest.raises(ValueError):
            VectorEmbedder()

    @pytest.mark.parametrize("batch_size", [0, 101])
    def test_batch_size_bounds(self, batch_size):
        with pytest.raises(ValueError):
            VectorEmbedder(api_key='test-key', batch_size=batch_size)

    def test_cache_can_be_disabled(self):
        assert VectorEmbedder(api_key='test-key', enable_cache=False).cache is None


class TestBatching:

    @pytest.mark.asyncio
    async def test_sub_batches_preserve_order(self):
        embedder = KeywordEmbedder(batch_size=2)
        texts = ["brake pad", "rotor", "invoice total", "weather", "customer email"]

        vectors = await embedder.embed_batch(texts)

        assert [len(call) for call in embedder.provider_calls] == [2, 2, 1]
        assert vectors == [keyword_vector(t) for t in texts]

    @pytest.mark.asyncio
    async def test_sub_batches_are_paced_sequentially(self):
        embedder = KeywordEmbedder(batch_size=100, batch_delay=0.25)
        texts = [f"brake pad {i}" for i in range(250)]
        calls_at_sleep = []

        async def record_sleep(delay):
            calls_at_sleep.append(len(embedder.provider_calls))

        with patch('ingestion.vector_embedder.asyncio.sleep', new_callable=AsyncMock) as sleep:
            sleep.side_effect = record_sleep
            vectors = await embedder.embed_batch(texts)

        assert len(vectors) == 250
        assert [len(call) for call in embedder.provider_calls] == [100, 100, 50]
        assert [c.args[0] for c in sleep.await_args_list] == [0.25, 0.25]
        assert calls_at_sleep == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        embedder = KeywordEmbedder()
        assert await embedder.embed_batch([]) == []
        assert embedder.provider_calls == []

    @pytest.mark.asyncio
    async def test_blank_text_rejected_before_any_request(self):
        embedder = KeywordEmbedder()
        with pytest.raises(EmbeddingFailure):
            await embedder.embed_batch(["brake pad", "   "])
        assert embedder.provider_calls == []


class TestCaching:

    @pytest.mark.asyncio
    async def test_repeated_query_served_from_cache(self):
        embedder = KeywordEmbedder(cache=LRUCache(capacity=10, ttl_seconds=60))

        first = await embedder.embed("brake pad price")
        first.append(99.0)
        second = await embedder.embed("brake  pad price")

        assert len(embedder.provider_calls) == 1
        assert second == keyword_vector("brake pad price")
        assert await MetricsRegistry.instance().counter_value("embedding_cache_hits_total") == 1

    @pytest.mark.asyncio
    async def test_cache_key_includes_model(self):
        cache = LRUCache(capacity=10, ttl_seconds=60)
        await KeywordEmbedder(model='models/a', cache=cache).embed("rotor")
        other = KeywordEmbedder(model='models/b', cache=cache)
        await other.embed("rotor")
        assert len(other.provider_calls) == 1

    @pytest.mark.asyncio
    async def test_stats_report_cache(self):
        embedder = KeywordEmbedder(cache=LRUCache(capacity=10, ttl_seconds=60))
        await embedder.embed("rotor")
        await embedder.embed("rotor")
        stats = await embedder.get_stats()
        assert stats['cache_enabled'] is True
        assert stats['cache_hits'] == 1
        assert stats['texts_embedded'] == 1


class TestRetry:

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        embedder = ScriptedEmbedder([ProviderError(503, "unavailable"), ProviderError(429, "rate limited")])
        assert await embedder.embed("text") == [0.1, 0.2, 0.3]
        assert embedder.calls == 3

    @pytest.mark.asyncio
    async def test_backoff_doubles_each_retry(self):
        errors = [ProviderError(503, "unavailable")] * 3
        embedder = ScriptedEmbedder(errors, max_retries=3, retry_delay=0.5)

        with patch('ingestion.vector_embedder.asyncio.sleep', new_callable=AsyncMock) as sleep:
            assert await embedder.embed("text") == [0.1, 0.2, 0.3]

        assert embedder.calls == 4
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        embedder = ScriptedEmbedder([ProviderError(400, "bad request")])
        with pytest.raises(EmbeddingFailure) as exc_info:
            await embedder.embed("text")
        assert embedder.calls == 1
        assert isinstance(exc_info.value.last_error, ProviderError)
        assert exc_info.value.last_error.status == 400

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        embedder = ScriptedEmbedder([ProviderError(429, "rate limited")] * 5, max_retries=2)
        with pytest.raises(EmbeddingFailure):
            await embedder.embed("text")
        assert embedder.calls == 3
        assert await MetricsRegistry.instance().counter_value(
            "embedding_errors_total", labels={"error_type": "external_api_error"}
        ) == 3

    @pytest.mark.asyncio
    async def test_count_mismatch_fails(self):
        class ShortEmbedder(ScriptedEmbedder):
            async def _call_provider(self, texts):
                return [[0.1, 0.2, 0.3]]

        with pytest.raises(EmbeddingFailure):
            await ShortEmbedder([]).embed_batch(["one", "two"])


class TestProviderCalls:

    def _embedder_with_response(self, status, payload):
        embedder = VectorEmbedder(api_key='test-key', dimensions=3, enable_cache=False, retry_delay=0)
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=payload)
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.return_value = response
        session.post.return_value.__aexit__.return_value = False
        embedder.session = session
        return embedder, session

    @pytest.mark.asyncio
    async def test_single_text_uses_embed_content(self):
        embedder, session = self._embedder_with_response(200, {'embedding': {'values': [1.0, 0.0, 0.0]}})
        assert await embedder.embed("hello") == [1.0, 0.0, 0.0]
        url = session.post.call_args[0][0]
        assert url.endswith(":embedContent")

    @pytest.mark.asyncio
    async def test_batch_uses_batch_embed_contents(self):
        payload = {'embeddings': [{'values': [1.0, 0.0, 0.0]}, {'values': [0.0, 1.0, 0.0]}]}
        embedder, session = self._embedder_with_response(200, payload)
        assert await embedder.embed_batch(["a", "b"]) == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        url = session.post.call_args[0][0]
        body = session.post.call_args[1]['json']
        assert url.endswith(":batchEmbedContents")
        assert [r['content']['parts'][0]['text'] for r in body['requests']] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_error_status_surfaces_provider_message(self):
        embedder, _ = self._embedder_with_response(400, {'error': {'message': 'API key not valid'}})
        with pytest.raises(EmbeddingFailure) as exc_info:
            await embedder.embed("hello")
        assert "API key not valid" in str(exc_info.value)


class TestVectorMath:

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_cosine_similarity_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])

    def test_validate_embedding(self):
        assert validate_embedding([0.1, 0.2, 0.3], 3)
        assert not validate_embedding([0.1, 0.2], 3)
        assert not validate_embedding([0.1, math.nan, 0.3], 3)
        assert not validate_embedding([0.1, True, 0.3], 3)
        assert not validate_embedding(None, 3)
