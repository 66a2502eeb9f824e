"""
Vector Embedding Service
Integrates with the Google Gemini embedding API for text embedding generation
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from database.cache import LRUCache, QueryEmbeddingCache
from ingestion.config import CACHE_CONFIG, EMBEDDING_CONFIG, GOOGLE_API_KEY
from ingestion.error_handling import classify_error
from ingestion.text_preprocessor import TextPreprocessor
from monitoring import metrics

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Non-success response from the embedding provider"""
    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"Embedding provider error {status}: {message}")


class EmbeddingFailure(Exception):
    """Raised when embedding generation fails after retries are exhausted"""
    def __init__(self, message: str, last_error: Optional[Exception] = None):
        self.message = message
        self.last_error = last_error
        super().__init__(message if last_error is None else f"{message}: {last_error}")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def validate_embedding(embedding: Any, dimensions: int) -> bool:
    """True when embedding is a list of `dimensions` finite numbers."""
    if not isinstance(embedding, (list, tuple)) or len(embedding) != dimensions:
        return False
    return all(
        isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
        for value in embedding
    )


class VectorEmbedder:
    """
    Google Gemini embedding client with batching, retry and query caching.

    Sub-batches are sent one after another with a fixed pause in between
    so bursts stay under provider rate limits.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = EMBEDDING_CONFIG['model'],
        dimensions: int = EMBEDDING_CONFIG['dimensions'],
        max_retries: int = EMBEDDING_CONFIG['max_retries'],
        retry_delay: float = EMBEDDING_CONFIG['retry_delay'],
        batch_size: int = EMBEDDING_CONFIG['batch_size'],
        batch_delay: float = EMBEDDING_CONFIG['batch_delay'],
        request_timeout: int = EMBEDDING_CONFIG['request_timeout_seconds'],
        preprocessor: Optional[TextPreprocessor] = None,
        cache: Optional[LRUCache] = None,
        enable_cache: bool = CACHE_CONFIG['enabled'],
    ):
        self.api_key = api_key or GOOGLE_API_KEY
        if not self.api_key:
            raise ValueError("Google API key is required. Set GOOGLE_API_KEY environment variable.")
        if not 1 <= batch_size <= 100:
            raise ValueError(f"batch_size must be between 1 and 100, got {batch_size}")

        self.model = model
        self.dimensions = dimensions
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.request_timeout = request_timeout
        self.preprocessor = preprocessor or TextPreprocessor(EMBEDDING_CONFIG['max_input_chars'])

        if cache is None and enable_cache:
            cache = LRUCache(capacity=CACHE_CONFIG['capacity'], ttl_seconds=CACHE_CONFIG['ttl_seconds'])
        self.cache = QueryEmbeddingCache(cache, model) if cache is not None else None

        self.session: Optional[aiohttp.ClientSession] = None
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"

        self._requests = 0
        self._texts_embedded = 0
        self._failures = 0

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        """Ensure HTTP session is created"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout, connect=10)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    'Content-Type': 'application/json',
                    'x-goog-api-key': self.api_key
                }
            )

    def _prepare(self, text: str, position: int = 0) -> str:
        processed = self.preprocessor.clean_for_embedding(text)
        if not processed:
            raise EmbeddingFailure(f"Empty or invalid text after preprocessing (item {position})")
        return processed

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text (typically a query). Results are cached.

        Raises:
            EmbeddingFailure: On empty input or once retries are exhausted
        """
        processed = self._prepare(text)

        if self.cache is not None:
            cached = await self.cache.get_embedding(processed)
            if cached is not None:
                logger.debug(f"Retrieved embedding from cache for text length {len(processed)}")
                await metrics.inc("embedding_cache_hits_total")
                return cached

        vectors = await self._embed_with_retry([processed])
        embedding = vectors[0]

        if self.cache is not None:
            await self.cache.set_embedding(processed, embedding)
        return embedding

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed many texts, preserving input order.

        Inputs above the batch ceiling are split into sub-batches that are
        sent sequentially with `batch_delay` seconds between them.
        """
        if not texts:
            return []

        processed = [self._prepare(text, i) for i, text in enumerate(texts)]
        total_batches = (len(processed) + self.batch_size - 1) // self.batch_size
        logger.info(f"Generating embeddings for {len(processed)} texts in {total_batches} batch(es)")

        results: List[List[float]] = []
        for batch_number, i in enumerate(range(0, len(processed), self.batch_size), start=1):
            batch = processed[i:i + self.batch_size]
            batch_start = time.time()
            results.extend(await self._embed_with_retry(batch))
            logger.debug(
                f"Batch {batch_number}/{total_batches} completed in {time.time() - batch_start:.2f}s"
            )

            if batch_number < total_batches:
                await asyncio.sleep(self.batch_delay)

        return results

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """Call the provider with exponential backoff on retryable failures."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            start = time.time()
            try:
                self._requests += 1
                vectors = await self._call_provider(texts)
            except EmbeddingFailure:
                raise
            except Exception as e:
                last_error = e
                error_type, _, retryable = classify_error(e)
                await metrics.inc("embedding_errors_total", labels={"error_type": error_type.value})
                if not retryable:
                    logger.error(f"Non-retryable embedding error: {e}")
                    break
                if attempt < self.max_retries:
                    wait_time = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Embedding error: {e}, retrying in {wait_time}s (retry {attempt + 1})")
                    await asyncio.sleep(wait_time)
                continue

            if len(vectors) != len(texts):
                raise EmbeddingFailure(
                    f"Provider returned {len(vectors)} embeddings for {len(texts)} inputs"
                )

            await metrics.observe("embedding_request_ms", (time.time() - start) * 1000, labels={"batch": len(texts) > 1})
            self._texts_embedded += len(texts)
            return vectors

        self._failures += 1
        raise EmbeddingFailure(
            f"Embedding failed after {self.max_retries + 1} attempt(s)", last_error=last_error
        )

    async def _call_provider(self, texts: List[str]) -> List[List[float]]:
        """One HTTP round-trip: embedContent for a single text, batchEmbedContents otherwise."""
        await self._ensure_session()

        if len(texts) == 1:
            url = f"{self.base_url}/{self.model}:embedContent"
            payload = {"model": self.model, "content": {"parts": [{"text": texts[0]}]}}
        else:
            url = f"{self.base_url}/{self.model}:batchEmbedContents"
            payload = {
                "requests": [
                    {"model": self.model, "content": {"parts": [{"text": text}]}}
                    for text in texts
                ]
            }

        async with self.session.post(url, json=payload) as response:
            if response.status != 200:
                raise ProviderError(response.status, await self._error_message(response))
            data = await response.json()

        if len(texts) == 1:
            values = (data.get('embedding') or {}).get('values')
            if not values:
                raise ProviderError(None, "No embedding data in API response")
            return [values]

        embeddings = data.get('embeddings')
        if not isinstance(embeddings, list) or any(not e.get('values') for e in embeddings):
            raise ProviderError(None, "No embedding data in batch API response")
        return [e['values'] for e in embeddings]

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            data = await response.json(content_type=None)
            return data.get('error', {}).get('message', response.reason or 'Unknown error')
        except (ValueError, aiohttp.ContentTypeError):
            return await response.text()

    async def get_stats(self) -> Dict[str, Any]:
        """Usage counters plus cache statistics"""
        stats: Dict[str, Any] = {
            "model": self.model,
            "dimensions": self.dimensions,
            "requests": self._requests,
            "texts_embedded": self._texts_embedded,
            "failures": self._failures,
            "cache_enabled": self.cache is not None,
        }
        if self.cache is not None:
            cache_stats = await self.cache.stats()
            stats.update({
                "cache_size": cache_stats.size,
                "cache_hits": cache_stats.hits,
                "cache_misses": cache_stats.misses,
            })
        return stats

    async def close(self):
        """Clean up resources"""
        if self.session and not self.session.closed:
            await self.session.close()
        logger.info("VectorEmbedder resources cleaned up")
