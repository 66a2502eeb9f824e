from unittest.mock import MagicMock, Mock, patch

import pytest

from rag.generation_client import GeminiChatClient, GenerationFailure


def gemini_response(text, tokens=17):
    part = Mock()
    part.text = text
    candidate = Mock()
    candidate.content.parts = [part]
    response = Mock()
    response.candidates = [candidate]
    response.usage_metadata.total_token_count = tokens
    return response


@pytest.fixture
def genai():
    with patch('rag.generation_client.genai') as mocked:
        yield mocked


def make_client(**kwargs):
    kwargs.setdefault('api_key', 'test-key')
    kwargs.setdefault('retry_delay', 0)
    return GeminiChatClient(**kwargs)


def test_requires_api_key(genai, monkeypatch):
    monkeypatch.setattr('rag.generation_client.GOOGLE_API_KEY', None)
    with pytest.raises(ValueError):
        GeminiChatClient()


@pytest.mark.asyncio
async def test_complete_passes_system_instruction(genai):
    model = MagicMock()
    model.generate_content.return_value = gemini_response("  The pad costs 49.99 EUR.  ")
    genai.GenerativeModel.return_value = model
    client = make_client()

    text, tokens = await client.complete("Answer only from context", "How much is the XL200?")

    assert text == "The pad costs 49.99 EUR."
    assert tokens == 17
    assert genai.GenerativeModel.call_args.kwargs['system_instruction'] == "Answer only from context"
    assert model.generate_content.call_args.args[0] == "How much is the XL200?"


@pytest.mark.asyncio
async def test_transient_failure_is_retried(genai):
    model = MagicMock()
    model.generate_content.side_effect = [RuntimeError("503 service unavailable"), gemini_response("ok")]
    genai.GenerativeModel.return_value = model

    text, _ = await make_client(max_attempts=3).complete("system", "user")

    assert text == "ok"
    assert model.generate_content.call_count == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise(genai):
    model = MagicMock()
    model.generate_content.side_effect = RuntimeError("quota exceeded")
    genai.GenerativeModel.return_value = model

    with pytest.raises(GenerationFailure) as exc_info:
        await make_client(max_attempts=2).complete("system", "user")

    assert model.generate_content.call_count == 2
    assert isinstance(exc_info.value.last_error, RuntimeError)


@pytest.mark.asyncio
async def test_empty_response_raises(genai):
    response = Mock()
    response.candidates = []
    model = MagicMock()
    model.generate_content.return_value = response
    genai.GenerativeModel.return_value = model

    with pytest.raises(GenerationFailure):
        await make_client().complete("system", "user")
    assert model.generate_content.call_count == 1
