# =============================================================================
# Unit Tests — Embedding and Chat Model Clients
# =============================================================================
#
# The OpenAI SDK client is replaced with mocks; no API key needed.
# =============================================================================

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from filings_rag.errors import ConfigurationError, EmbeddingProviderError
from filings_rag.services.embedder import (
    OpenAIEmbedder,
    embed_batch,
    prepare_text_for_embedding,
)
from filings_rag.services.llm import OpenAICompatibleProvider


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _embedding_response(vectors):
    # Returned out of order to check index sorting
    data = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    return SimpleNamespace(data=list(reversed(data)), usage=SimpleNamespace(prompt_tokens=5))


def _mock_client(response=None, error=None):
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=response, side_effect=error)
    return client


class TestOpenAIEmbedder:

    def test_embed_returns_vector(self):
        client = _mock_client(_embedding_response([[0.1, 0.2, 0.3]]))
        embedder = OpenAIEmbedder(client=client, model="m", dimensions=3)

        assert _run(embedder.embed("hello")) == [0.1, 0.2, 0.3]
        kwargs = client.embeddings.create.await_args.kwargs
        assert kwargs == {"model": "m", "input": ["hello"], "dimensions": 3}

    def test_embed_many_preserves_input_order(self):
        client = _mock_client(_embedding_response([[1.0, 0, 0], [0, 1.0, 0]]))
        embedder = OpenAIEmbedder(client=client, dimensions=3)

        assert _run(embedder.embed_many(["a", "b"])) == [[1.0, 0, 0], [0, 1.0, 0]]

    def test_wrong_dimension_is_provider_error(self):
        client = _mock_client(_embedding_response([[0.1, 0.2]]))
        embedder = OpenAIEmbedder(client=client, dimensions=3)

        with pytest.raises(EmbeddingProviderError):
            _run(embedder.embed("hello"))

    def test_sdk_error_is_provider_error(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        client = _mock_client(error=openai.APIConnectionError(request=request))
        embedder = OpenAIEmbedder(client=client, dimensions=3)

        with pytest.raises(EmbeddingProviderError):
            _run(embedder.embed("hello"))

    def test_embed_batch_splits_requests(self):
        embedder = MagicMock()
        embedder.embed_many = AsyncMock(side_effect=lambda texts: [[float(len(t))] for t in texts])

        vectors = _run(embed_batch(["a", "bb", "ccc"], batch_size=2, embedder=embedder))

        assert vectors == [[1.0], [2.0], [3.0]]
        assert embedder.embed_many.await_count == 2


class TestPrepareText:

    def test_all_parts(self):
        assert prepare_text_for_embedding(
            "Body", title="Outlook", summary="Short", topics=["capex", "debt"],
        ) == "Title: Outlook\n\nSummary: Short\n\nTopics: capex, debt\n\nContent: Body"

    def test_content_only(self):
        assert prepare_text_for_embedding("Body") == "Content: Body"


class TestOpenAICompatibleProvider:

    def test_stream_yields_deltas_with_system_first(self):
        events = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"))]),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="lo"))]),
            SimpleNamespace(choices=[]),
        ]

        async def _events():
            for event in events:
                yield event

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_events())
        provider = OpenAICompatibleProvider(client=client, model="gpt-4o-mini")

        async def _collect():
            return [d async for d in provider.stream(
                [{"role": "user", "content": "hi"}], system="Be brief",
            )]

        assert _run(_collect()) == ["Hel", "lo"]
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["model"] == "gpt-4o-mini"

    def test_explicit_zero_temperature_kept(self):
        async def _events():
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="ok"))])

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_events())
        provider = OpenAICompatibleProvider(client=client)

        async def _collect():
            return [d async for d in provider.stream(
                [{"role": "user", "content": "hi"}], temperature=0.0,
            )]

        assert _run(_collect()) == ["ok"]
        assert client.chat.completions.create.await_args.kwargs["temperature"] == 0.0

    def test_missing_key_is_configuration_error(self):
        with patch("filings_rag.services.llm.settings.llm_api_key", None), \
             patch("filings_rag.services.llm.settings.openai_api_key", ""):
            with pytest.raises(ConfigurationError):
                OpenAICompatibleProvider()
