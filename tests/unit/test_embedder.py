"""Tests for the embedding fallback chain."""

import asyncio
import json

import httpx
import pytest

from knowledge_engine.core.config import Settings
from knowledge_engine.rag.embedder import (
    EmbeddingProvider,
    EmbeddingStrategy,
    HTTPServiceEmbedding,
    LocalModelEmbedding,
    OpenAIEmbedding,
)
from knowledge_engine.rag.offline import LocalModelResolver
from tests.fakes import (
    DIM,
    MODEL_FILE,
    FailingEmbedding,
    KeywordEmbedding,
    LoadedModel,
    TokenModel,
    keyword_vector,
    write_model_cache,
)


class WrongDimensionEmbedding(EmbeddingStrategy):
    name = "wrong-dim"

    async def embed(self, text: str) -> list[float]:
        return [1.0] * (DIM + 1)


class SlowEmbedding(EmbeddingStrategy):
    """Tracks how many calls run at once."""

    name = "slow"

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def embed(self, text: str) -> list[float]:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return [float(len(text))] + [0.0] * (DIM - 1)


class TestEmbeddingProvider:
    """Test tier ordering and failure handling."""

    async def test_first_tier_wins(self):
        first, second = KeywordEmbedding(), KeywordEmbedding()
        provider = EmbeddingProvider([first, second], dimension=DIM)

        vector = await provider.embed_text("revenue report")

        assert vector == keyword_vector("revenue report")
        assert second.calls == []

    async def test_falls_through_failing_tier(self):
        failing = FailingEmbedding()
        provider = EmbeddingProvider([failing, KeywordEmbedding()], dimension=DIM)

        vector = await provider.embed_text("refund policy")

        assert failing.calls == 1
        assert vector == keyword_vector("refund policy")

    async def test_wrong_dimension_counts_as_failure(self):
        provider = EmbeddingProvider([WrongDimensionEmbedding(), KeywordEmbedding()], dimension=DIM)

        vector = await provider.embed_text("order")

        assert len(vector) == DIM

    async def test_total_failure_returns_none(self):
        provider = EmbeddingProvider([FailingEmbedding(), WrongDimensionEmbedding()], dimension=DIM)

        assert await provider.embed_text("anything") is None

    async def test_blank_text_skips_every_tier(self):
        tier = KeywordEmbedding()
        provider = EmbeddingProvider([tier], dimension=DIM)

        assert await provider.embed_text("   ") is None
        assert await provider.embed_text(None) is None
        assert tier.calls == []

    async def test_embed_texts_aligned_with_input(self):
        provider = EmbeddingProvider([KeywordEmbedding()], dimension=DIM)

        vectors = await provider.embed_texts(["revenue", "", "customer"])

        assert vectors[0] == keyword_vector("revenue")
        assert vectors[1] is None
        assert vectors[2] == keyword_vector("customer")

    async def test_embed_texts_bounded_concurrency(self):
        slow = SlowEmbedding()
        provider = EmbeddingProvider([slow], dimension=DIM, batch_size=10)

        vectors = await provider.embed_texts([f"text {i}" for i in range(25)])

        assert len(vectors) == 25
        assert slow.peak == 10

    async def test_embed_query_matches_embed_text(self):
        provider = EmbeddingProvider([KeywordEmbedding()], dimension=DIM)
        assert await provider.embed_query("revenue") == await provider.embed_text("revenue")

    async def test_init_survives_warmup_failure(self):
        class BrokenWarmup(KeywordEmbedding):
            async def warmup(self):
                raise RuntimeError("model files missing")

        provider = EmbeddingProvider([BrokenWarmup()], dimension=DIM)
        await provider.init()

        assert await provider.embed_text("revenue") is not None


class TestHTTPServiceEmbedding:
    async def test_posts_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embedding": [0.5] * DIM})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        strategy = HTTPServiceEmbedding("http://embedder:8001/", client=client)

        vector = await strategy.embed("hello")
        await strategy.close()

        assert vector == [0.5] * DIM
        assert seen["url"] == "http://embedder:8001/embed/text"
        assert seen["body"] == {"text": "hello"}

    async def test_server_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        strategy = HTTPServiceEmbedding("http://embedder:8001", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await strategy.embed("hello")
        await strategy.close()

    async def test_malformed_response_raises(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"vector": []}))
        )
        strategy = HTTPServiceEmbedding("http://embedder:8001", client=client)

        with pytest.raises(ValueError):
            await strategy.embed("hello")
        await strategy.close()


class TestFromSettings:
    def test_builds_enabled_tiers_in_order(self, tmp_path):
        settings = Settings(
            embedding_dimensions=DIM,
            embedding_local_enabled=True,
            model_cache_dir=str(tmp_path),
            embedding_http_enabled=True,
            embedding_http_url="http://embedder:8001",
            embedding_openai_enabled=True,
            openai_api_key="sk-test",
        )

        provider = EmbeddingProvider.from_settings(settings)

        assert [type(s) for s in provider.strategies] == [
            LocalModelEmbedding,
            HTTPServiceEmbedding,
            OpenAIEmbedding,
        ]
        assert provider.dimension == DIM

    def test_disabled_tiers_are_skipped(self):
        settings = Settings(
            embedding_local_enabled=False,
            embedding_http_enabled=True,
            embedding_http_url="",
            embedding_openai_enabled=True,
            openai_api_key="",
        )

        assert EmbeddingProvider.from_settings(settings).strategies == []


class TestLocalModelEmbedding:
    async def test_missing_model_fails_tier_not_provider(self, tmp_path):
        local = LocalModelEmbedding(
            LocalModelResolver(tmp_path), "org/absent", "onnx/model_quantized.onnx", DIM
        )
        provider = EmbeddingProvider([local, KeywordEmbedding()], dimension=DIM)

        assert await provider.embed_text("revenue") == keyword_vector("revenue")
        await provider.shutdown()

    @pytest.fixture
    def token_model(self, monkeypatch):
        monkeypatch.setattr("sentence_transformers.SentenceTransformer", TokenModel)
        monkeypatch.setattr(LoadedModel, "instances", [])
        return TokenModel

    async def test_loads_from_cache_offline(self, tmp_path, token_model):
        model_dir = write_model_cache(tmp_path, "org/embedder")
        local = LocalModelEmbedding(LocalModelResolver(tmp_path), "org/embedder", MODEL_FILE, DIM)

        vector = await local.embed("revenue")
        await local.close()

        (model,) = LoadedModel.instances
        assert model.path == str(model_dir.resolve())
        assert model.kwargs["local_files_only"] is True
        assert model.kwargs["backend"] == "onnx"
        assert model.kwargs["model_kwargs"] == {"file_name": MODEL_FILE}
        # Mean of two orthogonal unit tokens, L2-normalized
        assert vector[:2] == pytest.approx([2 ** -0.5, 2 ** -0.5])
        assert len(vector) == DIM

    async def test_local_tier_answers_first(self, tmp_path, token_model):
        write_model_cache(tmp_path, "org/embedder")
        keyword = KeywordEmbedding()
        local = LocalModelEmbedding(LocalModelResolver(tmp_path), "org/embedder", MODEL_FILE, DIM)
        provider = EmbeddingProvider([local, keyword], dimension=DIM)

        await provider.init()
        vector = await provider.embed_text("revenue")
        await provider.shutdown()

        assert vector[:2] == pytest.approx([2 ** -0.5, 2 ** -0.5])
        assert keyword.calls == []

    async def test_config_dimension_mismatch_falls_through(self, tmp_path, token_model):
        write_model_cache(tmp_path, "org/wide", hidden_size=DIM * 2)
        local = LocalModelEmbedding(LocalModelResolver(tmp_path), "org/wide", MODEL_FILE, DIM)
        provider = EmbeddingProvider([local, KeywordEmbedding()], dimension=DIM)

        assert await provider.embed_text("revenue") == keyword_vector("revenue")
        assert LoadedModel.instances == []
        await provider.shutdown()
