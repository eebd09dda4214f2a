"""Embedding service with an ordered fallback chain.

Tiers, tried in order:
1. Local sentence-transformers model (ONNX, quantized), fully offline
2. External embedding HTTP service
3. Hosted OpenAI-compatible API (LangChain wrapper, then the raw SDK)

A missing embedding never blocks persistence, so total failure yields None.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx
import numpy as np
from openai import AsyncOpenAI

from knowledge_engine.core.config import Settings
from knowledge_engine.core.errors import VectorDimensionError
from knowledge_engine.core.lifecycle import InitOnce
from knowledge_engine.rag.offline import LocalModelResolver, ModelFilesMissingError

logger = logging.getLogger(__name__)


class EmbeddingStrategy(ABC):
    """One tier of the fallback chain. Raises on failure."""

    name: str = "strategy"

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed a single non-empty text."""

    async def warmup(self) -> None:
        """Prepare expensive resources ahead of the first request."""

    async def close(self) -> None:
        """Release clients or models."""


class LocalModelEmbedding(EmbeddingStrategy):
    """Offline sentence-transformers model with explicit mean pooling.

    Model files come from the cache directory through a LocalModelResolver;
    the model is loaded with `local_files_only` and never downloads.
    """

    name = "local"

    def __init__(
        self,
        resolver: LocalModelResolver,
        model_name: str,
        model_file: str,
        dimension: int,
    ):
        self.resolver = resolver
        self.model_name = model_name
        self.model_file = model_file
        self.dimension = dimension
        self._model = InitOnce(self._load)

    async def _load(self):
        return await asyncio.to_thread(self._load_sync)

    def _load_sync(self):
        from sentence_transformers import SentenceTransformer

        config = self.resolver.read_json(self.model_name, "config.json")
        if config is None:
            raise ModelFilesMissingError(f"No config.json for local model '{self.model_name}'")
        hidden_size = config.get("hidden_size")
        if hidden_size and hidden_size != self.dimension:
            raise VectorDimensionError(hidden_size, self.dimension)

        model_dir = self.resolver.resolve(
            self.model_name, ["config.json", "tokenizer.json", self.model_file]
        )
        logger.info(f"[Embedder] Loading local model from {model_dir}")
        return SentenceTransformer(
            str(model_dir),
            backend="onnx",
            device="cpu",
            local_files_only=True,
            model_kwargs={"file_name": self.model_file},
        )

    async def warmup(self) -> None:
        await self._model.get()

    async def embed(self, text: str) -> list[float]:
        model = await self._model.get()
        return await asyncio.to_thread(self._encode, model, text)

    @staticmethod
    def _encode(model, text: str) -> list[float]:
        # Padding is already trimmed from token embeddings, so a plain mean
        # over tokens equals the attention-masked mean.
        token_embeddings = model.encode(text, output_value="token_embeddings")
        if hasattr(token_embeddings, "detach"):
            token_embeddings = token_embeddings.detach().cpu().float().numpy()
        tokens = np.asarray(token_embeddings, dtype=np.float32)

        pooled = tokens.mean(axis=0)
        norm = np.linalg.norm(pooled)
        if norm > 0:
            pooled = pooled / norm
        return pooled.tolist()

    async def close(self) -> None:
        self._model.reset()
        self.resolver.close()


class HTTPServiceEmbedding(EmbeddingStrategy):
    """External embedding service: POST {url}/embed/text."""

    name = "http"

    def __init__(self, url: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def embed(self, text: str) -> list[float]:
        response = await self.client.post(f"{self.url}/embed/text", json={"text": text})
        response.raise_for_status()
        embedding = response.json().get("embedding")
        if not isinstance(embedding, list):
            raise ValueError("Embedding service response has no 'embedding' list")
        return embedding

    async def close(self) -> None:
        await self.client.aclose()


class OpenAIEmbedding(EmbeddingStrategy):
    """Hosted OpenAI-compatible embeddings.

    Tries the LangChain wrapper first and the raw SDK second, so a missing or
    broken wrapper package does not disable the tier.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        dimension: int,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.base_url = base_url
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(120.0, connect=30.0),
        )
        self._wrapper = None

    @property
    def _dimensions_arg(self) -> int | None:
        # Only text-embedding-3 models accept a dimensions override
        return self.dimension if self.model.startswith("text-embedding-3") else None

    def _get_wrapper(self):
        if self._wrapper is None:
            from langchain_openai import OpenAIEmbeddings

            self._wrapper = OpenAIEmbeddings(
                model=self.model,
                api_key=self.api_key,
                base_url=self.base_url,
                dimensions=self._dimensions_arg,
            )
        return self._wrapper

    async def embed(self, text: str) -> list[float]:
        try:
            return await self._get_wrapper().aembed_query(text)
        except Exception as e:
            logger.warning(f"[Embedder] LangChain embeddings failed, using OpenAI SDK: {e}")

        kwargs = {"input": text, "model": self.model}
        if self._dimensions_arg:
            kwargs["dimensions"] = self._dimensions_arg
        response = await self.client.embeddings.create(**kwargs)
        return response.data[0].embedding

    async def close(self) -> None:
        await self.client.close()


class EmbeddingProvider:
    """Embedding service over an ordered list of strategies.

    Every returned vector has exactly `dimension` floats; a tier that returns
    anything else counts as failed.
    """

    def __init__(
        self,
        strategies: list[EmbeddingStrategy],
        dimension: int,
        batch_size: int = 10,
    ):
        self.strategies = strategies
        self.dimension = dimension
        self.batch_size = batch_size

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        resolver: LocalModelResolver | None = None,
    ) -> "EmbeddingProvider":
        """Build the chain from the enabled tiers."""
        strategies: list[EmbeddingStrategy] = []

        if settings.embedding_local_enabled:
            strategies.append(
                LocalModelEmbedding(
                    resolver=resolver or LocalModelResolver(settings.model_cache_dir),
                    model_name=settings.embedding_local_model,
                    model_file=settings.embedding_local_model_file,
                    dimension=settings.embedding_dimensions,
                )
            )
        if settings.embedding_http_enabled and settings.embedding_http_url:
            strategies.append(
                HTTPServiceEmbedding(settings.embedding_http_url, settings.embedding_http_timeout)
            )
        if settings.embedding_openai_enabled and settings.openai_api_key:
            strategies.append(
                OpenAIEmbedding(
                    api_key=settings.openai_api_key,
                    model=settings.openai_embedding_model,
                    dimension=settings.embedding_dimensions,
                    base_url=settings.openai_base_url,
                )
            )

        if not strategies:
            logger.warning("[Embedder] No embedding tiers enabled; entries will be stored without embeddings")

        return cls(strategies, settings.embedding_dimensions, settings.embedding_batch_size)

    async def init(self) -> None:
        """Warm up tiers that load models. Failures are logged, not raised."""
        for strategy in self.strategies:
            try:
                await strategy.warmup()
            except Exception as e:
                logger.warning(f"[Embedder] Warmup of '{strategy.name}' tier failed: {e}")

    async def shutdown(self) -> None:
        for strategy in self.strategies:
            try:
                await strategy.close()
            except Exception as e:
                logger.warning(f"[Embedder] Closing '{strategy.name}' tier failed: {e}")

    async def embed_text(self, text: str | None) -> list[float] | None:
        """Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of length `dimension`, or None if every tier failed
        """
        text = (text or "").strip()
        if not text:
            return None

        for strategy in self.strategies:
            try:
                vector = await strategy.embed(text)
            except Exception as e:
                logger.warning(f"[Embedder] '{strategy.name}' tier failed: {e}")
                continue

            if vector is None or len(vector) != self.dimension:
                logger.warning(
                    f"[Embedder] '{strategy.name}' tier returned "
                    f"{len(vector) if vector is not None else 'no'} dims, expected {self.dimension}"
                )
                continue

            logger.debug(f"[Embedder] Embedded {len(text)} chars with '{strategy.name}' tier")
            return [float(x) for x in vector]

        logger.error("[Embedder] All embedding tiers failed")
        return None

    async def embed_texts(self, texts: list[str]) -> list[list[float] | None]:
        """Embed many texts, `batch_size` at a time.

        Returns:
            List aligned with `texts`; failed items are None
        """
        results: list[list[float] | None] = []
        for batch_start in range(0, len(texts), self.batch_size):
            batch = texts[batch_start : batch_start + self.batch_size]
            results.extend(await asyncio.gather(*(self.embed_text(t) for t in batch)))
        return results

    async def embed_query(self, query: str) -> list[float] | None:
        """Embed a search query.

        Alias for embed_text, but can be extended for query-specific processing.
        """
        return await self.embed_text(query)
