"""Result reranking.

A cross-encoder scores each (query, candidate) pair jointly. Scores are
normalized into [0, 1]; uninformative output (every candidate scored the
same) keeps the retrieval scores instead. Enhanced mode blends the rerank
score with a type priority and a rank decay.

Any scorer failure degrades to sorting by retrieval score.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace

from knowledge_engine.core.config import Settings
from knowledge_engine.core.lifecycle import InitOnce
from knowledge_engine.rag.offline import LocalModelResolver
from knowledge_engine.rag.retriever import RetrievedItem

logger = logging.getLogger(__name__)

EQUAL_SCORE_EPSILON = 1e-4

TYPE_PRIORITY = {
    "semantic_model": 1.0,
    "qa_pair": 1.0,
    "business_knowledge": 0.8,
    "synonym": 0.6,
}
DEFAULT_TYPE_PRIORITY = 0.5

DEFAULT_WEIGHTS = {"similarity": 0.7, "type_priority": 0.2, "rank_decay": 0.1}


def normalize_score(raw: float) -> float:
    """Map a raw scorer output into [0, 1].

    Negative values are treated as logits (sigmoid); values above 1 are
    scaled down assuming a 0-10 range and clamped.
    """
    raw = float(raw)
    if raw < 0:
        return 1.0 / (1.0 + math.exp(-raw))
    if raw > 1:
        return min(1.0, raw / 10)
    return raw


def all_equal(scores: list[float], epsilon: float = EQUAL_SCORE_EPSILON) -> bool:
    return len(scores) > 1 and all(abs(s - scores[0]) < epsilon for s in scores)


class RelevanceScorer(ABC):
    """Scores documents against a query. Raises on failure."""

    @abstractmethod
    async def score(self, query: str, documents: list[str]) -> list[float]:
        """Raw relevance score per document, in input order."""

    async def warmup(self) -> None:
        pass

    async def close(self) -> None:
        pass


class CrossEncoderScorer(RelevanceScorer):
    """Offline sentence-transformers CrossEncoder on the ONNX backend."""

    def __init__(self, resolver: LocalModelResolver, model_name: str, model_file: str):
        self.resolver = resolver
        self.model_name = model_name
        self.model_file = model_file
        self._model = InitOnce(self._load)

    async def _load(self):
        return await asyncio.to_thread(self._load_sync)

    def _load_sync(self):
        from sentence_transformers import CrossEncoder

        model_dir = self.resolver.resolve(
            self.model_name, ["config.json", "tokenizer.json", self.model_file]
        )
        logger.info(f"[Reranker] Loading cross-encoder from {model_dir}")
        return CrossEncoder(
            str(model_dir),
            device="cpu",
            backend="onnx",
            local_files_only=True,
            model_kwargs={"file_name": self.model_file},
        )

    async def warmup(self) -> None:
        await self._model.get()

    async def score(self, query: str, documents: list[str]) -> list[float]:
        model = await self._model.get()
        pairs = [(query, doc) for doc in documents]
        scores = await asyncio.to_thread(model.predict, pairs, show_progress_bar=False)
        return [float(s) for s in scores]

    async def close(self) -> None:
        self._model.reset()
        self.resolver.close()


class Reranker:
    """Reorders retrieval results for a query."""

    def __init__(
        self,
        scorer: RelevanceScorer | None = None,
        weights: dict[str, float] | None = None,
    ):
        self.scorer = scorer
        self.weights = {**DEFAULT_WEIGHTS, **(weights or {})}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        resolver: LocalModelResolver | None = None,
    ) -> "Reranker":
        scorer = None
        if settings.reranker_enabled:
            scorer = CrossEncoderScorer(
                resolver=resolver or LocalModelResolver(settings.model_cache_dir),
                model_name=settings.reranker_model,
                model_file=settings.reranker_model_file,
            )
        return cls(scorer, settings.reranker_weights)

    async def init(self) -> None:
        if self.scorer is None:
            return
        try:
            await self.scorer.warmup()
        except Exception as e:
            logger.warning(f"[Reranker] Scorer unavailable, results will be sorted by score: {e}")

    async def shutdown(self) -> None:
        if self.scorer is not None:
            await self.scorer.close()

    @staticmethod
    def sort_by_score(results: list[RetrievedItem], top_k: int) -> list[RetrievedItem]:
        ranked = sorted(results, key=lambda r: r.score, reverse=True)
        return [replace(r, original_score=r.score, reranked=False) for r in ranked[:top_k]]

    async def rerank(
        self,
        query: str,
        results: list[RetrievedItem],
        top_k: int = 10,
    ) -> list[RetrievedItem]:
        """Rerank results with the cross-encoder.

        Args:
            query: Original query text
            results: Retrieval results
            top_k: Maximum results to return

        Returns:
            Results ordered by rerank score. If the scorer is missing or fails,
            results sorted by retrieval score. If every rerank score is equal,
            the input order and retrieval scores are kept.
        """
        if not results:
            return []
        if self.scorer is None:
            return self.sort_by_score(results, top_k)

        try:
            raw = await self.scorer.score(query, [r.content for r in results])
            if len(raw) != len(results):
                raise ValueError(f"Scorer returned {len(raw)} scores for {len(results)} results")
            scores = [normalize_score(s) for s in raw]
        except Exception as e:
            logger.warning(f"[Reranker] Scoring failed, sorting by retrieval score: {e}")
            return self.sort_by_score(results, top_k)

        if all_equal(scores):
            logger.warning(
                f"[Reranker] All rerank scores equal ({scores[0]:.4f}), keeping retrieval scores"
            )
            return [
                replace(r, original_score=r.score, rerank_score=s, reranked=False)
                for r, s in zip(results[:top_k], scores)
            ]

        ranked = sorted(zip(results, scores), key=lambda pair: pair[1], reverse=True)
        reranked = [
            replace(r, score=s, original_score=r.score, rerank_score=s, reranked=True)
            for r, s in ranked[:top_k]
        ]
        logger.info(
            f"[Reranker] Reranked {len(results)} results, scores "
            f"{min(scores):.3f}-{max(scores):.3f}, returning {len(reranked)}"
        )
        return reranked

    async def enhanced_rerank(
        self,
        query: str,
        results: list[RetrievedItem],
        top_k: int = 10,
        weights: dict[str, float] | None = None,
    ) -> list[RetrievedItem]:
        """Blend rerank score, type priority and rank decay.

        score = similarity * w_sim + type_priority * w_type + (1 - i/n) * w_rank
        over a base rerank of `top_k * 2`. Falls back to a plain rerank on error.
        """
        if not results:
            return []
        w = {**self.weights, **(weights or {})}

        try:
            base = await self.rerank(query, results, top_k * 2)
            n = len(base)
            blended = [
                replace(
                    item,
                    score=item.score * w["similarity"]
                    + TYPE_PRIORITY.get(item.type, DEFAULT_TYPE_PRIORITY) * w["type_priority"]
                    + (1.0 - index / n) * w["rank_decay"],
                )
                for index, item in enumerate(base)
            ]
        except Exception as e:
            logger.warning(f"[Reranker] Enhanced rerank failed, using plain rerank: {e}")
            return await self.rerank(query, results, top_k)

        blended.sort(key=lambda r: r.score, reverse=True)
        return blended[:top_k]
