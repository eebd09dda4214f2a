"""Tests for cross-encoder reranking."""

import pytest

from knowledge_engine.core.config import Settings
from knowledge_engine.rag.offline import LocalModelResolver, ModelFilesMissingError
from knowledge_engine.rag.reranker import (
    CrossEncoderScorer,
    Reranker,
    all_equal,
    normalize_score,
)
from knowledge_engine.rag.retriever import RetrievedItem
from tests.fakes import (
    MODEL_FILE,
    BrokenScorer,
    FixedScorer,
    LoadedModel,
    PairModel,
    write_model_cache,
)


def item(id, score, type="business_knowledge", content=None):
    return RetrievedItem(
        id=id, type=type, title=id, content=content or f"content {id}", score=score
    )


class TestScoreHelpers:
    def test_normalize_passthrough(self):
        assert normalize_score(0.42) == 0.42

    def test_normalize_logit(self):
        assert normalize_score(-2.0) == pytest.approx(0.1192, abs=1e-4)

    def test_normalize_large(self):
        assert normalize_score(7.5) == 0.75
        assert normalize_score(25.0) == 1.0

    def test_all_equal(self):
        assert all_equal([0.5, 0.50001, 0.49999])
        assert not all_equal([0.5, 0.6])
        assert not all_equal([0.5])


class TestRerank:
    """Test plain reranking."""

    async def test_orders_by_rerank_score(self):
        reranker = Reranker(FixedScorer({"content a": 0.2, "content b": 0.9, "content c": 0.5}))
        results = [item("a", 0.9), item("b", 0.6), item("c", 0.7)]

        ranked = await reranker.rerank("q", results, top_k=2)

        assert [r.id for r in ranked] == ["b", "c"]
        assert ranked[0].score == 0.9
        assert ranked[0].original_score == 0.6
        assert ranked[0].rerank_score == 0.9
        assert ranked[0].reranked is True

    async def test_equal_scores_keep_retrieval_order(self):
        reranker = Reranker(FixedScorer(default=0.3))
        results = [item("a", 0.9), item("b", 0.8), item("c", 0.7)]

        ranked = await reranker.rerank("q", results, top_k=3)

        assert [r.id for r in ranked] == ["a", "b", "c"]
        assert [r.score for r in ranked] == [0.9, 0.8, 0.7]
        assert all(r.rerank_score == 0.3 and not r.reranked for r in ranked)

    async def test_scorer_failure_sorts_by_score(self):
        reranker = Reranker(BrokenScorer())
        results = [item("a", 0.5), item("b", 0.9)]

        ranked = await reranker.rerank("q", results)

        assert [r.id for r in ranked] == ["b", "a"]
        assert all(not r.reranked for r in ranked)
        assert ranked[0].original_score == 0.9

    async def test_no_scorer_sorts_by_score(self):
        ranked = await Reranker().rerank("q", [item("a", 0.1), item("b", 0.2)], top_k=1)
        assert [r.id for r in ranked] == ["b"]

    async def test_score_count_mismatch_sorts_by_score(self):
        class ShortScorer(FixedScorer):
            async def score(self, query, documents):
                return [0.5]

        ranked = await Reranker(ShortScorer()).rerank("q", [item("a", 0.1), item("b", 0.2)])
        assert [r.id for r in ranked] == ["b", "a"]

    async def test_empty(self):
        scorer = FixedScorer()
        assert await Reranker(scorer).rerank("q", []) == []
        assert scorer.calls == 0

    async def test_logit_scores_normalized(self):
        reranker = Reranker(FixedScorer({"content a": -3.0, "content b": 2.0}))

        ranked = await reranker.rerank("q", [item("a", 0.9), item("b", 0.1)])

        assert [r.id for r in ranked] == ["b", "a"]
        assert all(0.0 <= r.score <= 1.0 for r in ranked)


class TestEnhancedRerank:
    """Test blended scoring."""

    async def test_type_priority_breaks_close_scores(self):
        reranker = Reranker(FixedScorer({"content syn": 0.81, "content qa": 0.8}))
        results = [item("syn", 0.5, type="synonym"), item("qa", 0.5, type="qa_pair")]

        ranked = await reranker.enhanced_rerank("q", results, top_k=2)

        assert [r.id for r in ranked] == ["qa", "syn"]

    async def test_blend_formula(self):
        reranker = Reranker(FixedScorer({"content a": 0.9, "content b": 0.5}))
        results = [item("a", 0.1, type="qa_pair"), item("b", 0.1, type="file")]

        ranked = await reranker.enhanced_rerank("q", results, top_k=2)

        # a: 0.9*0.7 + 1.0*0.2 + 1.0*0.1; b: 0.5*0.7 + 0.5*0.2 + 0.5*0.1
        assert ranked[0].score == pytest.approx(0.93)
        assert ranked[1].score == pytest.approx(0.5)

    async def test_custom_weights(self):
        reranker = Reranker(FixedScorer({"content a": 0.9, "content b": 0.2}))
        results = [item("a", 0.1, type="synonym"), item("b", 0.1, type="qa_pair")]

        ranked = await reranker.enhanced_rerank(
            "q", results, weights={"similarity": 0.0, "type_priority": 1.0, "rank_decay": 0.0}
        )

        assert [r.id for r in ranked] == ["b", "a"]

    async def test_scorer_failure_still_returns_results(self):
        ranked = await Reranker(BrokenScorer()).enhanced_rerank(
            "q", [item("a", 0.4), item("b", 0.6)], top_k=2
        )
        assert {r.id for r in ranked} == {"a", "b"}


class TestFromSettings:
    def test_disabled_has_no_scorer(self):
        reranker = Reranker.from_settings(Settings(reranker_enabled=False))
        assert reranker.scorer is None

    def test_weights_from_settings(self, tmp_path):
        reranker = Reranker.from_settings(
            Settings(model_cache_dir=str(tmp_path), reranker_weight_similarity=0.5)
        )
        assert isinstance(reranker.scorer, CrossEncoderScorer)
        assert reranker.weights["similarity"] == 0.5

    async def test_missing_model_degrades(self, tmp_path):
        reranker = Reranker.from_settings(Settings(model_cache_dir=str(tmp_path)))
        await reranker.init()

        ranked = await reranker.rerank("q", [item("a", 0.2), item("b", 0.7)])

        assert [r.id for r in ranked] == ["b", "a"]
        await reranker.shutdown()


class TestCrossEncoderScorer:
    """Test loading a cross-encoder from the local model cache."""

    @pytest.fixture
    def pair_model(self, monkeypatch):
        monkeypatch.setattr("sentence_transformers.CrossEncoder", PairModel)
        monkeypatch.setattr(LoadedModel, "instances", [])
        return PairModel

    async def test_scores_from_cached_model(self, tmp_path, pair_model):
        model_dir = write_model_cache(tmp_path, "org/cross")
        scorer = CrossEncoderScorer(LocalModelResolver(tmp_path), "org/cross", MODEL_FILE)

        scores = await scorer.score("q", ["short", "a much longer passage"])
        await scorer.close()

        (model,) = LoadedModel.instances
        assert model.path == str(model_dir.resolve())
        assert model.kwargs["local_files_only"] is True
        assert model.kwargs["backend"] == "onnx"
        assert scores == pytest.approx([0.05, 0.21])

    async def test_reranker_uses_cached_model(self, tmp_path, pair_model):
        write_model_cache(tmp_path, "org/cross")
        reranker = Reranker(CrossEncoderScorer(LocalModelResolver(tmp_path), "org/cross", MODEL_FILE))
        await reranker.init()

        ranked = await reranker.rerank(
            "q", [item("a", 0.9, content="short"), item("b", 0.4, content="a much longer passage")]
        )
        await reranker.shutdown()

        assert [r.id for r in ranked] == ["b", "a"]
        assert all(r.reranked for r in ranked)
        assert ranked[0].rerank_score == pytest.approx(0.21)

    async def test_missing_model_file_is_not_loaded(self, tmp_path, pair_model):
        model_dir = write_model_cache(tmp_path, "org/cross")
        (model_dir / MODEL_FILE).unlink()
        scorer = CrossEncoderScorer(LocalModelResolver(tmp_path), "org/cross", MODEL_FILE)

        with pytest.raises(ModelFilesMissingError):
            await scorer.score("q", ["doc"])
        assert LoadedModel.instances == []
        await scorer.close()
