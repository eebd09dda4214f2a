"""Tests for hybrid retrieval."""

import pytest

from knowledge_engine.db.models import KnowledgeType
from knowledge_engine.rag.chunking import Chunk
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.retriever import Retriever, budget, cosine_similarities
from tests.fakes import DIM, FailingEmbedding, keyword_vector


async def add_file(vector_store, file_id, *texts, entity_id=None):
    chunks = [
        Chunk(index=i, text=t, start_char=0, end_char=len(t), metadata={"chunk_index": i})
        for i, t in enumerate(texts)
    ]
    await vector_store.store_file_vectors(
        file_id,
        chunks,
        [keyword_vector(t) for t in texts],
        entity_id=entity_id,
        filename=f"{file_id}.pdf",
    )


class TestHelpers:
    def test_budget_rounds_up(self):
        assert budget(10, 0.7) == 7
        assert budget(10, 0.3) == 3
        assert budget(1, 0.7) == 1
        assert budget(1, 0.3) == 1
        assert budget(5, 0.5) == 3

    def test_cosine_similarities(self):
        scores = cosine_similarities([1.0, 0.0], [[2.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
        assert scores.tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestRetrieveKnowledge:
    """Test the knowledge-base branch."""

    async def test_joins_durable_records(self, knowledge, retriever):
        entry = await knowledge.add_business_knowledge(
            "u1", {"title": "Revenue rules", "content": "revenue excludes tax"}
        )
        await knowledge.add_business_knowledge("u1", {"title": "Shipping", "content": "shipping is free"})

        results = await retriever.retrieve_knowledge("revenue")

        assert [r.id for r in results] == [entry["id"]]
        assert results[0].title == "Revenue rules"
        assert results[0].type == "business_knowledge"

    async def test_vectors_without_records_are_dropped(self, knowledge, retriever, vector_store):
        await vector_store.store_vector(
            "u1", KnowledgeType.SYNONYM, "ghost", "revenue", keyword_vector("revenue")
        )

        assert await retriever.retrieve_knowledge("revenue") == []

    async def test_entity_isolation(self, knowledge, retriever):
        await knowledge.add_synonym("u1", {"noun": "revenue", "entity_id": "ds-1"})
        other = await knowledge.add_synonym("u1", {"noun": "revenue", "entity_id": "ds-2"})

        results = await retriever.retrieve_knowledge("revenue", entity_id='"ds-2"')

        assert [r.id for r in results] == [other["id"]]

    async def test_type_filter(self, knowledge, retriever):
        await knowledge.add_synonym("u1", {"noun": "revenue"})
        qa = await knowledge.add_qa_pair("u1", {"question": "revenue?", "answer": "yes"})

        results = await retriever.retrieve_knowledge("revenue", types=["qa_pair"])

        assert [r.id for r in results] == [qa["id"]]

    async def test_local_fallback_when_search_fails(self, knowledge, retriever, vector_store):
        entry = await knowledge.add_synonym("u1", {"noun": "revenue"})
        await knowledge.add_synonym("u1", {"noun": "warehouse"})
        for knowledge_type in ("semantic_model", "qa_pair", "synonym", "business_knowledge"):
            await vector_store.client.delete_collection(vector_store.collection_name(knowledge_type))

        results = await retriever.retrieve_knowledge("revenue")

        assert [r.id for r in results] == [entry["id"]]
        assert results[0].score == pytest.approx(1.0)

    async def test_search_failure_raises_without_fallback(self, database, vector_store, embedder):
        retriever = Retriever(database, vector_store, embedder, local_fallback=False)
        await vector_store.client.delete_collection("knowledge_synonym")

        with pytest.raises(Exception):
            await retriever.retrieve_knowledge("revenue", types=["synonym"])

    async def test_only_file_type_searches_nothing(self, knowledge, retriever):
        await knowledge.add_synonym("u1", {"noun": "revenue"})
        assert await retriever.retrieve_knowledge("revenue", types=["file"]) == []


class TestRetrieveFiles:
    """Test the two-tier document search."""

    async def test_cross_file_without_ids(self, retriever, vector_store):
        await add_file(vector_store, "f1", "revenue by quarter")
        await add_file(vector_store, "f2", "revenue by region")

        results = await retriever.retrieve_files("revenue", top_k=5)

        assert {r.metadata["file_id"] for r in results} == {"f1", "f2"}
        assert all(r.type == "file" for r in results)
        assert results[0].title.endswith(".pdf")

    async def test_scoped_search_sufficient(self, retriever, vector_store):
        await add_file(vector_store, "f1", "revenue a", "revenue b")
        await add_file(vector_store, "f2", "revenue c")

        results = await retriever.retrieve_files("revenue", file_ids=["f1"], top_k=2)

        assert {r.metadata["file_id"] for r in results} == {"f1"}

    async def test_scoped_search_stays_within_budget(self, retriever, vector_store):
        await add_file(vector_store, "a", "revenue a1", "revenue a2")
        await add_file(vector_store, "b", "revenue b1", "revenue b2")

        results = await retriever.retrieve_files("revenue", file_ids=["a", "b"], top_k=3)

        assert len(results) == 3
        assert {r.metadata["file_id"] for r in results} == {"a", "b"}

    async def test_scoped_search_falls_back_to_other_files(self, retriever, vector_store):
        await add_file(vector_store, "f1", "shipping schedule")
        await add_file(vector_store, "f2", "revenue c", "revenue d")

        results = await retriever.retrieve_files("revenue", file_ids=["f1"], top_k=4)

        assert {r.metadata["file_id"] for r in results} == {"f2"}

    async def test_fallback_does_not_repeat_scoped_files(self, retriever, vector_store):
        await add_file(vector_store, "f1", "revenue a", "shipping b")
        await add_file(vector_store, "f2", "revenue c", "revenue d")

        results = await retriever.retrieve_files("revenue", file_ids=["f1"], top_k=4)

        file_ids = [r.metadata["file_id"] for r in results]
        assert file_ids.count("f1") == 1
        assert file_ids.count("f2") == 2

    async def test_entity_scoped(self, retriever, vector_store):
        await add_file(vector_store, "f1", "revenue a", entity_id="ds-1")
        await add_file(vector_store, "f2", "revenue b", entity_id="ds-2")

        results = await retriever.retrieve_files("revenue", entity_id="ds-2", top_k=5)

        assert [r.metadata["file_id"] for r in results] == ["f2"]


class TestHybridRetrieve:
    """Test blending and failure isolation."""

    @pytest.fixture
    async def corpus(self, knowledge, vector_store):
        for i in range(9):
            await knowledge.add_business_knowledge(
                "u1", {"title": f"Note {i}", "content": f"revenue note {i}"}
            )
        await add_file(vector_store, "f1", *(f"revenue chunk {i}" for i in range(6)))

    async def test_seventy_thirty_split(self, corpus, retriever):
        results = await retriever.hybrid_retrieve("revenue", top_k=10)

        types = [r.type for r in results]
        assert len(results) == 10
        assert types.count("business_knowledge") == 7
        assert types.count("file") == 3

    async def test_split_holds_with_several_scoped_files(self, corpus, vector_store, retriever):
        await add_file(vector_store, "f2", "revenue extra 1", "revenue extra 2")

        results = await retriever.hybrid_retrieve("revenue", file_ids=["f1", "f2"], top_k=10)

        types = [r.type for r in results]
        assert types.count("business_knowledge") == 7
        assert types.count("file") == 3

    async def test_sorted_by_score(self, corpus, knowledge, retriever):
        await knowledge.add_synonym("u1", {"noun": "revenue customer"})

        results = await retriever.hybrid_retrieve("revenue", top_k=10)

        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    async def test_empty_query(self, corpus, retriever):
        assert await retriever.hybrid_retrieve("   ") == []

    async def test_non_positive_top_k_returns_nothing(self, corpus, retriever):
        assert await retriever.hybrid_retrieve("revenue", top_k=0) == []
        assert await retriever.hybrid_retrieve("revenue", top_k=-3) == []

    async def test_embedding_failure_returns_nothing(self, corpus, database, vector_store):
        retriever = Retriever(
            database, vector_store, EmbeddingProvider([FailingEmbedding()], dimension=DIM)
        )
        assert await retriever.hybrid_retrieve("revenue") == []

    async def test_file_branch_failure_isolated(self, corpus, retriever, vector_store):
        await vector_store.client.delete_collection(vector_store.file_collection)

        results = await retriever.hybrid_retrieve("revenue", top_k=10)

        assert len(results) == 7
        assert {r.type for r in results} == {"business_knowledge"}

    async def test_knowledge_branch_failure_isolated(self, corpus, database, vector_store, embedder):
        retriever = Retriever(database, vector_store, embedder, local_fallback=False)
        for knowledge_type in ("semantic_model", "qa_pair", "synonym", "business_knowledge"):
            await vector_store.client.delete_collection(vector_store.collection_name(knowledge_type))

        results = await retriever.hybrid_retrieve("revenue", top_k=10)

        assert len(results) == 3
        assert {r.type for r in results} == {"file"}

    async def test_unknown_type_returns_nothing(self, corpus, retriever, keyword_embedding):
        keyword_embedding.calls.clear()

        assert await retriever.hybrid_retrieve("revenue", types=["glossary"]) == []
        assert keyword_embedding.calls == []

    async def test_embeds_query_once(self, corpus, retriever, keyword_embedding):
        keyword_embedding.calls.clear()

        await retriever.hybrid_retrieve("revenue", file_ids=["f1"], top_k=10)

        assert keyword_embedding.calls == ["revenue"]
