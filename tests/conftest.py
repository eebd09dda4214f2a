"""Shared fixtures.

Everything runs offline: Qdrant in local in-memory mode, SQLite through
aiosqlite, and deterministic keyword embeddings instead of a model.
"""

import pytest
from qdrant_client import AsyncQdrantClient

from knowledge_engine.core.config import Settings
from knowledge_engine.db.database import Database
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.knowledge import KnowledgeBaseService
from knowledge_engine.rag.reranker import Reranker
from knowledge_engine.rag.retriever import Retriever
from knowledge_engine.rag.service import KnowledgeEngine
from knowledge_engine.rag.vector_store import VectorStore
from tests.fakes import DIM, KeywordEmbedding


@pytest.fixture
async def database(tmp_path):
    """File-backed SQLite database with tables created."""
    db = Database(url=f"sqlite+aiosqlite:///{tmp_path / 'knowledge.db'}", create_tables=True)
    await db.init()
    yield db
    await db.shutdown()


@pytest.fixture
async def vector_store():
    """In-memory Qdrant with all collections bootstrapped."""
    store = VectorStore(AsyncQdrantClient(location=":memory:"), embedding_dim=DIM)
    await store.init()
    yield store
    await store.shutdown()


@pytest.fixture
def keyword_embedding():
    return KeywordEmbedding()


@pytest.fixture
def embedder(keyword_embedding):
    return EmbeddingProvider([keyword_embedding], dimension=DIM)


@pytest.fixture
def knowledge(database, vector_store, embedder):
    return KnowledgeBaseService(database, vector_store, embedder)


@pytest.fixture
def retriever(database, vector_store, embedder):
    return Retriever(database, vector_store, embedder, min_score=0.5, file_min_score=0.5)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        embedding_dimensions=DIM,
        model_cache_dir=str(tmp_path / "models"),
        reranker_enabled=False,
        chunk_size=200,
        chunk_overlap=20,
    )


@pytest.fixture
def reranker():
    """Reranker without a scorer: results are sorted by retrieval score."""
    return Reranker()


@pytest.fixture
def make_engine(settings, tmp_path, keyword_embedding, reranker):
    """Build an uninitialized engine over local stores."""

    def factory() -> KnowledgeEngine:
        return KnowledgeEngine(
            settings,
            database=Database(
                url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", create_tables=True
            ),
            vector_store=VectorStore(AsyncQdrantClient(location=":memory:"), embedding_dim=DIM),
            embedder=EmbeddingProvider([keyword_embedding], dimension=DIM),
            reranker=reranker,
        )

    return factory


@pytest.fixture
async def engine(make_engine):
    """Initialized knowledge engine."""
    engine = make_engine()
    await engine.init()
    yield engine
    await engine.shutdown()
