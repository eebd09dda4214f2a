"""Tests for the HTTP API."""

import httpx
import pytest

from knowledge_engine.api.main import create_app

USER = {"X-User-Id": "u1"}


@pytest.fixture
async def client(settings, engine):
    app = create_app(settings, engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def idle_client(settings, make_engine):
    """Client for an app whose engine never started."""
    app = create_app(settings, make_engine())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealth:
    """Test health endpoints."""

    async def test_live(self, client):
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_ready(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "healthy", "qdrant": "healthy"}

    async def test_startup(self, client):
        response = await client.get("/health/startup")
        assert response.status_code == 200

    async def test_not_started(self, idle_client):
        assert (await idle_client.get("/health/live")).status_code == 200
        assert (await idle_client.get("/health/ready")).status_code == 503
        assert (await idle_client.get("/health/startup")).status_code == 503
        response = await idle_client.post("/api/v1/rag/query", json={"query": "revenue"})
        assert response.status_code == 503

    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["health"] == "/health/ready"


class TestKnowledgeEndpoints:
    """Test knowledge CRUD over HTTP."""

    async def test_create_get_update_delete(self, client):
        created = await client.post(
            "/api/v1/rag/knowledge",
            json={"type": "synonym", "data": {"noun": "revenue", "synonyms": ["sales"]}},
            headers=USER,
        )
        assert created.status_code == 201
        entry_id = created.json()["id"]
        assert created.json()["owner_id"] == "u1"

        fetched = await client.get(f"/api/v1/rag/knowledge/{entry_id}", headers=USER)
        assert fetched.status_code == 200
        assert fetched.json()["children"] == []

        updated = await client.put(
            f"/api/v1/rag/knowledge/{entry_id}",
            json={"type": "synonym", "data": {"synonyms": ["sales", "turnover"]}},
            headers=USER,
        )
        assert updated.status_code == 200
        assert updated.json()["content"] == "Noun: revenue\nSynonyms: sales, turnover"

        deleted = await client.delete(f"/api/v1/rag/knowledge/{entry_id}", headers=USER)
        assert deleted.status_code == 204
        again = await client.delete(f"/api/v1/rag/knowledge/{entry_id}", headers=USER)
        assert again.status_code == 404

    async def test_owner_scoping(self, client):
        created = await client.post(
            "/api/v1/rag/knowledge", json={"type": "synonym", "data": {"noun": "order"}}, headers=USER
        )
        entry_id = created.json()["id"]

        response = await client.get(
            f"/api/v1/rag/knowledge/{entry_id}", headers={"X-User-Id": "u2"}
        )
        assert response.status_code == 404

    async def test_invalid_input(self, client):
        unknown = await client.post(
            "/api/v1/rag/knowledge", json={"type": "glossary", "data": {}}, headers=USER
        )
        missing = await client.post(
            "/api/v1/rag/knowledge", json={"type": "synonym", "data": {}}, headers=USER
        )
        not_updatable = await client.put(
            "/api/v1/rag/knowledge/anything",
            json={"type": "semantic_model", "data": {}},
            headers=USER,
        )

        assert unknown.status_code == 400
        assert missing.status_code == 400
        assert not_updatable.status_code == 400

    async def test_update_missing(self, client):
        response = await client.put(
            "/api/v1/rag/knowledge/missing",
            json={"type": "synonym", "data": {"noun": "x"}},
            headers=USER,
        )
        assert response.status_code == 404

    async def test_batch_and_list(self, client):
        response = await client.post(
            "/api/v1/rag/knowledge/batch",
            json={
                "entries": [
                    {"type": "synonym", "data": {"noun": "revenue", "entity_id": "ds-1"}},
                    {"type": "qa_pair", "data": {"question": "refund window?", "answer": "30 days"}},
                    {"type": "file", "data": {}},
                ]
            },
            headers=USER,
        )
        assert response.status_code == 201
        assert response.json()["succeeded"] == 2
        assert response.json()["failed"] == 1

        listed = await client.get("/api/v1/rag/knowledge", params={"type": "qa_pair"}, headers=USER)
        assert [e["type"] for e in listed.json()] == ["qa_pair"]

        scoped = await client.get("/api/v1/rag/knowledge", params={"entity_id": "ds-1"}, headers=USER)
        assert [e["type"] for e in scoped.json()] == ["synonym"]

    async def test_empty_batch_rejected(self, client):
        response = await client.post("/api/v1/rag/knowledge/batch", json={"entries": []}, headers=USER)
        assert response.status_code == 422


class TestQueryEndpoint:
    async def test_query(self, client):
        await client.post(
            "/api/v1/rag/knowledge",
            json={"type": "qa_pair", "data": {"question": "How is revenue counted?", "answer": "net"}},
            headers=USER,
        )

        response = await client.post(
            "/api/v1/rag/query", json={"query": "revenue", "top_k": 3}, headers=USER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["results"][0]["question"] == "How is revenue counted?"
        assert body["results"][0]["rank"] == 1

    async def test_unknown_type_rejected(self, client):
        response = await client.post(
            "/api/v1/rag/query", json={"query": "revenue", "types": ["glossary"]}
        )
        assert response.status_code == 422

    async def test_empty_query_rejected(self, client):
        response = await client.post("/api/v1/rag/query", json={"query": ""})
        assert response.status_code == 422


class TestDiagnostics:
    async def test_collection_stats(self, client):
        await client.post(
            "/api/v1/rag/knowledge", json={"type": "synonym", "data": {"noun": "revenue"}}, headers=USER
        )

        response = await client.get("/api/v1/rag/collections")

        body = response.json()
        assert response.status_code == 200
        assert body["entries"] == {"synonym": 1}
        assert body["collections"]["knowledge_synonym"]["points_count"] == 1
        assert body["embedding_dimensions"] == 8
