"""RAG query and knowledge management endpoints."""

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from knowledge_engine.api.deps import RAG, Engine, KnowledgeRepo, OwnerId
from knowledge_engine.core.errors import (
    EntryNotFoundError,
    KnowledgeEngineError,
    ValidationError,
)
from knowledge_engine.db.models import KnowledgeType

router = APIRouter(prefix="/rag")


# ============================================
# Request/Response Models
# ============================================


class QueryRequest(BaseModel):
    """RAG query request."""

    query: str = Field(..., min_length=1, max_length=10000)
    types: list[KnowledgeType] | None = Field(
        None, description="Knowledge types to search; all if omitted"
    )
    file_ids: list[str] | None = None
    entity_id: str | None = None
    top_k: int = Field(10, ge=1, le=100)
    use_reranking: bool = True
    enhanced_reranking: bool = False


class QueryResponse(BaseModel):
    """RAG query response."""

    query: str
    results: list[dict]
    total: int
    metadata: dict


class AddKnowledgeRequest(BaseModel):
    """Request to add one knowledge entry."""

    type: str = Field(..., description="semantic_model, qa_pair, synonym or business_knowledge")
    data: dict


class BatchKnowledgeRequest(BaseModel):
    """Request to add several knowledge entries."""

    entries: list[dict] = Field(..., min_length=1)


class UpdateKnowledgeRequest(BaseModel):
    """Partial update of a QA pair, synonym or business knowledge entry."""

    type: str
    data: dict


def to_http_error(e: KnowledgeEngineError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, EntryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# ============================================
# Query
# ============================================


@router.post("/query", response_model=QueryResponse)
async def query_knowledge(request: QueryRequest, rag: RAG, owner_id: OwnerId):
    """Search the knowledge base and documents.

    Retrieval failures degrade to fewer (or no) results; only invalid input
    is rejected.
    """
    try:
        return await rag.query(
            request.query,
            owner_id=owner_id,
            types=request.types,
            file_ids=request.file_ids,
            entity_id=request.entity_id,
            top_k=request.top_k,
            use_reranking=request.use_reranking,
            enhanced_reranking=request.enhanced_reranking,
        )
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


# ============================================
# Knowledge entries
# ============================================


@router.post("/knowledge", status_code=status.HTTP_201_CREATED)
async def add_knowledge(request: AddKnowledgeRequest, rag: RAG, owner_id: OwnerId):
    """Add a knowledge entry.

    A QA pair whose question duplicates an existing one returns the
    existing entry.
    """
    try:
        return await rag.add_knowledge(owner_id, request.type, request.data)
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


@router.post("/knowledge/batch", status_code=status.HTTP_201_CREATED)
async def add_knowledge_batch(request: BatchKnowledgeRequest, rag: RAG, owner_id: OwnerId):
    """Add several entries; failed items are skipped and counted."""
    try:
        return await rag.add_knowledge_batch(owner_id, request.entries)
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


@router.get("/knowledge")
async def list_knowledge(
    rag: RAG,
    owner_id: OwnerId,
    type: str | None = Query(None, description="Filter by knowledge type"),
    entity_id: str | None = Query(None, description="Filter by data source"),
    include_children: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
):
    """List top-level entries, newest first."""
    try:
        return await rag.get_knowledge_list(
            owner_id=owner_id,
            knowledge_type=type,
            entity_id=entity_id,
            include_children=include_children,
            limit=limit,
            skip=skip,
        )
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


@router.get("/knowledge/{entry_id}")
async def get_knowledge(
    entry_id: str,
    rag: RAG,
    owner_id: OwnerId,
    include_children: bool = Query(True),
):
    try:
        return await rag.get_knowledge(entry_id, owner_id, include_children)
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


@router.put("/knowledge/{entry_id}")
async def update_knowledge(
    entry_id: str, request: UpdateKnowledgeRequest, rag: RAG, owner_id: OwnerId
):
    """Update a QA pair, synonym or business knowledge entry."""
    try:
        return await rag.update_knowledge(entry_id, owner_id, request.type, request.data)
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None


@router.delete("/knowledge/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_knowledge(entry_id: str, rag: RAG, owner_id: OwnerId):
    """Delete an entry with its children and vectors."""
    try:
        deleted = await rag.delete_knowledge(entry_id, owner_id)
    except KnowledgeEngineError as e:
        raise to_http_error(e) from None
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found")


# ============================================
# Diagnostics
# ============================================


@router.get("/collections")
async def collection_stats(engine: Engine, repo: KnowledgeRepo):
    """Vector collection statistics alongside durable entry counts."""
    return {
        "collections": await engine.vector_store.get_collection_info(),
        "entries": await repo.count_by_type(),
        "embedding_dimensions": engine.vector_store.embedding_dim,
    }
