"""FastAPI dependency injection.

Provides common dependencies for API routes. Components come from the
`KnowledgeEngine` stored on `app.state` by the application lifespan.
"""

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_engine.core.config import Settings, get_settings
from knowledge_engine.db.repository import KnowledgeEntryRepository
from knowledge_engine.rag.service import KnowledgeEngine, RAGService


def get_engine(request: Request) -> KnowledgeEngine:
    """Get the running knowledge engine."""
    engine: KnowledgeEngine | None = getattr(request.app.state, "engine", None)
    if engine is None or not engine.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Knowledge engine is not initialized",
        )
    return engine


Engine = Annotated[KnowledgeEngine, Depends(get_engine)]


def get_rag_service(engine: Engine) -> RAGService:
    return engine.rag


async def get_db(engine: Engine) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success."""
    async with engine.database.session() as db:
        yield db


def get_owner_id(x_user_id: Annotated[str | None, Header()] = None) -> str | None:
    """Caller identity from the X-User-Id header (trusted, not authenticated)."""
    return x_user_id.strip() or None if x_user_id else None


# Type aliases for cleaner signatures
DB = Annotated[AsyncSession, Depends(get_db)]
RAG = Annotated[RAGService, Depends(get_rag_service)]
OwnerId = Annotated[str | None, Depends(get_owner_id)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_knowledge_repo(db: DB) -> KnowledgeEntryRepository:
    """Get knowledge entry repository."""
    return KnowledgeEntryRepository(db)


KnowledgeRepo = Annotated[KnowledgeEntryRepository, Depends(get_knowledge_repo)]
