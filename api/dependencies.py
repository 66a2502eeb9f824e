"""
Shared FastAPI dependencies: per-request database session and RAG service
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rag.rag_service import RAGService, build_rag_service

logger = logging.getLogger(__name__)


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session committed after the request, rolled back on error"""
    db_manager = getattr(request.app.state, 'db_manager', None)
    if db_manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database is not initialized"
        )
    async with db_manager.get_async_session() as session:
        yield session


def get_rag_service(request: Request, session: AsyncSession = Depends(get_db_session)) -> RAGService:
    state = request.app.state
    try:
        return build_rag_service(session, state.embedder, state.chat_client, state.search_backend)
    except (AttributeError, ValueError) as e:
        logger.error(f"Failed to initialize RAG service: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RAG service initialization failed"
        )
