"""
Main FastAPI application for the CRM Knowledge RAG service
"""

import logging
import os
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from api.knowledge_endpoints import router as knowledge_router
from api.rag_endpoints import router as rag_router
from database.connection import DatabaseManager, init_database
from database.vector_search import validate_backend_name
from ingestion.config import SEARCH_CONFIG
from ingestion.logging_config import setup_logging
from ingestion.vector_embedder import VectorEmbedder
from monitoring.metrics import get_metrics
from rag.generation_client import GeminiChatClient

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting CRM Knowledge RAG service...")
    search_backend = validate_backend_name(SEARCH_CONFIG['backend'])

    db_manager = DatabaseManager()
    if not await init_database(db_manager):
        await db_manager.close()
        raise RuntimeError("Database initialization failed")
    logger.info("Database initialized successfully")

    app.state.db_manager = db_manager
    app.state.embedder = VectorEmbedder()
    app.state.chat_client = GeminiChatClient()
    app.state.search_backend = search_backend
    logger.info(f"Vector search backend: {app.state.search_backend}")

    yield

    # Shutdown
    logger.info("Shutting down CRM Knowledge RAG service...")
    await app.state.embedder.close()
    await db_manager.close()


# Create FastAPI application
app = FastAPI(
    title="CRM Knowledge RAG Service",
    description="Tenant-scoped knowledge ingestion and grounded question answering over CRM data",
    version="1.0.0",
    lifespan=lifespan
)

# CORS origins are a comma-separated list; "*" when unset
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(knowledge_router)
app.include_router(rag_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "CRM Knowledge RAG Service API",
        "version": "1.0.0",
        "endpoints": {
            "knowledge": "/api/knowledge",
            "rag": "/api/rag",
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics"
        }
    }


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Service health, including the knowledge store once it is initialized"""
    db_manager = getattr(request.app.state, 'db_manager', None)
    database = await db_manager.health_check() if db_manager is not None else None
    healthy = database is not None and database['connected'] and database['pgvector']
    return {
        "status": "healthy" if healthy else "degraded",
        "service": "CRM Knowledge RAG Service",
        "version": "1.0.0",
        "database": database or "not_initialized",
        "search_backend": getattr(request.app.state, 'search_backend', None),
    }


# Metrics endpoint (lightweight JSON for dashboards)
@app.get("/metrics")
async def metrics():
    return await get_metrics()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv('HOST', '0.0.0.0'),
        port=int(os.getenv('PORT', '8000')),
        reload=os.getenv('ENVIRONMENT') == 'development',
        log_level="info"
    )
