"""
FastAPI Application

Main FastAPI application for ChatBI with:
- Lifespan management for the system database, stores and pipeline
- CORS middleware for frontend integration
- Global exception handlers for pipeline errors
- Health, chat and database registry endpoints

Usage:
    uvicorn chatbi.api.main:app --reload --port 8000
"""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatbi import __version__
from chatbi.api.routes import chat, databases, health
from chatbi.audit.store import AuditLogStore
from chatbi.config import get_settings
from chatbi.connectors.base import ConnectionError as ConnectorConnectionError
from chatbi.conversations.store import ConversationStore
from chatbi.database.registry import ConnectionRegistry
from chatbi.llm.errors import ModelProviderError
from chatbi.llm.factory import LLMProviderFactory
from chatbi.models.agent import AgentError
from chatbi.models.api import ErrorResponse
from chatbi.pipeline.orchestrator import ChatPipeline
from chatbi.security.policy import AccessDeniedError, SQLPermissionError
from chatbi.security.store import PermissionStore

logger = logging.getLogger(__name__)

# Global state for pipeline and components
app_state: dict[str, Any] = {
    "pool": None,
    "registry": None,
    "permission_store": None,
    "conversation_store": None,
    "audit_store": None,
    "providers": [],
    "pipeline": None,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for startup and shutdown.

    Initializes:
    - System database pool (asyncpg) shared by all stores
    - Connection registry, permission, conversation and audit stores
    - Model providers per pipeline component
    - ChatPipeline
    """
    config = get_settings()
    logger.info("Starting ChatBI API server...")

    try:
        if config.system_database.url:
            dsn = str(config.system_database.url).replace(
                "postgresql+asyncpg://", "postgresql://", 1
            )
            pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
            app_state["pool"] = pool

            try:
                registry = ConnectionRegistry(pool=pool)
                await registry.initialize()
                app_state["registry"] = registry
            except ValueError as e:
                logger.warning(f"Database registry unavailable: {e}")

            permission_store = PermissionStore(pool=pool)
            await permission_store.initialize()
            app_state["permission_store"] = permission_store

            conversation_store = ConversationStore(pool=pool)
            await conversation_store.initialize()
            app_state["conversation_store"] = conversation_store

            audit_store = AuditLogStore(pool=pool)
            await audit_store.initialize()
            app_state["audit_store"] = audit_store
        else:
            logger.warning("SYSTEM_DATABASE_URL not set; registry and stores disabled.")

        logger.info("Initializing pipeline orchestrator...")
        if app_state["registry"] is not None:
            sql_provider = LLMProviderFactory.create_component_provider("sql", config.llm)
            translation_provider = LLMProviderFactory.create_component_provider(
                "translation", config.llm
            )
            analysis_provider = LLMProviderFactory.create_component_provider(
                "analysis", config.llm
            )
            app_state["providers"] = [sql_provider, translation_provider, analysis_provider]
            app_state["pipeline"] = ChatPipeline(
                registry=app_state["registry"],
                llm_provider=sql_provider,
                permission_store=app_state["permission_store"],
                conversation_store=app_state["conversation_store"],
                audit_store=app_state["audit_store"],
                translation_provider=translation_provider,
                analysis_provider=analysis_provider,
            )
        else:
            logger.warning("Pipeline not initialized; connection registry is missing.")

        logger.info("ChatBI API server started successfully")

        yield  # Application runs here

    finally:
        logger.info("Shutting down ChatBI API server...")

        for provider in app_state["providers"]:
            try:
                await provider.aclose()
            except Exception as e:
                logger.error(f"Error closing model provider: {e}")
        app_state["providers"] = []

        if app_state["pool"] is not None:
            try:
                await app_state["pool"].close()
                logger.info("System database pool closed")
            except Exception as e:
                logger.error(f"Error closing system database pool: {e}")

        for key in ("pool", "registry", "permission_store", "conversation_store", "audit_store", "pipeline"):
            app_state[key] = None

        logger.info("ChatBI API server shut down complete")


# Create FastAPI app
app = FastAPI(
    title="ChatBI API",
    description="Natural-language BI chat over your relational databases",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for frontend
cors_origins_env = os.getenv("CORS_ORIGINS", "")
cors_origins = (
    [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    if cors_origins_env
    else ["http://localhost:3000", "http://localhost:3001"]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(error: str, exc: AgentError) -> dict[str, Any]:
    return ErrorResponse(
        error=error,
        message=exc.message,
        agent=exc.agent,
        recoverable=exc.recoverable,
        sql=exc.context.get("sql"),
        work_process=exc.context.get("work_process") or [],
        session_id=exc.context.get("session_id"),
    ).model_dump(by_alias=True)


# Exception handlers
@app.exception_handler(SQLPermissionError)
async def permission_error_handler(request: Request, exc: SQLPermissionError) -> JSONResponse:
    """Access-policy blocks are never retried."""
    logger.warning(
        f"Query blocked: {exc.message}",
        extra={"reason": exc.reason, "blocked_columns": exc.blocked_columns},
    )
    body = _error_body("permission_denied", exc)
    body["reason"] = exc.reason
    body["blockedColumns"] = exc.blocked_columns
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=body)


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError) -> JSONResponse:
    logger.warning(f"Access denied: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN, content=_error_body("access_denied", exc)
    )


@app.exception_handler(ModelProviderError)
async def model_provider_error_handler(request: Request, exc: ModelProviderError) -> JSONResponse:
    """Provider failures carry a cause-specific remediation message."""
    logger.error(f"Model provider error: {exc}", extra={"agent": exc.agent})
    body = _error_body("model_provider_error", exc)
    body["message"] = exc.user_message
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body)


@app.exception_handler(AgentError)
async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    """Handle pipeline errors with the work process collected so far."""
    logger.error(
        f"Agent error: {exc}",
        extra={"agent": exc.agent, "recoverable": exc.recoverable},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("agent_error", exc),
    )


@app.exception_handler(ConnectorConnectionError)
async def connection_error_handler(request: Request, exc: ConnectorConnectionError) -> JSONResponse:
    """Handle target database connection errors."""
    logger.error(f"Database connection error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "connection_error",
            "message": "无法连接到目标数据库，请检查数据库连接配置后重试",
        },
    )


# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(chat.router, prefix="/api/v1", tags=["chat"])
app.include_router(databases.router, prefix="/api/v1", tags=["databases"])


# Root endpoint
@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": "ChatBI API",
        "version": __version__,
        "description": "Natural-language BI chat over your relational databases",
        "docs": "/docs",
    }
