"""
API Request/Response Models

Pydantic models for FastAPI endpoints. Chat payloads use camelCase on the
wire; snake_case names are accepted as well.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatbi.models.chat import TabularResult
from chatbi.models.schema import Table
from chatbi.postprocess.analysis import AttributionAnalysis


class Message(BaseModel):
    """Chat message in the request history."""

    role: str = Field(..., description="Message role: 'user', 'assistant' or 'system'")
    content: str = Field(default="", description="Message content")


class ChatRequest(BaseModel):
    """Request model for the chat endpoint."""

    messages: list[Message] = Field(
        ..., min_length=1, description="Conversation so far; the last user message is the question"
    )
    database_connection_id: str = Field(
        ..., alias="databaseConnectionId", description="Target database connection ID"
    )
    session_id: str | None = Field(None, alias="sessionId", description="Chat session ID")
    agent_id: str | None = Field(None, alias="agentId", description="Optional agent ID")
    database_schema: list[Table] | None = Field(
        None,
        alias="databaseSchema",
        description="Optional client-side schema, used only when nothing is cached",
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "messages": [{"role": "user", "content": "统计每个国家的客户数量"}],
                "databaseConnectionId": "3a1f2d3e-4b5c-6d7e-8f90-1234567890ab",
                "sessionId": None,
            }
        },
    )


class ChatResponse(BaseModel):
    """Response model for the chat endpoint."""

    message: str = Field(..., description="Answer or explanation for the user")
    query_result: TabularResult | None = Field(None, alias="queryResult")
    sql: str | None = Field(None, description="Executed SQL (if any)")
    error: str | None = Field(None, description="User-facing error message")
    work_process: list[str] = Field(default_factory=list, alias="workProcess")
    session_id: str | None = Field(None, alias="sessionId")
    attribution_analysis: AttributionAnalysis | None = Field(None, alias="attributionAnalysis")
    ai_report: str | None = Field(None, alias="aiReport")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""

    status: str = Field(..., description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Current timestamp (ISO 8601)")


class ReadinessResponse(BaseModel):
    """Response model for readiness check endpoint."""

    status: str = Field(..., description="Readiness status: 'ready' or 'not_ready'")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Current timestamp (ISO 8601)")
    checks: dict[str, bool] = Field(..., description="Individual readiness checks")


class ErrorResponse(BaseModel):
    """Error body for failed chat requests."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    agent: str | None = Field(None, description="Component that raised the error")
    recoverable: bool = Field(default=False)
    sql: str | None = None
    work_process: list[str] = Field(default_factory=list, alias="workProcess")
    session_id: str | None = Field(None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)
