"""
Agent I/O Models

Pydantic models for agent inputs, outputs, and the error taxonomy shared by
the chat pipeline.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AgentMetadata(BaseModel):
    """Metadata about agent execution."""

    agent_name: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    duration_ms: float | None = None
    llm_calls: int = 0
    tokens_used: int | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=False)

    def mark_complete(self) -> None:
        """Mark execution as complete and calculate duration."""
        self.completed_at = datetime.now(UTC)
        if self.started_at:
            delta = self.completed_at - self.started_at
            self.duration_ms = delta.total_seconds() * 1000


class AgentInput(BaseModel):
    """
    Base input model for all agents.

    Each agent extends this with its specific input fields.
    """

    query: str = Field(..., description="User's natural language question")
    context: dict[str, Any] = Field(
        default_factory=dict, description="Additional context passed between stages"
    )


class AgentOutput(BaseModel):
    """Base output model for all agents."""

    success: bool = Field(..., description="Whether the agent executed successfully")
    data: dict[str, Any] = Field(default_factory=dict, description="Agent-specific output data")
    metadata: AgentMetadata = Field(..., description="Execution metadata")


class AgentError(Exception):
    """
    Custom exception for agent execution errors.

    Attributes:
        agent: Name of the component that raised the error
        message: Error description
        recoverable: Whether the pipeline can retry or continue
        context: Additional context for debugging
    """

    def __init__(
        self,
        agent: str,
        message: str,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        self.agent = agent
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}
        super().__init__(f"[{agent}] {message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/API responses."""
        return {
            "agent": self.agent,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
            "type": self.__class__.__name__,
        }


class ValidationError(AgentError):
    """Error during input validation (not recoverable)."""

    def __init__(self, agent: str, message: str, context: dict[str, Any] | None = None):
        super().__init__(agent, message, recoverable=False, context=context)


class LLMError(AgentError):
    """Error during a model call."""

    def __init__(
        self,
        agent: str,
        message: str,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(agent, message, recoverable=recoverable, context=context)


class DatabaseExecutionError(AgentError):
    """The target database rejected a statement; the driver message is kept verbatim."""

    def __init__(
        self,
        message: str,
        sql: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.sql = sql
        super().__init__(
            "ExecutionGateway",
            message,
            recoverable=True,
            context={**(context or {}), "sql": sql},
        )


class SchemaUnavailableError(AgentError):
    """No schema query is configured for the connection; the request fails closed."""

    def __init__(self, message: str = "未配置数据库结构查询，无法获取数据库结构", context=None):
        super().__init__("SchemaIntrospector", message, recoverable=False, context=context)


class WhitelistEmptyError(AgentError):
    """Neither introspection rows nor fallback schema produced any column."""

    def __init__(self, message: str = "无法构建字段白名单：数据库结构为空", context=None):
        super().__init__("FieldWhitelistBuilder", message, recoverable=False, context=context)


class SQLRejectedError(AgentError):
    """Statement failed validation and cannot be corrected within the budget."""

    def __init__(self, message: str, sql: str | None = None, context=None):
        self.sql = sql
        super().__init__(
            "SQLValidator", message, recoverable=False, context={**(context or {}), "sql": sql}
        )


class SchemaOnlyResultUnrecoverable(AgentError):
    """Regeneration after a schema-only result still returned schema rows."""

    def __init__(
        self,
        message: str = "查询仍然只返回了数据库结构信息，请换一种方式描述您的问题",
        sql: str | None = None,
    ):
        self.sql = sql
        super().__init__("SelfCorrectionLoop", message, recoverable=False, context={"sql": sql})


class SQLGenerationError(AgentError):
    """The model produced no usable statement."""

    def __init__(
        self,
        agent: str,
        message: str,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(agent, message, recoverable=recoverable, context=context)
