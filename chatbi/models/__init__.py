"""
ChatBI Models Module

Pydantic models shared across the pipeline.

Available Models:
    Agent Models:
        - AgentInput / AgentOutput / AgentMetadata
        - AgentError and its subclasses (SchemaUnavailableError,
          WhitelistEmptyError, SQLRejectedError, DatabaseExecutionError,
          SchemaOnlyResultUnrecoverable, SQLGenerationError)

    Schema Models:
        - Column, Table, FieldWhitelist

    Policy Models:
        - DataPermission, TablePermission, ColumnPermission, CompiledPolicy

    Chat Models:
        - ChatMessage, TabularResult, UserContext, WorkProcess

    API request/response models live in ``chatbi.models.api``.
"""

from chatbi.models.agent import (
    AgentError,
    AgentInput,
    AgentMetadata,
    AgentOutput,
    DatabaseExecutionError,
    LLMError,
    SchemaOnlyResultUnrecoverable,
    SchemaUnavailableError,
    SQLGenerationError,
    SQLRejectedError,
    ValidationError,
    WhitelistEmptyError,
)
from chatbi.models.chat import ChatMessage, ChatMessageMetadata, TabularResult, UserContext, WorkProcess
from chatbi.models.database import DatabaseConnection, DatabaseConnectionCreate
from chatbi.models.policy import (
    ColumnPermission,
    CompiledPolicy,
    DataPermission,
    TablePermission,
)
from chatbi.models.schema import Column, FieldWhitelist, Table

__all__ = [
    "AgentError",
    "AgentInput",
    "AgentMetadata",
    "AgentOutput",
    "ChatMessage",
    "ChatMessageMetadata",
    "Column",
    "ColumnPermission",
    "CompiledPolicy",
    "DataPermission",
    "DatabaseConnection",
    "DatabaseConnectionCreate",
    "DatabaseExecutionError",
    "FieldWhitelist",
    "LLMError",
    "SQLGenerationError",
    "SQLRejectedError",
    "SchemaOnlyResultUnrecoverable",
    "SchemaUnavailableError",
    "Table",
    "TabularResult",
    "TablePermission",
    "UserContext",
    "ValidationError",
    "WhitelistEmptyError",
    "WorkProcess",
]
