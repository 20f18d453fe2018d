"""Database connection models."""

from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, SecretStr

from chatbi.models.schema import Table


class PreconfiguredQueryConfig(BaseModel):
    """A named query an administrator attached to a connection."""

    name: str = Field(..., min_length=1)
    description: str | None = None
    sql: str = Field(..., min_length=1)


class DatabaseConnection(BaseModel):
    """Stored target-database connection details."""

    connection_id: UUID = Field(default_factory=uuid4, description="Connection identifier")
    name: str = Field(..., min_length=1, description="User-friendly name")
    database_url: SecretStr = Field(..., description="Decrypted database URL")
    database_type: Literal["postgresql", "mysql"] = Field(..., description="Database engine type")
    organization_id: str | None = Field(None, description="Owning organization")
    schema_query: str | None = Field(
        None, description="Configured 'get schema' query; required for chat queries"
    )
    schema_metadata: list[Table] = Field(
        default_factory=list, description="Last successfully introspected schema"
    )
    preconfigured_queries: list[PreconfiguredQueryConfig] = Field(default_factory=list)
    description: str | None = Field(None, description="Optional description")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    schema_cached_at: datetime | None = None


class DatabaseConnectionCreate(BaseModel):
    """Payload for registering a connection."""

    name: str = Field(..., min_length=1)
    database_url: SecretStr
    database_type: Literal["postgresql", "mysql"] | None = None
    organization_id: str | None = None
    schema_query: str | None = None
    preconfigured_queries: list[PreconfiguredQueryConfig] = Field(default_factory=list)
    description: str | None = None

