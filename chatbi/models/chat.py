"""
Chat-level models: progress trail, chat messages, and query payloads that
travel between pipeline stages.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class WorkProcess:
    """Append-only, human-readable progress trail for one request."""

    def __init__(self, steps: list[str] | None = None) -> None:
        self._steps: list[str] = list(steps or [])

    def add(self, step: str) -> None:
        self._steps.append(step)

    @property
    def steps(self) -> list[str]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(list(self._steps))

    def __repr__(self) -> str:
        return f"<WorkProcess steps={len(self._steps)}>"


class TabularResult(BaseModel):
    """Column names plus row objects, as returned to the client."""

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    column_name_map: dict[str, str] = Field(
        default_factory=dict,
        description="Display label -> original column name, for reversible translation",
    )
    visualization: dict[str, Any] | None = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


class ChatMessageMetadata(BaseModel):
    sql: str | None = None
    query_result: TabularResult | None = None
    work_process: list[str] = Field(default_factory=list)
    error: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """Message handed to the conversation store."""

    role: Literal["user", "assistant", "system"]
    content: str
    metadata: ChatMessageMetadata = Field(default_factory=ChatMessageMetadata)


class UserContext(BaseModel):
    """Identity of the caller, as supplied by the authentication layer."""

    user_id: str
    role: str = "user"
    organization_id: str | None = None
    email: str | None = None
    name: str | None = None
