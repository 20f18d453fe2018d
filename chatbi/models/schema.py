"""
Schema and whitelist models.

``Table``/``Column`` describe what introspection found for the current
request. ``FieldWhitelist`` is the immutable per-request allow-list of
columns, built once by ``chatbi.schema.whitelist.build_field_whitelist``.
"""

from collections.abc import Iterable, Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

WhitelistSource = Literal["query_result", "schema", "result_columns"]


class Column(BaseModel):
    """A column visible to the current request."""

    name: str = Field(..., min_length=1)
    type: str = Field(default="", description="Declared data type, when known")
    nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False
    description: str | None = None
    foreign_table: str | None = Field(None, description="Referenced table if known")


class Table(BaseModel):
    """A table and its columns."""

    name: str = Field(..., min_length=1)
    columns: list[Column] = Field(default_factory=list)
    description: str | None = None

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def get_column(self, name: str) -> Column | None:
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None


Schema = list[Table]


def find_table(schema: Iterable[Table], name: str) -> Table | None:
    """Case-insensitive table lookup; a ``db.table`` name also matches ``table``."""
    lowered = name.lower()
    short = lowered.rsplit(".", 1)[-1]
    fallback = None
    for table in schema:
        table_name = table.name.lower()
        if table_name == lowered:
            return table
        if table_name.rsplit(".", 1)[-1] == short and fallback is None:
            fallback = table
    return fallback


class FieldWhitelist(BaseModel):
    """
    Immutable mapping of table name to the columns it may be queried on.

    Lookups are case-insensitive; the original spelling is preserved for
    display and for prompt text.
    """

    tables: Mapping[str, tuple[str, ...]] = Field(default_factory=dict)
    source: WhitelistSource = "schema"

    model_config = ConfigDict(frozen=True)

    @property
    def is_empty(self) -> bool:
        return not any(self.tables.values())

    def table_names(self) -> list[str]:
        return list(self.tables.keys())

    def columns_for(self, table: str) -> tuple[str, ...]:
        lowered = table.lower()
        short = lowered.rsplit(".", 1)[-1]
        for name, columns in self.tables.items():
            if name.lower() == lowered or name.lower().rsplit(".", 1)[-1] == short:
                return columns
        return ()

    def has_table(self, table: str) -> bool:
        return bool(self.columns_for(table))

    def allows(self, table: str, column: str) -> bool:
        return column.lower() in {c.lower() for c in self.columns_for(table)}

    def all_columns(self) -> set[str]:
        return {column for columns in self.tables.values() for column in columns}

    def restrict_to(self, schema: Iterable[Table]) -> "FieldWhitelist":
        """Intersect with a (filtered) schema, dropping tables that vanish."""
        restricted: dict[str, tuple[str, ...]] = {}
        for name, columns in self.tables.items():
            table = find_table(schema, name)
            if table is None:
                continue
            visible = {c.lower() for c in table.column_names()}
            kept = tuple(c for c in columns if c.lower() in visible)
            if kept:
                restricted[name] = kept
        return FieldWhitelist(tables=restricted, source=self.source)

    def render_text(self) -> str:
        """Prompt-ready rendering, one table per line."""
        return "\n".join(
            f"- {name}: {', '.join(columns)}" for name, columns in self.tables.items() if columns
        )
