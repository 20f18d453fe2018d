"""
Data permission models.

``DataPermission`` is what administrators configure per role and connection;
``CompiledPolicy`` is the per-request form the pipeline enforces.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MaskType = Literal["full", "partial", "hash"]
DataScope = Literal["all", "user_related"]


class ColumnPermission(BaseModel):
    column_name: str
    accessible: bool = True
    masked: bool = False
    mask_type: MaskType | None = None


class UserRelationFields(BaseModel):
    """Columns that tie a row to a user, for ``user_related`` scope."""

    user_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None


class TablePermission(BaseModel):
    table_name: str
    enabled: bool = True
    allowed_operations: list[str] = Field(default_factory=lambda: ["SELECT"])
    data_scope: DataScope = "all"
    row_level_filter: str | None = Field(
        None,
        description="SQL predicate; may use {{user_id}}, {{user_email}}, {{user_name}}, {{user_role}}",
    )
    user_relation_fields: UserRelationFields | None = None
    column_permissions: list[ColumnPermission] = Field(default_factory=list)


class DataPermission(BaseModel):
    """A role's permission set on one database connection."""

    id: str | None = None
    name: str = ""
    role: str
    organization_id: str | None = None
    database_connection_id: str
    table_permissions: list[TablePermission] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "role": "analyst",
                "database_connection_id": "conn_1",
                "table_permissions": [
                    {
                        "table_name": "customers",
                        "column_permissions": [
                            {"column_name": "email", "masked": True, "mask_type": "partial"},
                            {"column_name": "ssn", "accessible": False},
                        ],
                    }
                ],
            }
        }
    )


class ColumnRule(BaseModel):
    accessible: bool = True
    masked: bool = False
    mask_type: MaskType | None = None

    model_config = ConfigDict(frozen=True)


class CompiledPolicy(BaseModel):
    """Per-request access policy. Keys of the maps are lower-cased table names."""

    is_admin: bool = False
    allowed_tables: set[str] = Field(default_factory=set)
    table_permission_map: dict[str, TablePermission] = Field(default_factory=dict)
    column_permission_map: dict[str, dict[str, ColumnRule]] = Field(default_factory=dict)
    masking_rules: dict[str, MaskType] = Field(
        default_factory=dict, description="column (lower) -> strongest mask type"
    )

    def columns_for(self, table: str) -> dict[str, ColumnRule]:
        lowered = table.lower()
        if lowered in self.column_permission_map:
            return self.column_permission_map[lowered]
        return self.column_permission_map.get(lowered.rsplit(".", 1)[-1], {})

    def table_allowed(self, table: str) -> bool:
        if self.is_admin:
            return True
        lowered = table.lower()
        return lowered in self.allowed_tables or lowered.rsplit(".", 1)[-1] in self.allowed_tables

    def table_permission(self, table: str) -> TablePermission | None:
        lowered = table.lower()
        return self.table_permission_map.get(lowered) or self.table_permission_map.get(
            lowered.rsplit(".", 1)[-1]
        )

    def inaccessible_columns(self, table: str) -> set[str]:
        return {name for name, rule in self.columns_for(table).items() if not rule.accessible}
