"""
Foreign-key relationship inference.

Declared foreign keys are used when introspection reports them; otherwise
``<name>_id`` columns are matched against table names with singular/plural
guessing. A miss simply omits the relationship.
"""

import re
from dataclasses import dataclass

from chatbi.models.schema import Table, find_table

NAME_COLUMN_CANDIDATES = (
    "name",
    "title",
    "full_name",
    "display_name",
    "username",
    "user_name",
    "company_name",
    "名称",
    "姓名",
)


@dataclass(frozen=True)
class Relationship:
    from_table: str
    from_column: str
    to_table: str
    to_column: str

    def sentence(self) -> str:
        return (
            f"{self.from_table}.{self.from_column} 关联 {self.to_table}.{self.to_column}"
        )


def is_foreign_key_column(name: str) -> bool:
    lowered = name.lower()
    return lowered.endswith("_id") and lowered != "id" and len(lowered) > 3


def plural_candidates(base: str) -> list[str]:
    base = base.lower()
    candidates = [base, f"{base}s", f"{base}es"]
    if base.endswith("y"):
        candidates.append(f"{base[:-1]}ies")
    if base.endswith("s"):
        candidates.append(base[:-1])
    return list(dict.fromkeys(candidates))


def _key_column(table: Table) -> str | None:
    for column in table.columns:
        if column.is_primary_key:
            return column.name
    column = table.get_column("id")
    return column.name if column else None


def resolve_reference_table(column: str, schema: list[Table], exclude: str | None = None) -> Table | None:
    """Guess the table a ``*_id`` column points at, or None."""
    if not is_foreign_key_column(column):
        return None
    base = re.sub(r"_id$", "", column.lower())
    prefixes = [base]
    if "_" in base:
        # sales_customer_id -> customer
        prefixes.append(base.split("_")[-1])
    for prefix in prefixes:
        for candidate in plural_candidates(prefix):
            table = find_table(schema, candidate)
            if table is not None and (exclude is None or table.name.lower() != exclude.lower()):
                if _key_column(table):
                    return table
    return None


def display_column(table: Table) -> str | None:
    """Pick the human-readable name column of a table, if any."""
    names = {c.name.lower(): c.name for c in table.columns}
    for candidate in NAME_COLUMN_CANDIDATES:
        if candidate in names:
            return names[candidate]
    for lowered, original in names.items():
        if lowered.endswith("_name") or lowered.endswith("名称"):
            return original
    return None


def infer_relationships(schema: list[Table]) -> list[Relationship]:
    relationships: list[Relationship] = []
    for table in schema:
        for column in table.columns:
            target = None
            if column.foreign_table:
                target = find_table(schema, column.foreign_table)
            if target is None:
                target = resolve_reference_table(column.name, schema, exclude=table.name)
            if target is None:
                continue
            key = _key_column(target)
            if key:
                relationships.append(Relationship(table.name, column.name, target.name, key))
    return relationships
