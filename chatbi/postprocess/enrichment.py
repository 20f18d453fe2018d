"""
ID -> name enrichment.

Foreign-key shaped result columns (``customer_id``) get a readable companion
column (``customer_name``) looked up from the referenced table. Two
strategies produce the same rows:

    join   one round trip: the original query becomes a derived table that
           is LEFT JOINed to every referenced table
    batch  one ``WHERE key IN (...)`` lookup per id column, merged in memory

Both go through the ExecutionGateway, so row filters and masking apply to
the lookups too. Original row order is kept and ids without a match get
``None``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from chatbi.agents.executor import ExecutionGateway
from chatbi.connectors.base import BaseConnector
from chatbi.models.agent import AgentError
from chatbi.models.chat import TabularResult, UserContext
from chatbi.models.policy import CompiledPolicy
from chatbi.models.schema import Table
from chatbi.schema.relationships import display_column, is_foreign_key_column, resolve_reference_table
from chatbi.utils.sql_inspect import clean_sql

logger = logging.getLogger(__name__)

EnrichmentStrategy = Literal["join", "batch", "none"]

_SAFE_IDENTIFIER = re.compile(r"^[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)?$")


@dataclass(frozen=True)
class EnrichmentTarget:
    """One id column and where its label comes from."""

    column: str
    table: str
    key_column: str
    name_column: str
    label: str


class EnrichmentOutcome(BaseModel):
    result: TabularResult
    strategy: EnrichmentStrategy = "none"
    added_columns: list[str] = Field(default_factory=list)


def _key_column(table: Table) -> str | None:
    for column in table.columns:
        if column.is_primary_key:
            return column.name
    column = table.get_column("id")
    return column.name if column else None


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def _key(value: Any) -> str | None:
    return None if value is None else str(value)


def find_enrichment_targets(
    result: TabularResult, schema: list[Table], policy: CompiledPolicy
) -> list[EnrichmentTarget]:
    """Id columns whose referenced table and label column the user may read."""
    existing = {c.lower() for c in result.columns}
    targets: list[EnrichmentTarget] = []
    for column in result.columns:
        if not is_foreign_key_column(column) or not _SAFE_IDENTIFIER.match(column):
            continue
        table = resolve_reference_table(column, schema)
        if table is None or not policy.table_allowed(table.name):
            continue
        name_column = display_column(table)
        key_column = _key_column(table)
        if not name_column or not key_column:
            continue
        if not _SAFE_IDENTIFIER.match(name_column) or not _SAFE_IDENTIFIER.match(table.name):
            continue
        if name_column.lower() in policy.inaccessible_columns(table.name):
            continue
        base = re.sub(r"_id$", "", column, flags=re.IGNORECASE)
        label = f"{base}_name"
        if label.lower() in existing:
            label = f"{column}_name"
            if label.lower() in existing:
                continue
        existing.add(label.lower())
        targets.append(EnrichmentTarget(column, table.name, key_column, name_column, label))
    return targets


def build_join_sql(sql: str, targets: list[EnrichmentTarget]) -> str:
    """Wrap ``sql`` as a derived table and LEFT JOIN each referenced table."""
    selects = ["q.*"]
    joins = []
    for index, target in enumerate(targets):
        alias = f"r{index}"
        selects.append(f"{alias}.{target.name_column} AS {target.label}")
        joins.append(
            f"LEFT JOIN {target.table} {alias} ON q.{target.column} = {alias}.{target.key_column}"
        )
    return f"SELECT {', '.join(selects)} FROM ({clean_sql(sql)}) q {' '.join(joins)}"


def merge_labels(
    result: TabularResult, targets: list[EnrichmentTarget], labels: dict[str, dict[str, Any]]
) -> TabularResult:
    """Insert label columns after their id columns; row order is untouched."""
    columns: list[str] = []
    by_column = {t.column: t for t in targets}
    for column in result.columns:
        columns.append(column)
        if column in by_column:
            columns.append(by_column[column].label)

    rows = []
    for row in result.rows:
        new_row: dict[str, Any] = {}
        for column in result.columns:
            new_row[column] = row.get(column)
            target = by_column.get(column)
            if target is not None:
                new_row[target.label] = labels.get(target.column, {}).get(_key(row.get(column)))
        rows.append(new_row)
    return result.model_copy(update={"columns": columns, "rows": rows})


class IdEnricher:
    """
    Adds readable names next to foreign-key id columns.

    Args:
        gateway: Executes lookups under the caller's policy
        max_ids: Distinct ids per batch lookup statement
    """

    def __init__(self, gateway: ExecutionGateway, max_ids: int = 500):
        self.gateway = gateway
        self.max_ids = max_ids

    async def enrich(
        self,
        sql: str,
        result: TabularResult,
        schema: list[Table],
        connector: BaseConnector,
        policy: CompiledPolicy,
        user: UserContext,
        strategy: EnrichmentStrategy | None = None,
    ) -> EnrichmentOutcome:
        if not result.rows:
            return EnrichmentOutcome(result=result)
        targets = find_enrichment_targets(result, schema, policy)
        if not targets:
            return EnrichmentOutcome(result=result)

        if strategy in (None, "join"):
            try:
                labels = await self._join_labels(sql, targets, schema, connector, policy, user)
                return EnrichmentOutcome(
                    result=merge_labels(result, targets, labels),
                    strategy="join",
                    added_columns=[t.label for t in targets],
                )
            except AgentError as e:
                if strategy == "join":
                    raise
                logger.info(f"JOIN enrichment failed, using batch lookup: {e.message}")

        labels = await self._batch_labels(result, targets, schema, connector, policy, user)
        return EnrichmentOutcome(
            result=merge_labels(result, targets, labels),
            strategy="batch",
            added_columns=[t.label for t in targets],
        )

    async def _join_labels(self, sql, targets, schema, connector, policy, user):
        join_sql = build_join_sql(sql, targets)
        outcome = await self.gateway.run(connector, join_sql, policy, user, schema)
        labels: dict[str, dict[str, Any]] = {t.column: {} for t in targets}
        for row in outcome.result.rows:
            for target in targets:
                key = _key(row.get(target.column))
                if key is not None and row.get(target.label) is not None:
                    labels[target.column].setdefault(key, row.get(target.label))
        return labels

    async def _batch_labels(self, result, targets, schema, connector, policy, user):
        labels: dict[str, dict[str, Any]] = {}
        for target in targets:
            values = list(
                dict.fromkeys(
                    row.get(target.column) for row in result.rows if row.get(target.column) is not None
                )
            )
            found: dict[str, Any] = {}
            for start in range(0, len(values), self.max_ids):
                chunk = values[start : start + self.max_ids]
                lookup = (
                    f"SELECT {target.key_column}, {target.name_column} FROM {target.table} "
                    f"WHERE {target.key_column} IN ({', '.join(_literal(v) for v in chunk)})"
                )
                try:
                    outcome = await self.gateway.run(connector, lookup, policy, user, schema)
                except AgentError as e:
                    logger.warning(f"Batch lookup on {target.table} failed: {e.message}")
                    break
                for row in outcome.result.rows:
                    key = _key(row.get(target.key_column))
                    if key is not None:
                        found.setdefault(key, row.get(target.name_column))
            labels[target.column] = found
        return labels
