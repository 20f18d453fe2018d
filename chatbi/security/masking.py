"""
Result-set masking.

Values of columns flagged ``masked`` are replaced after execution:

    full     ->  "***"
    hash     ->  first 12 hex chars of sha256(salt + "|" + value)
    partial  ->  email a***@domain, phone 138****00, otherwise a***z
"""

import hashlib
import json
import re
from typing import Any

from chatbi.models.chat import TabularResult
from chatbi.models.policy import CompiledPolicy, MaskType
from chatbi.utils.sql_inspect import PASSTHROUGH, extract_column_refs, output_column_sources

MASK_STRENGTH: dict[str, int] = {"partial": 1, "hash": 2, "full": 3}

_EMAIL_RE = re.compile(r"^([^@]+)@(.+)$")


def mask_value(value: Any, mask_type: MaskType, salt: str = "default-masking-salt") -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    elif isinstance(value, int | float):
        text = str(value)
    else:
        text = json.dumps(value, default=str, ensure_ascii=False)

    if mask_type == "full":
        return "***"
    if mask_type == "hash":
        digest = hashlib.sha256(f"{salt}|{text}".encode()).hexdigest()
        return digest[:12]

    email = _EMAIL_RE.match(text)
    if email:
        return f"{email.group(1)[:1]}***@{email.group(2)}"
    digits = re.sub(r"\D", "", text)
    if 7 <= len(digits) <= 20:
        return f"{digits[:3]}****{digits[-2:]}"
    if len(text) <= 2:
        return "*" * len(text)
    return f"{text[:1]}***{text[-1:]}"


def build_masked_column_map(policy: CompiledPolicy) -> dict[str, MaskType]:
    """Column (lower-cased) -> strongest mask type across all tables."""
    result: dict[str, MaskType] = {}
    for rules in policy.column_permission_map.values():
        for column, rule in rules.items():
            if not rule.accessible or not rule.masked:
                continue
            mask_type = rule.mask_type or "partial"
            existing = result.get(column)
            if existing is None or MASK_STRENGTH[mask_type] > MASK_STRENGTH[existing]:
                result[column] = mask_type
    return result


def _strongest(candidates: list[MaskType]) -> MaskType | None:
    if not candidates:
        return None
    return max(candidates, key=lambda m: MASK_STRENGTH[m])


def _exposed_masked_columns(sql: str, rules: dict[str, MaskType]) -> set[str]:
    """Masked columns read by any select list of the statement."""
    return {
        ref.column.lower()
        for ref in extract_column_refs(sql)
        if ref.clause == "select" and ref.column.lower() in rules
    }


def masked_output_columns(
    result: TabularResult, policy: CompiledPolicy, sql: str | None = None
) -> dict[str, MaskType]:
    """
    Output column -> mask type. A column is masked when its own (original)
    name is masked, or when the SQL expression that produced it reads a
    masked column, traced through aliases, derived tables and CTEs.

    An output column whose lineage cannot be traced is masked with the
    strongest mask of any masked column the statement selects.
    """
    rules = policy.masking_rules or build_masked_column_map(policy)
    if not rules:
        return {}
    reverse = {display: original for display, original in result.column_name_map.items()}
    sources = output_column_sources(sql) if sql else {}
    exposed = _exposed_masked_columns(sql, rules) if sql else set()

    masked: dict[str, MaskType] = {}
    for column in result.columns:
        original = reverse.get(column, column).lower()
        candidates = [rules[name] for name in {column.lower(), original} if name in rules]
        if original in sources:
            lineage = sources[original]
        elif PASSTHROUGH in sources:
            lineage = sources[PASSTHROUGH]
        else:
            lineage = exposed
        candidates.extend(rules[source] for source in lineage if source in rules)
        mask_type = _strongest(candidates)
        if mask_type:
            masked[column] = mask_type
    return masked


def apply_masking(
    result: TabularResult,
    policy: CompiledPolicy,
    salt: str = "default-masking-salt",
    sql: str | None = None,
) -> TabularResult:
    """Return a copy of ``result`` with masked columns redacted. Admins are exempt."""
    if policy.is_admin:
        return result
    masked = masked_output_columns(result, policy, sql)
    if not masked:
        return result
    rows = []
    for row in result.rows:
        new_row = dict(row)
        for column, mask_type in masked.items():
            if column in new_row:
                new_row[column] = mask_value(new_row[column], mask_type, salt)
        rows.append(new_row)
    return result.model_copy(update={"rows": rows})
