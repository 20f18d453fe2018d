"""
Cross-table need detection and JOIN requirement assessment.

Both checks are heuristics without model calls. Detection aims at high
precision for questions that obviously need a JOIN and stays conservative on
vague ones.
"""

import logging
import re
from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel, Field

from chatbi.utils.sql_inspect import extract_table_names, has_comma_join, has_explicit_join

logger = logging.getLogger(__name__)

JoinReason = Literal["single_table_when_join_required", "comma_multi_table_without_join"]

EXPLICIT_JOIN_KEYWORDS = (
    "跨表",
    "多表",
    "关联",
    "连接",
    "对应",
    "关系",
    "join",
    "left join",
    "inner join",
    "right join",
    "full join",
)

ENTITY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "customer": ("客户", "customer"),
    "order": ("订单", "order"),
    "product": ("产品", "商品", "product"),
    "account": ("账户", "公司", "account"),
    "contact": ("联系人", "contact"),
    "opportunity": ("商机", "机会", "opportunity"),
}

JOIN_PATTERNS = (
    re.compile(r"每个.+的.+"),
    re.compile(r"各.+的.+"),
    re.compile(r"对应的"),
    re.compile(r"关联的"),
    re.compile(r"连接的"),
    re.compile(r"属于.+的.+"),
    re.compile(r"(.+)下的(.+)"),
)

MAX_CANDIDATE_TABLES = 5


class CrossTableNeed(BaseModel):
    needs_join: bool = False
    candidate_tables: list[str] = Field(default_factory=list)
    signals: list[str] = Field(default_factory=list)


class JoinAssessment(BaseModel):
    should_regenerate: bool = False
    reason: JoinReason | None = None
    tables: list[str] = Field(default_factory=list)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").lower()).strip()


def table_name_variants(table_name: str) -> list[str]:
    lower = (table_name or "").strip().lower()
    if not lower:
        return []
    short = lower.rsplit(".", 1)[-1]
    variants = {short, short.replace("_", ""), short.replace("_", " ")}
    if short.endswith("s") and len(short) > 2:
        variants.add(short[:-1])
    else:
        variants.add(f"{short}s")
    return [v for v in variants if v]


def detect_mentioned_tables(question: str, table_names: Iterable[str]) -> list[str]:
    text = _normalize(question)
    mentioned = []
    for name in table_names:
        if any(variant in text for variant in table_name_variants(name)):
            if name not in mentioned:
                mentioned.append(name)
    return mentioned


def detect_entity_keys(question: str) -> set[str]:
    text = _normalize(question)
    return {key for key, words in ENTITY_KEYWORDS.items() if any(w in text for w in words)}


def detect_cross_table_need(question: str, table_names: Iterable[str] = ()) -> CrossTableNeed:
    """Decide whether ``question`` needs data from several tables."""
    text = _normalize(question)
    signals: list[str] = []

    explicit = any(keyword in text for keyword in EXPLICIT_JOIN_KEYWORDS)
    if explicit:
        signals.append("keyword_join")

    mentioned = detect_mentioned_tables(question, table_names)
    if len(mentioned) >= 2:
        signals.append("multi_tables_mentioned")

    entities = detect_entity_keys(question)
    if len(entities) >= 2:
        signals.append("multi_entities")

    if any(pattern.search(text) for pattern in JOIN_PATTERNS):
        signals.append("pattern_each_of")

    return CrossTableNeed(
        needs_join=bool(signals),
        candidate_tables=mentioned[:MAX_CANDIDATE_TABLES],
        signals=signals,
    )


def assess_join_requirement(
    sql: str | None, needs_join: bool, detected_tables: Iterable[str] = ()
) -> JoinAssessment:
    """
    Flag SQL that ignores a detected cross-table need.

    ``comma_multi_table_without_join`` is reported whenever a FROM clause lists
    several relations with commas and no JOIN keyword appears, regardless of
    ``needs_join``. ``single_table_when_join_required`` needs ``needs_join`` and
    either no specific candidate tables or at least two of them.
    """
    if not sql:
        return JoinAssessment()
    tables = extract_table_names(sql)
    detected = list(dict.fromkeys(detected_tables))

    if len(tables) >= 2 and has_comma_join(sql) and not has_explicit_join(sql):
        logger.info(f"Comma join without JOIN keyword over {tables}")
        return JoinAssessment(
            should_regenerate=True, reason="comma_multi_table_without_join", tables=tables
        )

    if needs_join and len(tables) < 2 and len(detected) != 1:
        logger.info(f"Single-table SQL for a cross-table question (detected: {detected})")
        return JoinAssessment(
            should_regenerate=True, reason="single_table_when_join_required", tables=tables
        )

    return JoinAssessment(tables=tables)
