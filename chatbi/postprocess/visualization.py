"""Chart configuration hints for chart-style requests."""

import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from chatbi.models.chat import TabularResult

logger = logging.getLogger(__name__)

CHART_TYPES = {"bar", "line", "pie", "area", "scatter", "radar", "funnel", "table"}

_TEMPORAL_TOKENS = {"date", "time", "timestamp", "datetime", "day", "week", "month", "quarter", "year"}
_TEMPORAL_LABELS = ("日期", "时间", "月份", "年份", "季度")


def is_numeric_value(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float, Decimal))


def _is_temporal_value(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if not isinstance(value, str) or len(value.strip()) < 7:
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return True
    except ValueError:
        return bool(re.fullmatch(r"\d{4}[-/]\d{1,2}", value.strip()))


def is_temporal_column(column: str, rows: list[dict[str, Any]]) -> bool:
    tokens = {t for t in re.split(r"[^a-z0-9]+", column.lower()) if t}
    if tokens & _TEMPORAL_TOKENS or any(label in column for label in _TEMPORAL_LABELS):
        return True
    if column.lower().endswith("_at"):
        return True
    return any(_is_temporal_value(row.get(column)) for row in rows[:20])


def numeric_columns(result: TabularResult) -> list[str]:
    sample = result.rows[:50]
    return [
        column
        for column in result.columns
        if any(is_numeric_value(row.get(column)) for row in sample)
        and all(row.get(column) is None or is_numeric_value(row.get(column)) for row in sample)
    ]


def suggest_chart_type(result: TabularResult) -> str:
    if result.row_count == 0 or not result.columns:
        return "table"
    numeric = numeric_columns(result)
    has_time = any(is_temporal_column(c, result.rows) for c in result.columns)
    if has_time and numeric:
        return "line"
    if len(result.columns) == 2 and numeric:
        return "pie" if result.row_count <= 6 else "bar"
    if len(numeric) >= 2 and len(result.columns) == len(numeric):
        return "scatter"
    if numeric:
        return "bar"
    return "table"


def suggest_visualization(
    result: TabularResult,
    display_format: str | None,
    chart_type: str | None = None,
    model_hint: dict[str, Any] | None = None,
    title: str | None = None,
) -> dict[str, Any] | None:
    """
    Chart config for a chart request, else None. A table request never gets
    one, even if the model volunteered it.
    """
    if display_format != "chart" or result.row_count == 0:
        return None

    hint = dict(model_hint or {})
    chart = chart_type or hint.get("type")
    if chart not in CHART_TYPES:
        chart = suggest_chart_type(result)

    numeric = numeric_columns(result)
    dimensions = [c for c in result.columns if c not in numeric]
    x_axis = hint.get("xAxis") if hint.get("xAxis") in result.columns else None
    if x_axis is None:
        temporal = [c for c in dimensions if is_temporal_column(c, result.rows)]
        x_axis = (temporal or dimensions or result.columns)[0]
    y_hint = hint.get("yAxis")
    if isinstance(y_hint, str) and y_hint in result.columns:
        y_axis = [y_hint]
    elif isinstance(y_hint, list) and all(y in result.columns for y in y_hint) and y_hint:
        y_axis = list(y_hint)
    else:
        y_axis = [c for c in numeric if c != x_axis] or [c for c in result.columns if c != x_axis][:1]

    config = {
        "type": chart,
        "title": hint.get("title") or title or "",
        "xAxis": x_axis,
        "yAxis": y_axis,
    }
    logger.debug(f"Visualization config: {config}")
    return config
