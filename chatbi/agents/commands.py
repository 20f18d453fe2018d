"""
Chat command parsing.

Commands steer presentation only: ``/图表`` (chart), ``/表格`` (table),
``/报表`` (report), or a specific chart type such as ``/柱状图``. They may
lead or trail the question and use ``/`` or ``@``.
"""

import re
from typing import Literal

from pydantic import BaseModel

Command = Literal["chart", "table", "report"]

CHART_TYPE_COMMANDS: dict[str, str] = {
    "柱状图": "bar",
    "bar": "bar",
    "bar-chart": "bar",
    "柱图": "bar",
    "折线图": "line",
    "line": "line",
    "line-chart": "line",
    "折图": "line",
    "饼图": "pie",
    "pie": "pie",
    "pie-chart": "pie",
    "面积图": "area",
    "area": "area",
    "area-chart": "area",
    "散点图": "scatter",
    "scatter": "scatter",
    "雷达图": "radar",
    "radar": "radar",
    "横向柱状图": "bar-horizontal",
    "bar-horizontal": "bar-horizontal",
    "堆叠柱状图": "bar-stacked",
    "bar-stacked": "bar-stacked",
    "堆叠面积图": "area-stacked",
    "area-stacked": "area-stacked",
    "组合图": "composed",
    "composed": "composed",
    "仪表盘": "gauge",
    "gauge": "gauge",
    "漏斗图": "funnel",
    "funnel": "funnel",
    "热力图": "heatmap",
    "heatmap": "heatmap",
    "矩形树图": "treemap",
    "treemap": "treemap",
    "旭日图": "sunburst",
    "sunburst": "sunburst",
    "桑基图": "sankey",
    "sankey": "sankey",
    "箱线图": "boxplot",
    "boxplot": "boxplot",
    "K线图": "candlestick",
    "candlestick": "candlestick",
    "地图": "map",
    "map": "map",
}

GENERIC_COMMANDS: dict[str, Command] = {
    "报表": "report",
    "report": "report",
    "报告": "report",
    "图表": "chart",
    "chart": "chart",
    "表格": "table",
    "table": "table",
}

_ENTITY_REPORT_RE = re.compile(r"^(.+?)(?:的)?报告$")


class CommandParseResult(BaseModel):
    command: Command | None = None
    chart_type: str | None = None
    question: str = ""
    original_input: str = ""


def _match(text: str, word: str) -> str | None:
    escaped = re.escape(word)
    for pattern in (rf"^[@/]{escaped}\s+(.+)$", rf"^(.+)\s+[@/]{escaped}$"):
        match = re.match(pattern, text, re.IGNORECASE | re.DOTALL)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def parse_command(text: str | None) -> CommandParseResult:
    """Strip a leading or trailing command from ``text``."""
    original = text or ""
    trimmed = original.strip()
    if not trimmed:
        return CommandParseResult(question="", original_input=original)

    # longest first so /横向柱状图 is not read as /柱状图
    for word in sorted(CHART_TYPE_COMMANDS, key=len, reverse=True):
        question = _match(trimmed, word)
        if question:
            return CommandParseResult(
                command="chart",
                chart_type=CHART_TYPE_COMMANDS[word],
                question=question,
                original_input=original,
            )

    for word, command in GENERIC_COMMANDS.items():
        question = _match(trimmed, word)
        if question:
            return CommandParseResult(command=command, question=question, original_input=original)

    if _ENTITY_REPORT_RE.match(trimmed) and len(trimmed) > 2:
        return CommandParseResult(command="report", question=trimmed, original_input=original)

    return CommandParseResult(question=trimmed, original_input=original)
