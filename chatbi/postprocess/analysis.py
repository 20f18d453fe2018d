"""
Attribution analysis and report generation.

Both are optional augmentations of a successful query. ``run_augmentations``
issues them concurrently; a failure in either is logged and yields ``None``
for that part only.
"""

import asyncio
import logging
import statistics
from typing import Any, Literal

from pydantic import BaseModel, Field

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMMessage, LLMRequest
from chatbi.models.chat import TabularResult
from chatbi.postprocess.visualization import is_numeric_value
from chatbi.prompts.composer import PromptComposer

logger = logging.getLogger(__name__)

TIME_KEYWORDS = ("time", "date", "week", "month", "year", "日期", "时间", "周", "月", "年")
VALUE_KEYWORDS = ("value", "count", "sum", "total", "amount", "数量", "数值", "总数", "金额")

InsightType = Literal["trend_change", "spike", "drop", "anomaly"]


class DataPoint(BaseModel):
    time: Any
    value: float


class TurningPoint(BaseModel):
    time: Any
    value: float
    change: float
    description: str


class Insight(BaseModel):
    type: InsightType
    description: str
    time_point: Any = None
    magnitude: float | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class AttributionAnalysis(BaseModel):
    insights: list[Insight] = Field(default_factory=list)
    turning_points: list[TurningPoint] = Field(default_factory=list)
    data_points: list[DataPoint] = Field(default_factory=list)
    summary: str = ""
    narrative: str | None = None


def _to_float(value: Any) -> float | None:
    if is_numeric_value(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def detect_time_column(result: TabularResult) -> str | None:
    for column in result.columns:
        if any(keyword in column.lower() for keyword in TIME_KEYWORDS):
            return column
    first = result.rows[0] if result.rows else {}
    for column in result.columns:
        if isinstance(first.get(column), str):
            return column
    return None


def detect_value_column(result: TabularResult, exclude: str | None = None) -> str | None:
    candidates = [c for c in result.columns if c != exclude]
    for column in candidates:
        if any(keyword in column.lower() for keyword in VALUE_KEYWORDS):
            return column
    first = result.rows[0] if result.rows else {}
    for column in candidates:
        if is_numeric_value(first.get(column)):
            return column
    return None


def extract_data_points(
    result: TabularResult, time_column: str | None = None, value_column: str | None = None
) -> list[DataPoint]:
    time_column = time_column or detect_time_column(result)
    value_column = value_column or detect_value_column(result, exclude=time_column)
    if not time_column or not value_column:
        return []
    points = []
    for row in result.rows:
        value = _to_float(row.get(value_column))
        if value is not None and row.get(time_column) is not None:
            points.append(DataPoint(time=row.get(time_column), value=value))
    return sorted(points, key=lambda p: str(p.time))


def change_threshold(points: list[DataPoint]) -> float:
    """1.5 x the median absolute step between consecutive points."""
    if len(points) < 2:
        return 0.0
    changes = sorted(abs(b.value - a.value) for a, b in zip(points, points[1:]))
    return changes[len(changes) // 2] * 1.5


def identify_turning_points(points: list[DataPoint]) -> list[TurningPoint]:
    """Direction reversals, plus steps larger than twice the change threshold."""
    if len(points) < 3:
        return []
    threshold = change_threshold(points)
    turning: list[TurningPoint] = []
    for prev, curr, nxt in zip(points, points[1:], points[2:]):
        before = curr.value - prev.value
        after = nxt.value - curr.value
        if (before > 0 > after) or (before < 0 < after):
            turning.append(
                TurningPoint(
                    time=curr.time,
                    value=curr.value,
                    change=abs(before) + abs(after),
                    description="数据达到峰值后开始下降" if before > 0 else "数据达到谷底后开始上升",
                )
            )
        elif threshold and (abs(before) > threshold * 2 or abs(after) > threshold * 2):
            turning.append(
                TurningPoint(
                    time=curr.time,
                    value=curr.value,
                    change=max(abs(before), abs(after)),
                    description="检测到异常波动",
                )
            )
    return turning


def generate_insights(points: list[DataPoint], turning: list[TurningPoint]) -> list[Insight]:
    if not points:
        return []
    insights: list[Insight] = []
    first, last = points[0].value, points[-1].value
    if first:
        percentage = (last - first) / abs(first) * 100
        if abs(percentage) > 10:
            insights.append(
                Insight(
                    type="spike" if percentage > 0 else "drop",
                    description=f"整体{'上升' if percentage > 0 else '下降'} {abs(percentage):.1f}%",
                    magnitude=abs(percentage),
                    confidence=0.8,
                )
            )
    for point in turning:
        insights.append(
            Insight(
                type="trend_change",
                description=point.description,
                time_point=point.time,
                magnitude=point.change,
                confidence=0.7,
            )
        )
    values = [p.value for p in points]
    if len(values) >= 2:
        mean = statistics.fmean(values)
        deviation = statistics.pstdev(values)
        for point in points:
            if deviation and abs(point.value - mean) > deviation * 2:
                insights.append(
                    Insight(
                        type="anomaly",
                        description=f"在 {point.time} 检测到异常值: {point.value:g}",
                        time_point=point.time,
                        magnitude=abs(point.value - mean),
                        confidence=0.6,
                    )
                )
    return insights


def summarize(insights: list[Insight], turning: list[TurningPoint]) -> str:
    parts = [f"共识别到 {len(insights)} 个关键洞察。"]
    if turning:
        latest = turning[-1]
        parts.append(
            f"发现 {len(turning)} 个数据转折点，最近的转折点出现在 {latest.time}，{latest.description}。"
        )
    trend = next((i for i in insights if i.type in ("spike", "drop")), None)
    if trend:
        parts.append(f"整体趋势：{trend.description}。")
    return " ".join(parts)


class AttributionAnalyzer:
    """Heuristic turning-point analysis with an optional model narrative."""

    def __init__(self, llm_provider: BaseLLMProvider | None = None, composer: PromptComposer | None = None):
        self.llm = llm_provider
        self.composer = composer or PromptComposer()

    async def analyze(self, result: TabularResult, question: str = "") -> AttributionAnalysis | None:
        points = extract_data_points(result)
        if len(points) < 3:
            return None
        turning = identify_turning_points(points)
        insights = generate_insights(points, turning)
        analysis = AttributionAnalysis(
            insights=insights,
            turning_points=turning,
            data_points=points,
            summary=summarize(insights, turning),
        )
        if self.llm is not None and insights:
            prompt = self.composer.attribution_prompt(question, [i.description for i in insights])
            response = await self.llm.complete(
                LLMRequest(messages=[LLMMessage(role="user", content=prompt)])
            )
            analysis.narrative = response.content.strip() or None
        return analysis


class ReportGenerator:
    """Markdown report over a query result."""

    def __init__(self, llm_provider: BaseLLMProvider | None = None, composer: PromptComposer | None = None):
        self.llm = llm_provider
        self.composer = composer or PromptComposer()

    async def generate(self, result: TabularResult, question: str, sql: str) -> str | None:
        if result.row_count == 0:
            return None
        if self.llm is None:
            return self._basic_report(result, question)
        prompt = self.composer.report_prompt(question, sql, result.columns, result.rows)
        response = await self.llm.complete(
            LLMRequest(messages=[LLMMessage(role="user", content=prompt)])
        )
        return response.content.strip() or self._basic_report(result, question)

    @staticmethod
    def _basic_report(result: TabularResult, question: str) -> str:
        lines = [f"## {question or '查询结果'}", "", f"- 共返回 {result.row_count} 行数据"]
        for column in result.columns:
            values = [_to_float(row.get(column)) for row in result.rows]
            numbers = [v for v in values if v is not None]
            if numbers and len(numbers) == len(values):
                lines.append(
                    f"- {column}：合计 {sum(numbers):g}，平均 {statistics.fmean(numbers):.2f}，"
                    f"最大 {max(numbers):g}，最小 {min(numbers):g}"
                )
        return "\n".join(lines)


async def run_augmentations(
    result: TabularResult,
    question: str,
    sql: str,
    analyzer: AttributionAnalyzer | None = None,
    reporter: ReportGenerator | None = None,
) -> tuple[AttributionAnalysis | None, str | None]:
    """Run attribution and report concurrently; each failure becomes None."""

    async def _none() -> None:
        return None

    attribution, report = await asyncio.gather(
        analyzer.analyze(result, question) if analyzer else _none(),
        reporter.generate(result, question, sql) if reporter else _none(),
        return_exceptions=True,
    )
    if isinstance(attribution, Exception):
        logger.warning(f"Attribution analysis failed: {attribution}")
        attribution = None
    if isinstance(report, Exception):
        logger.warning(f"Report generation failed: {report}")
        report = None
    return attribution, report
