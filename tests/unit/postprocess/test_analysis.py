"""
Unit tests for attribution analysis and report generation.

Tests cover:
1. Data point extraction and turning-point detection
2. Insight generation (overall trend, anomalies)
3. Model narrative / report with and without a provider
4. Failure isolation in run_augmentations()
"""

from unittest.mock import AsyncMock

import pytest

from chatbi.models.chat import TabularResult
from chatbi.postprocess.analysis import (
    AttributionAnalyzer,
    DataPoint,
    ReportGenerator,
    extract_data_points,
    generate_insights,
    identify_turning_points,
    run_augmentations,
)


@pytest.fixture
def monthly_totals():
    rows = [("2024-03", 15), ("2024-01", 10), ("2024-04", 25), ("2024-02", 20)]
    return TabularResult(
        columns=["month", "total"], rows=[{"month": m, "total": t} for m, t in rows]
    )


def _points(values):
    return [DataPoint(time=f"t{i:02d}", value=v) for i, v in enumerate(values)]


class TestHeuristics:
    """Test suite for the pure analysis helpers."""

    def test_data_points_are_sorted_by_time(self, monthly_totals):
        points = extract_data_points(monthly_totals)

        assert [p.time for p in points] == ["2024-01", "2024-02", "2024-03", "2024-04"]
        assert [p.value for p in points] == [10, 20, 15, 25]

    def test_reversals_are_turning_points(self, monthly_totals):
        turning = identify_turning_points(extract_data_points(monthly_totals))

        assert [(t.time, t.description) for t in turning] == [
            ("2024-02", "数据达到峰值后开始下降"),
            ("2024-03", "数据达到谷底后开始上升"),
        ]

    def test_large_step_without_reversal_is_a_turning_point(self):
        turning = identify_turning_points(_points([1, 2, 3, 4, 40, 41]))

        assert [t.time for t in turning] == ["t03", "t04"]
        assert all(t.description == "检测到异常波动" for t in turning)

    def test_fewer_than_three_points(self):
        assert identify_turning_points(_points([1, 5])) == []

    def test_overall_change_and_anomaly(self):
        points = _points([10, 10, 10, 10, 10, 10, 10, 100])

        insights = generate_insights(points, [])

        assert insights[0].type == "spike"
        assert insights[0].description == "整体上升 900.0%"
        anomalies = [i for i in insights if i.type == "anomaly"]
        assert [a.time_point for a in anomalies] == ["t07"]

    def test_small_change_is_not_a_trend(self):
        insights = generate_insights(_points([100, 101, 100, 105]), [])

        assert not [i for i in insights if i.type in ("spike", "drop")]


class TestAttributionAnalyzer:
    """Test suite for AttributionAnalyzer.analyze()."""

    @pytest.mark.asyncio
    async def test_analysis_without_model(self, monthly_totals):
        analysis = await AttributionAnalyzer().analyze(monthly_totals)

        assert len(analysis.turning_points) == 2
        assert [i.type for i in analysis.insights] == ["spike", "trend_change", "trend_change"]
        assert analysis.summary.startswith("共识别到 3 个关键洞察。")
        assert "整体上升 150.0%" in analysis.summary
        assert analysis.narrative is None

    @pytest.mark.asyncio
    async def test_model_narrative(self, mock_llm_provider, monthly_totals):
        mock_llm_provider.set_response("二月见顶后回落，四月创新高。")

        analysis = await AttributionAnalyzer(mock_llm_provider).analyze(monthly_totals, "月度销售")

        assert analysis.narrative == "二月见顶后回落，四月创新高。"
        prompt = mock_llm_provider.requests[0].messages[0].content
        assert "整体上升 150.0%" in prompt

    @pytest.mark.asyncio
    async def test_too_few_points(self):
        result = TabularResult(columns=["month", "total"], rows=[{"month": "2024-01", "total": 1}])

        assert await AttributionAnalyzer().analyze(result) is None


class TestReportGenerator:
    """Test suite for ReportGenerator.generate()."""

    @pytest.mark.asyncio
    async def test_basic_report_without_model(self, monthly_totals):
        report = await ReportGenerator().generate(monthly_totals, "月度销售", "SELECT ...")

        assert report.splitlines()[0] == "## 月度销售"
        assert "- 共返回 4 行数据" in report
        assert "- total：合计 70，平均 17.50，最大 25，最小 10" in report

    @pytest.mark.asyncio
    async def test_model_report(self, mock_llm_provider, monthly_totals):
        mock_llm_provider.set_response("## 销售报告\n\n四月最高。")

        report = await ReportGenerator(mock_llm_provider).generate(monthly_totals, "月度销售", "SELECT 1")

        assert report == "## 销售报告\n\n四月最高。"

    @pytest.mark.asyncio
    async def test_empty_result_has_no_report(self):
        assert await ReportGenerator().generate(TabularResult(columns=["a"]), "q", "sql") is None


class TestRunAugmentations:
    """Test suite for run_augmentations()."""

    @pytest.mark.asyncio
    async def test_failure_in_one_part_keeps_the_other(self, monthly_totals):
        analyzer = AsyncMock()
        analyzer.analyze.side_effect = RuntimeError("boom")

        attribution, report = await run_augmentations(
            monthly_totals, "月度销售", "SELECT 1", analyzer=analyzer, reporter=ReportGenerator()
        )

        assert attribution is None
        assert report.startswith("## 月度销售")

    @pytest.mark.asyncio
    async def test_nothing_requested(self, monthly_totals):
        assert await run_augmentations(monthly_totals, "q", "sql") == (None, None)
