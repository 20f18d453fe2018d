"""Unit tests for chat command parsing."""

from chatbi.agents.commands import parse_command


class TestParseCommand:
    """Test suite for parse_command()."""

    def test_leading_chart_command(self):
        result = parse_command("/图表 每月订单数量")

        assert result.command == "chart"
        assert result.chart_type is None
        assert result.question == "每月订单数量"
        assert result.original_input == "/图表 每月订单数量"

    def test_trailing_command_with_at_sign(self):
        result = parse_command("每月订单数量 @表格")

        assert result.command == "table"
        assert result.question == "每月订单数量"

    def test_specific_chart_type(self):
        result = parse_command("/折线图 每月订单数量")

        assert result.command == "chart"
        assert result.chart_type == "line"

    def test_longest_chart_command_wins(self):
        result = parse_command("/横向柱状图 各地区销售额")

        assert result.chart_type == "bar-horizontal"
        assert result.question == "各地区销售额"

    def test_report_command(self):
        result = parse_command("/报表 本季度销售情况")

        assert result.command == "report"
        assert result.question == "本季度销售情况"

    def test_entity_report_phrase(self):
        result = parse_command("华东区销售报告")

        assert result.command == "report"
        assert result.question == "华东区销售报告"

    def test_plain_question_has_no_command(self):
        result = parse_command("  统计客户数量  ")

        assert result.command is None
        assert result.question == "统计客户数量"

    def test_command_without_question_is_ignored(self):
        result = parse_command("/图表")

        assert result.command is None
        assert result.question == "/图表"

    def test_empty_input(self):
        result = parse_command(None)

        assert result.command is None
        assert result.question == ""
