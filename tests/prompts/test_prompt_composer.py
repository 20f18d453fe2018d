"""Tests for system and correction prompt composition."""

import pytest

from chatbi.agents.join_checker import CrossTableNeed, JoinAssessment
from chatbi.agents.validator import InvalidColumn, SchemaValidationResult
from chatbi.prompts.composer import (
    PreconfiguredQuery,
    PromptComposer,
    PromptContext,
    format_schema_text,
)

CUSTOMERS_LINE = "- customers: id, name, email"


@pytest.fixture
def composer():
    return PromptComposer()


@pytest.fixture
def context(shop_schema, shop_whitelist):
    return PromptContext(
        dialect="mysql",
        database_name="shop",
        schema_tables=shop_schema,
        whitelist=shop_whitelist,
    )


class TestCompose:
    """Test suite for the system prompt."""

    def test_whitelist_opens_and_closes_the_prompt(self, composer, context):
        prompt = composer.compose(context)

        assert prompt.count(CUSTOMERS_LINE) == 2
        assert prompt.index(CUSTOMERS_LINE) < prompt.index("# 数据库结构")
        assert prompt.rindex(CUSTOMERS_LINE) > prompt.index("# 输出格式")
        assert "- 名称：shop" in prompt
        assert "- 类型：mysql" in prompt

    def test_relationships_are_inferred(self, composer, context):
        prompt = composer.compose(context)

        assert "- orders.customer_id 关联 customers.id" in prompt

    def test_join_instructions_only_when_needed(self, composer, context):
        assert "# 多表查询要求" not in composer.compose(context)

        context.cross_table = CrossTableNeed(
            needs_join=True, candidate_tables=["customers", "orders"], signals=["keyword_join"]
        )
        prompt = composer.compose(context)

        assert "# 多表查询要求" in prompt
        assert "可能涉及：customers、orders" in prompt
        assert "FROM a, b" in prompt

    def test_preconfigured_queries(self, composer, context):
        context.tools = [
            PreconfiguredQuery(name="monthly_sales", description="按月汇总销售额", sql="SELECT 1")
        ]

        prompt = composer.compose(context)

        assert "- monthly_sales：按月汇总销售额" in prompt
        assert '"toolCall"' in prompt
        assert "SELECT 1" not in prompt

    def test_chart_request_asks_for_visualization(self, composer, context):
        context.display_format = "chart"
        context.chart_type = "line"

        prompt = composer.compose(context)

        assert '"visualization": {"type": "line"' in prompt
        assert '图表类型使用 "line"' in prompt

    def test_table_request_forbids_visualization(self, composer, context):
        context.display_format = "table"

        prompt = composer.compose(context)

        assert '禁止输出 "visualization" 字段' in prompt
        assert '"visualization": {' not in prompt

    def test_query_shape_hint(self, composer, context):
        context.query_shape = "aggregate"

        assert "GROUP BY" in composer.compose(context)


class TestCorrectionPrompts:
    """Test suite for the follow-up prompts of the correction loop."""

    def test_schema_mismatch_lists_offending_names(self, composer, shop_whitelist):
        validation = SchemaValidationResult(
            valid=False,
            invalid_columns=[InvalidColumn(table="orders", column="amout")],
            errors=["字段 orders.amout 不存在"],
        )

        prompt = composer.schema_mismatch_prompt("SELECT amout FROM orders", validation, shop_whitelist)

        assert "不存在的名称：orders.amout" in prompt
        assert "- 字段 orders.amout 不存在" in prompt
        assert CUSTOMERS_LINE in prompt

    def test_execution_retry_names_the_identifier(self, composer, shop_whitelist):
        prompt = composer.execution_retry_prompt(
            "SELECT nmae FROM customers",
            "Unknown column 'nmae' in 'field list'",
            "nmae",
            shop_whitelist,
        )

        assert "Unknown column 'nmae' in 'field list'" in prompt
        assert '"nmae" 不存在' in prompt

    def test_join_regeneration(self, composer, shop_schema, shop_whitelist):
        prompt = composer.join_regeneration_prompt(
            "SELECT c.name, o.amount FROM customers c, orders o",
            JoinAssessment(
                should_regenerate=True,
                reason="comma_multi_table_without_join",
                tables=["customers", "orders"],
            ),
            CrossTableNeed(needs_join=True, candidate_tables=["customers", "orders"]),
            shop_schema,
            shop_whitelist,
        )

        assert "FROM customers c, orders o" in prompt
        assert "笛卡尔积" in prompt
        assert "orders.customer_id 关联 customers.id" in prompt


class TestStaticPrompts:
    """Test suite for schema text and the capability overview."""

    def test_format_schema_text(self, shop_schema):
        text = format_schema_text(shop_schema)

        assert text.startswith("表 customers：")
        assert "  - id (int, 主键, 非空)" in text
        assert "  - customer_id (int, 外键)" in text

    def test_format_empty_schema(self):
        assert "数据库结构为空" in format_schema_text([])

    def test_feature_list(self, composer, shop_schema):
        text = composer.feature_list(shop_schema)

        assert "- **customers**" in text
        assert "id、name、email" in text

    def test_feature_list_without_tables(self, composer):
        assert "当前连接还没有可见的数据表" in composer.feature_list([])

    def test_conversation_prompt(self, composer):
        assert "数据分析助手" in composer.conversation_prompt("shop")
