"""
Unit tests for field whitelist construction.

The whitelist prefers rows returned by the schema query, falls back to the
cached schema, and refuses to exist when both are empty.
"""

import pytest
from pydantic import ValidationError

from chatbi.models.agent import WhitelistEmptyError
from chatbi.models.schema import Column, FieldWhitelist, Table
from chatbi.schema.whitelist import PLACEHOLDER_TABLE, build_field_whitelist


class TestBuildFieldWhitelist:
    """Test suite for build_field_whitelist()."""

    @pytest.fixture
    def metadata_rows(self):
        return (
            ["TABLE_NAME", "COLUMN_NAME", "DATA_TYPE"],
            [
                {"TABLE_NAME": "customers", "COLUMN_NAME": "id", "DATA_TYPE": "int"},
                {"TABLE_NAME": "customers", "COLUMN_NAME": "name", "DATA_TYPE": "varchar"},
                {"TABLE_NAME": "customers", "COLUMN_NAME": "name", "DATA_TYPE": "varchar"},
                {"TABLE_NAME": "orders", "COLUMN_NAME": "amount", "DATA_TYPE": "decimal"},
            ],
        )

    def test_rows_take_priority_over_schema(self, metadata_rows, shop_schema):
        columns, rows = metadata_rows

        whitelist = build_field_whitelist(columns, rows, shop_schema)

        assert whitelist.source == "query_result"
        assert dict(whitelist.tables) == {"customers": ("id", "name"), "orders": ("amount",)}

    def test_falls_back_to_schema(self, shop_schema):
        whitelist = build_field_whitelist([], [], shop_schema)

        assert whitelist.source == "schema"
        assert whitelist.columns_for("orders") == ("id", "customer_id", "amount", "created_at")

    def test_data_rows_whitelist_result_columns(self):
        whitelist = build_field_whitelist(
            ["id", "name"],
            [{"id": 1, "name": "Ada"}],
            None,
            sql="SELECT id, name FROM customers",
        )

        assert whitelist.source == "result_columns"
        assert dict(whitelist.tables) == {"customers": ("id", "name")}

    def test_data_rows_without_sql_use_placeholder_table(self):
        whitelist = build_field_whitelist(["id"], [{"id": 1}], None)

        assert whitelist.table_names() == [PLACEHOLDER_TABLE]

    def test_zero_rows_and_empty_schema_raise(self):
        with pytest.raises(WhitelistEmptyError) as exc_info:
            build_field_whitelist(["TABLE_NAME", "COLUMN_NAME"], [], [])

        assert "字段白名单" in exc_info.value.message

    def test_schema_tables_without_columns_count_as_empty(self):
        with pytest.raises(WhitelistEmptyError):
            build_field_whitelist(None, None, [Table(name="empty")])


class TestFieldWhitelist:
    """Test suite for FieldWhitelist lookups."""

    def test_case_insensitive_lookup(self, shop_whitelist):
        assert shop_whitelist.allows("CUSTOMERS", "Email")
        assert not shop_whitelist.allows("customers", "phone")
        assert shop_whitelist.columns_for("shop.customers") == ("id", "name", "email")

    def test_restrict_to_filtered_schema(self, shop_whitelist):
        filtered = [Table(name="customers", columns=[Column(name="id"), Column(name="name")])]

        restricted = shop_whitelist.restrict_to(filtered)

        assert dict(restricted.tables) == {"customers": ("id", "name")}
        assert restricted.source == shop_whitelist.source

    def test_render_text(self):
        whitelist = FieldWhitelist(tables={"customers": ("id", "name"), "orders": ()})

        assert whitelist.render_text() == "- customers: id, name"
        assert not whitelist.is_empty

    def test_is_immutable(self, shop_whitelist):
        with pytest.raises(ValidationError):
            shop_whitelist.source = "query_result"
