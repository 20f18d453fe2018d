"""
Unit tests for SQL validation.

Tests cover:
1. Statement-type gate (read-only, single statement, metadata catalogs)
2. Schema reference validation (tables, columns, aliases, CTEs)
3. SELECT * expansion against the field whitelist
"""

import pytest

from chatbi.agents.validator import (
    expand_select_star,
    has_select_star,
    reads_metadata,
    validate_schema,
    validate_sql,
)


class TestValidateSQL:
    """Test suite for the statement-type gate."""

    # ========================================================================
    # Allowed statements
    # ========================================================================

    def test_simple_select_is_valid(self):
        assert validate_sql("SELECT id, name FROM customers").valid

    def test_trailing_semicolon_is_tolerated(self):
        assert validate_sql("SELECT id FROM customers;").valid

    def test_cte_select_is_valid(self):
        sql = "WITH big AS (SELECT customer_id FROM orders) SELECT * FROM big"
        assert validate_sql(sql).valid

    def test_replace_function_is_allowed(self):
        assert validate_sql("SELECT REPLACE(name, 'a', 'b') FROM customers").valid

    def test_forbidden_word_inside_literal_is_ignored(self):
        sql = "SELECT id FROM customers WHERE note = 'please delete me'"
        assert validate_sql(sql).valid

    # ========================================================================
    # Rejected statements
    # ========================================================================

    @pytest.mark.parametrize("sql", [None, "", "   "])
    def test_empty_sql_is_rejected(self, sql):
        result = validate_sql(sql)

        assert not result.valid
        assert result.error == "SQL 查询不能为空"

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM customers",
            "UPDATE customers SET name = 'x'",
            "INSERT INTO customers (id) VALUES (1)",
            "DROP TABLE customers",
        ],
    )
    def test_write_statements_are_rejected(self, sql):
        result = validate_sql(sql)

        assert not result.valid
        assert "SELECT" in result.error

    def test_multiple_statements_are_rejected(self):
        result = validate_sql("SELECT 1; DROP TABLE customers")

        assert not result.valid
        assert "多个" in result.error

    def test_forbidden_keyword_inside_select_is_rejected(self):
        result = validate_sql("SELECT id FROM customers WHERE id IN (DELETE FROM orders)")

        assert not result.valid
        assert "DELETE" in result.error

    def test_introspection_only_when_allowed(self):
        assert not validate_sql("SHOW TABLES").valid
        assert validate_sql("SHOW TABLES", allow_schema_introspection=True).valid
        assert validate_sql("DESCRIBE customers", allow_schema_introspection=True).valid

    def test_metadata_select_blocked_on_request(self):
        sql = "SELECT table_name FROM information_schema.tables"

        assert validate_sql(sql).valid
        assert not validate_sql(sql, block_metadata_queries=True).valid
        assert validate_sql(
            sql, allow_schema_introspection=True, block_metadata_queries=True
        ).valid

    def test_reads_metadata(self):
        assert reads_metadata("SELECT * FROM information_schema.columns")
        assert reads_metadata("select relname from pg_catalog.pg_class")
        assert not reads_metadata("SELECT 'information_schema' AS label FROM customers")
        assert not reads_metadata(None)

    def test_validation_is_deterministic(self):
        sql = "SELECT id FROM customers WHERE id IN (DELETE FROM orders)"
        assert validate_sql(sql) == validate_sql(sql)


class TestValidateSchema:
    """Test suite for table/column reference checks."""

    def test_known_references_are_valid(self, shop_schema):
        sql = (
            "SELECT c.name, o.amount FROM customers c "
            "JOIN orders o ON c.id = o.customer_id WHERE o.amount > 100"
        )
        assert validate_schema(sql, shop_schema).valid

    def test_unknown_table(self, shop_schema):
        result = validate_schema("SELECT id FROM invoices", shop_schema)

        assert not result.valid
        assert result.invalid_tables == ["invoices"]
        assert result.invalid_names() == ["invoices"]

    def test_unknown_qualified_column(self, shop_schema):
        result = validate_schema("SELECT c.phone FROM customers c", shop_schema)

        assert not result.valid
        assert [c.label() for c in result.invalid_columns] == ["customers.phone"]
        assert 'c.phone' in result.errors[0]

    def test_unknown_unqualified_column(self, shop_schema):
        result = validate_schema("SELECT phone FROM customers", shop_schema)

        assert result.invalid_names() == ["customers.phone"]

    def test_output_alias_in_order_by_is_not_a_column(self, shop_schema):
        sql = (
            "SELECT name, COUNT(*) AS total FROM customers "
            "GROUP BY name ORDER BY total DESC"
        )
        assert validate_schema(sql, shop_schema).valid

    def test_cte_columns_are_not_checked_against_schema(self, shop_schema):
        sql = (
            "WITH big AS (SELECT customer_id, amount FROM orders WHERE amount > 100) "
            "SELECT b.customer_id FROM big b"
        )
        assert validate_schema(sql, shop_schema).valid

    def test_bad_column_inside_cte_is_found(self, shop_schema):
        sql = "WITH big AS (SELECT customer_id, discount FROM orders) SELECT * FROM big"

        result = validate_schema(sql, shop_schema)

        assert result.invalid_names() == ["orders.discount"]

    def test_empty_schema_skips_validation(self):
        assert validate_schema("SELECT anything FROM nowhere", []).valid

    def test_repeated_checks_agree(self, shop_schema):
        sql = (
            "SELECT c.phone, o.amount FROM customers c STRAIGHT_JOIN orders o "
            "ON c.id = o.customer_id WHERE o.discount > 0"
        )

        first = validate_schema(sql, shop_schema)
        second = validate_schema(sql, shop_schema)

        assert first == second
        assert first.invalid_names() == ["customers.phone", "orders.discount"]


class TestExpandSelectStar:
    """Test suite for SELECT * expansion."""

    def test_single_table_star(self, shop_whitelist):
        sql = expand_select_star("SELECT * FROM customers", shop_whitelist)

        assert sql == "SELECT id, name, email FROM customers"

    def test_expansion_is_idempotent(self, shop_whitelist):
        once = expand_select_star("SELECT * FROM customers;", shop_whitelist)

        assert expand_select_star(once, shop_whitelist) == once
        assert not has_select_star(once)

    def test_join_star_is_qualified(self, shop_whitelist):
        sql = expand_select_star(
            "SELECT * FROM customers c JOIN orders o ON c.id = o.customer_id",
            shop_whitelist,
        )

        assert sql.startswith(
            "SELECT c.id, c.name, c.email, o.id, o.customer_id, o.amount, o.created_at FROM"
        )

    def test_qualified_star(self, shop_schema):
        sql = expand_select_star("SELECT c.* FROM customers c LIMIT 10", shop_schema)

        assert sql == "SELECT c.id, c.name, c.email FROM customers c LIMIT 10"

    def test_distinct_is_preserved(self, shop_whitelist):
        sql = expand_select_star("SELECT DISTINCT * FROM customers", shop_whitelist)

        assert sql == "SELECT DISTINCT id, name, email FROM customers"

    def test_unknown_table_is_left_alone(self, shop_whitelist):
        assert expand_select_star("SELECT * FROM invoices", shop_whitelist) == (
            "SELECT * FROM invoices"
        )

    def test_has_select_star(self):
        assert has_select_star("SELECT * FROM customers")
        assert has_select_star("SELECT c.* FROM customers c")
        assert not has_select_star("SELECT COUNT(*) FROM customers")
