"""
Unit tests for access policy enforcement.

Tests cover:
1. Permission compilation and lookup (deny by default, admin bypass)
2. Schema and whitelist filtering before prompting
3. Table/operation checks and row-level predicates on generated SQL
4. The pre-execution column check
"""

from unittest.mock import AsyncMock

import pytest

from chatbi.models.chat import UserContext
from chatbi.models.policy import (
    ColumnPermission,
    DataPermission,
    TablePermission,
    UserRelationFields,
)
from chatbi.models.schema import Column, FieldWhitelist, Table
from chatbi.security.policy import (
    NO_PERMISSION_MESSAGE,
    AccessDeniedError,
    AccessPolicyFilter,
    SQLPermissionError,
    apply_to_sql,
    build_row_filter,
    compile_permission,
    enforce_column_access,
    filter_schema,
    filter_whitelist,
)


@pytest.fixture
def analyst():
    return UserContext(user_id="u-1", role="analyst", organization_id="org-1", email="u1@example.com")


@pytest.fixture
def analyst_permission():
    return DataPermission(
        role="analyst",
        organization_id="org-1",
        database_connection_id="conn-1",
        table_permissions=[
            TablePermission(
                table_name="customers",
                column_permissions=[
                    ColumnPermission(column_name="email", masked=True, mask_type="partial"),
                    ColumnPermission(column_name="ssn", accessible=False),
                ],
            ),
            TablePermission(
                table_name="orders",
                data_scope="user_related",
                user_relation_fields=UserRelationFields(user_id="sales_user_id"),
            ),
            TablePermission(table_name="salaries", enabled=False),
        ],
    )


@pytest.fixture
def analyst_policy(analyst_permission):
    return compile_permission(analyst_permission)


@pytest.fixture
def customers_only_policy():
    return compile_permission(
        DataPermission(
            role="analyst",
            organization_id="org-1",
            database_connection_id="conn-1",
            table_permissions=[TablePermission(table_name="customers")],
        )
    )


@pytest.fixture
def crm_schema():
    return [
        Table(
            name="customers",
            columns=[Column(name="id"), Column(name="name"), Column(name="email"), Column(name="ssn")],
        ),
        Table(
            name="orders",
            columns=[Column(name="id"), Column(name="customer_id"), Column(name="sales_user_id"), Column(name="amount")],
        ),
        Table(name="salaries", columns=[Column(name="employee"), Column(name="amount")]),
    ]


class TestCompilePolicy:
    """Test suite for compile_permission() and AccessPolicyFilter.compile()."""

    def test_compiled_tables_and_columns(self, analyst_policy):
        assert analyst_policy.allowed_tables == {"customers", "orders"}
        assert analyst_policy.inaccessible_columns("customers") == {"ssn"}
        assert analyst_policy.masking_rules == {"email": "partial"}
        assert not analyst_policy.table_allowed("salaries")
        assert analyst_policy.table_allowed("shop.customers")

    def test_admin_policy_allows_everything(self, admin_policy):
        assert admin_policy.is_admin
        assert admin_policy.table_allowed("anything")

    @pytest.mark.asyncio
    async def test_admin_bypasses_permission_store(self, admin_user):
        store = AsyncMock()
        policy_filter = AccessPolicyFilter(store)

        policy = await policy_filter.compile(admin_user, "conn-1")

        assert policy.is_admin
        store.get_permission.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_permission_is_denied(self, analyst):
        store = AsyncMock()
        store.get_permission.return_value = None

        with pytest.raises(AccessDeniedError) as exc_info:
            await AccessPolicyFilter(store).compile(analyst, "conn-1")

        assert exc_info.value.message == NO_PERMISSION_MESSAGE
        store.get_permission.assert_awaited_once_with(
            organization_id="org-1", connection_id="conn-1", role="analyst"
        )

    @pytest.mark.asyncio
    async def test_no_store_is_denied(self, analyst):
        with pytest.raises(AccessDeniedError):
            await AccessPolicyFilter().compile(analyst, "conn-1")

    @pytest.mark.asyncio
    async def test_stored_permission_is_compiled(self, analyst, analyst_permission):
        store = AsyncMock()
        store.get_permission.return_value = analyst_permission

        policy = await AccessPolicyFilter(store).compile(analyst, "conn-1", "org-2")

        assert not policy.is_admin
        assert policy.allowed_tables == {"customers", "orders"}
        assert store.get_permission.await_args.kwargs["organization_id"] == "org-2"


class TestFiltering:
    """Test suite for filter_schema() and filter_whitelist()."""

    def test_filter_schema(self, crm_schema, analyst_policy):
        filtered = filter_schema(crm_schema, analyst_policy)

        assert [t.name for t in filtered] == ["customers", "orders"]
        assert filtered[0].column_names() == ["id", "name", "email"]
        # the input schema is not mutated
        assert crm_schema[0].column_names() == ["id", "name", "email", "ssn"]

    def test_filter_whitelist(self, analyst_policy):
        whitelist = FieldWhitelist(
            tables={"customers": ("id", "ssn"), "salaries": ("amount",), "orders": ("id",)},
            source="query_result",
        )

        filtered = filter_whitelist(whitelist, analyst_policy)

        assert dict(filtered.tables) == {"customers": ("id",), "orders": ("id",)}
        assert filtered.source == "query_result"

    def test_admin_sees_unfiltered_schema(self, crm_schema, admin_policy):
        assert filter_schema(crm_schema, admin_policy) is crm_schema


class TestApplyToSQL:
    """Test suite for table checks and row-level predicates."""

    def test_disabled_table_is_denied(self, analyst_policy, analyst):
        with pytest.raises(AccessDeniedError) as exc_info:
            apply_to_sql("SELECT employee FROM salaries", analyst_policy, analyst)

        assert exc_info.value.restricted_tables == ["salaries"]

    def test_unknown_table_is_denied(self, analyst_policy, analyst):
        with pytest.raises(AccessDeniedError):
            apply_to_sql("SELECT * FROM invoices", analyst_policy, analyst)

    def test_unrestricted_table_is_unchanged(self, analyst_policy, analyst):
        applied = apply_to_sql("SELECT name FROM customers;", analyst_policy, analyst)

        assert applied.modified_sql == "SELECT name FROM customers"
        assert applied.applied_filters == []

    def test_user_related_table_gets_predicate(self, analyst_policy, analyst):
        applied = apply_to_sql(
            "SELECT id, amount FROM orders ORDER BY amount DESC", analyst_policy, analyst
        )

        assert applied.modified_sql == (
            "SELECT id, amount FROM orders WHERE orders.sales_user_id = 'u-1' ORDER BY amount DESC"
        )
        assert applied.applied_filters == ["orders.sales_user_id = 'u-1'"]

    def test_existing_where_is_preserved(self, analyst_policy, analyst):
        applied = apply_to_sql(
            "SELECT o.id FROM orders o WHERE o.amount > 10", analyst_policy, analyst
        )

        assert applied.modified_sql == (
            "SELECT o.id FROM orders o WHERE (o.amount > 10) AND (o.sales_user_id = 'u-1')"
        )

    def test_subquery_tables_are_wrapped(self, analyst_policy, analyst):
        sql = "SELECT c.name FROM customers c WHERE c.id IN (SELECT o.customer_id FROM orders o)"

        applied = apply_to_sql(sql, analyst_policy, analyst)

        assert "(SELECT * FROM orders o WHERE o.sales_user_id = 'u-1') o" in applied.modified_sql

    def test_admin_sql_is_untouched(self, admin_policy, admin_user):
        sql = "SELECT * FROM salaries"
        assert apply_to_sql(sql, admin_policy, admin_user).modified_sql == sql

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT c.name, s.amount FROM customers c STRAIGHT_JOIN salaries s ON c.id = s.employee",
            "SELECT c.name, s.amount FROM customers c JOIN (salaries s) ON c.id = s.employee",
            "SELECT c.name FROM customers c JOIN (orders o JOIN salaries s ON o.id = s.employee) "
            "ON c.id = o.customer_id",
            "SELECT c.name FROM customers c FORCE INDEX (PRIMARY) STRAIGHT_JOIN salaries s "
            "ON c.id = s.employee",
        ],
    )
    def test_mysql_join_forms_are_checked(self, customers_only_policy, analyst, sql):
        with pytest.raises(AccessDeniedError) as exc_info:
            apply_to_sql(sql, customers_only_policy, analyst)

        assert "salaries" in exc_info.value.restricted_tables

    def test_unrecognized_from_text_is_denied(self, customers_only_policy, analyst):
        with pytest.raises(AccessDeniedError, match="无法识别"):
            apply_to_sql(
                "SELECT name FROM customers c TABLESAMPLE SYSTEM (10)", customers_only_policy, analyst
            )

    def test_allowed_table_with_index_hint_passes(self, customers_only_policy, analyst):
        sql = "SELECT name FROM customers USE INDEX (idx_name) WHERE name LIKE 'A%'"

        applied = apply_to_sql(sql, customers_only_policy, analyst)

        assert applied.modified_sql == sql


class TestBuildRowFilter:
    """Test suite for build_row_filter()."""

    def test_scope_all_has_no_filter(self, analyst):
        assert build_row_filter(TablePermission(table_name="t"), analyst, "t") is None

    def test_no_relatable_user_value_matches_nothing(self):
        permission = TablePermission(
            table_name="orders",
            data_scope="user_related",
            user_relation_fields=UserRelationFields(user_email="owner_email"),
        )
        user = UserContext(user_id="u-2", role="analyst")

        assert build_row_filter(permission, user, "orders") == "1 = 0"

    def test_several_relation_fields_are_ored(self, analyst):
        permission = TablePermission(
            table_name="orders",
            data_scope="user_related",
            user_relation_fields=UserRelationFields(user_id="owner_id", user_email="owner_email"),
        )

        assert build_row_filter(permission, analyst, "o") == (
            "(o.owner_id = 'u-1' OR o.owner_email = 'u1@example.com')"
        )

    def test_custom_predicate_placeholders_are_escaped(self):
        permission = TablePermission(
            table_name="visits",
            data_scope="user_related",
            row_level_filter="rep_name = '{{user_name}}'",
        )
        user = UserContext(user_id="u-3", name="O'Brien")

        assert build_row_filter(permission, user, "visits") == "rep_name = 'O''Brien'"


class TestEnforceColumnAccess:
    """Test suite for the pre-execution column check."""

    def test_accessible_columns_pass(self, crm_schema, analyst_policy):
        enforce_column_access("SELECT name, email FROM customers", crm_schema, analyst_policy)

    def test_inaccessible_column_is_blocked(self, crm_schema, analyst_policy):
        with pytest.raises(SQLPermissionError) as exc_info:
            enforce_column_access("SELECT name, ssn FROM customers", crm_schema, analyst_policy)

        assert exc_info.value.reason == "column_access_blocked"
        assert exc_info.value.blocked_columns == ["customers.ssn"]
        assert not exc_info.value.recoverable

    def test_aliased_reference_is_blocked(self, crm_schema, analyst_policy):
        sql = "SELECT o.amount FROM orders o JOIN customers c ON c.id = o.customer_id WHERE c.ssn IS NOT NULL"

        with pytest.raises(SQLPermissionError) as exc_info:
            enforce_column_access(sql, crm_schema, analyst_policy)

        assert exc_info.value.blocked_columns == ["customers.ssn"]

    def test_select_star_over_hidden_column_is_blocked(self, crm_schema, analyst_policy):
        with pytest.raises(SQLPermissionError) as exc_info:
            enforce_column_access("SELECT * FROM customers", crm_schema, analyst_policy)

        assert exc_info.value.reason == "select_star_blocked"
        assert exc_info.value.blocked_columns == ["customers.ssn"]

    def test_select_star_over_open_table_passes(self, crm_schema, analyst_policy):
        enforce_column_access("SELECT o.* FROM orders o", crm_schema, analyst_policy)

    def test_admin_is_never_blocked(self, crm_schema, admin_policy):
        enforce_column_access("SELECT ssn FROM customers", crm_schema, admin_policy)
