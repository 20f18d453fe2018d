"""Unit tests for the role permission store."""

import json
from unittest.mock import AsyncMock

import pytest

from chatbi.models.policy import ColumnPermission, DataPermission, TablePermission
from chatbi.security.store import PermissionStore


@pytest.fixture
def pool():
    return AsyncMock()


@pytest.fixture
def store(pool):
    return PermissionStore(pool=pool)


class TestPermissionStore:
    """Tests for loading and saving data permissions."""

    @pytest.mark.asyncio
    async def test_get_permission_decodes_tables(self, store, pool):
        pool.fetchrow.return_value = {
            "permission_id": "p-1",
            "name": "analysts",
            "role": "analyst",
            "organization_id": "org-1",
            "database_connection_id": "conn-1",
            "table_permissions": json.dumps(
                [
                    {
                        "table_name": "customers",
                        "column_permissions": [{"column_name": "ssn", "accessible": False}],
                    }
                ]
            ),
        }

        permission = await store.get_permission(
            organization_id="org-1", connection_id="conn-1", role="analyst"
        )

        assert permission.id == "p-1"
        assert permission.table_permissions[0].table_name == "customers"
        assert permission.table_permissions[0].column_permissions[0].accessible is False
        assert pool.fetchrow.await_args.args[1:] == ("conn-1", "analyst", "org-1")

    @pytest.mark.asyncio
    async def test_missing_permission_is_none(self, store, pool):
        pool.fetchrow.return_value = None

        permission = await store.get_permission(
            organization_id=None, connection_id="conn-1", role="viewer"
        )

        assert permission is None

    @pytest.mark.asyncio
    async def test_save_assigns_id_and_serializes_tables(self, store, pool):
        permission = DataPermission(
            role="analyst",
            database_connection_id="conn-1",
            table_permissions=[
                TablePermission(
                    table_name="customers",
                    column_permissions=[
                        ColumnPermission(column_name="email", masked=True, mask_type="partial")
                    ],
                )
            ],
        )

        saved = await store.save_permission(permission)

        assert saved.id
        args = pool.execute.await_args.args
        assert args[1] == saved.id
        stored_tables = json.loads(args[6])
        assert stored_tables[0]["column_permissions"][0]["mask_type"] == "partial"

    @pytest.mark.asyncio
    async def test_requires_initialize(self):
        store = PermissionStore(database_url="postgresql://example")

        with pytest.raises(RuntimeError, match="not initialized"):
            await store.get_permission(organization_id=None, connection_id="c", role="r")
