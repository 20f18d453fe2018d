"""
Unit Tests for Database Registry Endpoints

Tests /api/v1/databases with a mocked ConnectionRegistry.
"""

from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from chatbi.api.main import app, app_state
from chatbi.connectors.base import ConnectionError as ConnectorConnectionError
from chatbi.models.database import DatabaseConnection

CONNECTION_ID = UUID("3a1f2d3e-4b5c-6d7e-8f90-1234567890ab")


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def registry():
    registry = AsyncMock()
    with patch.dict(app_state, {"registry": registry}):
        yield registry


@pytest.fixture
def connection():
    return DatabaseConnection(
        connection_id=CONNECTION_ID,
        name="shop",
        database_url="mysql://reader:secret@db:3306/shop",
        database_type="mysql",
        schema_query="SELECT table_name, column_name FROM information_schema.columns",
    )


class TestDatabaseEndpoints:
    """Test suite for the connection registry routes."""

    def test_create_connection(self, client, registry, connection):
        registry.add_connection.return_value = connection

        response = client.post(
            "/api/v1/databases",
            json={
                "name": "shop",
                "database_url": "mysql://reader:secret@db:3306/shop",
                "schema_query": "SELECT table_name, column_name FROM information_schema.columns",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["connection_id"] == str(CONNECTION_ID)
        assert "secret" not in data["database_url"]
        kwargs = registry.add_connection.await_args.kwargs
        assert kwargs["database_url"] == "mysql://reader:secret@db:3306/shop"
        assert kwargs["database_type"] is None

    def test_create_connection_bad_url(self, client, registry):
        registry.add_connection.side_effect = ValueError("Unsupported database URL scheme")

        response = client.post("/api/v1/databases", json={"name": "x", "database_url": "sqlite:///x.db"})

        assert response.status_code == 400
        assert "Unsupported" in response.json()["detail"]

    def test_create_connection_unreachable(self, client, registry):
        registry.add_connection.side_effect = ConnectorConnectionError("timeout")

        response = client.post(
            "/api/v1/databases", json={"name": "x", "database_url": "postgresql://db/x"}
        )

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Failed to connect to database")

    def test_list_connections_by_organization(self, client, registry, connection):
        registry.list_connections.return_value = [connection]

        response = client.get("/api/v1/databases", headers={"X-Organization-Id": "org-1"})

        assert response.status_code == 200
        assert [c["name"] for c in response.json()] == ["shop"]
        registry.list_connections.assert_awaited_once_with(organization_id="org-1")

    def test_get_unknown_connection(self, client, registry):
        registry.get_connection.side_effect = KeyError(str(CONNECTION_ID))

        response = client.get(f"/api/v1/databases/{CONNECTION_ID}")

        assert response.status_code == 404

    def test_registry_unavailable(self, client):
        with patch.dict(app_state, {"registry": None}):
            response = client.get("/api/v1/databases")

        assert response.status_code == 503
