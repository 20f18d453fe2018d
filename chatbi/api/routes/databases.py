"""Database connection registry routes."""

from fastapi import APIRouter, Header, HTTPException, status

from chatbi.connectors.base import ConnectionError as ConnectorConnectionError
from chatbi.database.registry import ConnectionRegistry
from chatbi.models.database import DatabaseConnection, DatabaseConnectionCreate

router = APIRouter()


def _get_registry() -> ConnectionRegistry:
    from chatbi.api.main import app_state

    registry = app_state.get("registry")
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database registry is unavailable. Ensure DATABASE_CREDENTIALS_KEY is set.",
        )
    return registry


@router.post("/databases", response_model=DatabaseConnection, status_code=status.HTTP_201_CREATED)
async def create_database_connection(payload: DatabaseConnectionCreate) -> DatabaseConnection:
    """Register a target database connection."""
    registry = _get_registry()
    try:
        return await registry.add_connection(
            name=payload.name,
            database_url=payload.database_url.get_secret_value(),
            database_type=payload.database_type,
            organization_id=payload.organization_id,
            schema_query=payload.schema_query,
            preconfigured_queries=payload.preconfigured_queries,
            description=payload.description,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConnectorConnectionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Failed to connect to database: {exc}",
        ) from exc


@router.get("/databases", response_model=list[DatabaseConnection])
async def list_database_connections(
    x_organization_id: str | None = Header(None, alias="X-Organization-Id"),
) -> list[DatabaseConnection]:
    registry = _get_registry()
    return await registry.list_connections(organization_id=x_organization_id)


@router.get("/databases/{connection_id}", response_model=DatabaseConnection)
async def get_database_connection(connection_id: str) -> DatabaseConnection:
    registry = _get_registry()
    try:
        return await registry.get_connection(connection_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Database connection not found: {connection_id}",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
