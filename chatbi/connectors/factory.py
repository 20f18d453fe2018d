"""Connector factory for supported database URLs."""

from urllib.parse import unquote, urlparse

from chatbi.connectors.base import BaseConnector
from chatbi.connectors.mysql import MySQLConnector
from chatbi.connectors.postgres import PostgresConnector

_POSTGRES_SCHEMES = {"postgres", "postgresql"}
_MYSQL_SCHEMES = {"mysql"}


def infer_database_type(database_url: str) -> str:
    """Infer logical database type from connection URL scheme."""
    parsed = _parse_url(database_url)
    scheme = parsed.scheme.split("+")[0].lower()
    if scheme in _POSTGRES_SCHEMES:
        return "postgresql"
    if scheme in _MYSQL_SCHEMES:
        return "mysql"
    raise ValueError(f"Unsupported database URL scheme: {parsed.scheme}")


def resolve_database_type(database_type: str | None, database_url: str) -> str:
    if database_type:
        value = database_type.strip().lower()
        if value in {"postgres", "postgresql"}:
            return "postgresql"
        if value == "mysql":
            return "mysql"
        raise ValueError(f"Unsupported database type: {database_type}")
    return infer_database_type(database_url)


def create_connector(
    *,
    database_url: str,
    database_type: str | None = None,
    pool_size: int = 5,
    timeout: int = 30,
    **kwargs,
) -> BaseConnector:
    """Create a typed connector instance from URL + optional database_type."""
    parsed = _parse_url(database_url)
    if not parsed.hostname:
        raise ValueError("Invalid database URL: host is required.")

    target_type = resolve_database_type(database_type, database_url)
    db_name = parsed.path.lstrip("/")
    password = unquote(parsed.password) if parsed.password else ""

    if target_type == "postgresql":
        return PostgresConnector(
            host=parsed.hostname,
            port=parsed.port or 5432,
            database=db_name or "postgres",
            user=parsed.username or "postgres",
            password=password,
            pool_size=pool_size,
            timeout=timeout,
            **kwargs,
        )

    return MySQLConnector(
        host=parsed.hostname,
        port=parsed.port or 3306,
        database=db_name,
        user=parsed.username or "root",
        password=password,
        pool_size=pool_size,
        timeout=timeout,
        **kwargs,
    )


def _parse_url(database_url: str):
    normalized = database_url.replace("postgresql+asyncpg://", "postgresql://")
    normalized = normalized.replace("mysql+pymysql://", "mysql://")
    return urlparse(normalized)
