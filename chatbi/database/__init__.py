"""Database connection registry."""

from chatbi.database.registry import ConnectionRegistry

__all__ = ["ConnectionRegistry"]
