"""Live schema introspection and field whitelisting."""

from chatbi.schema.introspector import SchemaIntrospector
from chatbi.schema.whitelist import build_field_whitelist

__all__ = ["SchemaIntrospector", "build_field_whitelist"]
