"""Access policy, masking and permission storage."""

from chatbi.security.masking import apply_masking
from chatbi.security.policy import (
    AccessDeniedError,
    AccessPolicyFilter,
    SQLPermissionError,
    apply_to_sql,
    enforce_column_access,
    filter_schema,
    filter_whitelist,
)

__all__ = [
    "AccessDeniedError",
    "AccessPolicyFilter",
    "SQLPermissionError",
    "apply_masking",
    "apply_to_sql",
    "enforce_column_access",
    "filter_schema",
    "filter_whitelist",
]
