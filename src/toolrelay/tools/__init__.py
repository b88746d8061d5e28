"""Built-in reference tools."""

from .builtin import (
    BUILTIN_SCHEMAS,
    MULTI_REPLACE_STRING_SCHEMA,
    REPLACE_STRING_SCHEMA,
    WEB_FETCH_SCHEMA,
    register_builtin_tools,
)

__all__ = [
    "BUILTIN_SCHEMAS",
    "REPLACE_STRING_SCHEMA",
    "MULTI_REPLACE_STRING_SCHEMA",
    "WEB_FETCH_SCHEMA",
    "register_builtin_tools",
]
