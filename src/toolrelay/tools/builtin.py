"""Schemas and registration for the built-in reference tools."""

from __future__ import annotations

from pathlib import Path

from ..capabilities.replace import MultiReplaceStringHandler, ReplaceStringHandler
from ..capabilities.web_fetch import WebFetchHandler
from ..capabilities.workspace import Workspace
from ..registry import ToolRegistry
from ..schema import FieldShape, FieldSpec, ToolCategory, ToolSchema
from ..settings import EngineSettings

__all__ = [
    "REPLACE_STRING_SCHEMA",
    "MULTI_REPLACE_STRING_SCHEMA",
    "WEB_FETCH_SCHEMA",
    "BUILTIN_SCHEMAS",
    "register_builtin_tools",
]

_EXPLANATION = FieldSpec(
    "explanation",
    required=False,
    description="A short explanation of the edit being made.",
)

REPLACE_STRING_SCHEMA = ToolSchema(
    name="replace_string_in_file",
    description=(
        "Replace every exact occurrence of oldString with newString in one file. "
        "Include enough surrounding context in oldString to make the match unambiguous."
    ),
    category=ToolCategory.FILESYSTEM,
    fields=(
        _EXPLANATION,
        FieldSpec("filePath", description="Path of the file to edit, relative to the workspace.", strip=True),
        FieldSpec("oldString", description="The exact literal text to replace."),
        FieldSpec("newString", description="The replacement text."),
    ),
)

MULTI_REPLACE_STRING_SCHEMA = ToolSchema(
    name="multi_replace_string_in_file",
    description=(
        "Apply several string replacements, possibly across files. Successful replacements "
        "are committed even when others fail; nothing is written if all of them fail."
    ),
    category=ToolCategory.FILESYSTEM,
    fields=(
        _EXPLANATION,
        FieldSpec(
            "replacements",
            shape=FieldShape.ARRAY,
            description="Replacement operations, given as <replacement> elements or a JSON array.",
            min_items=1,
            item_tag="replacement",
            item_fields=(
                FieldSpec("filePath", description="Path of the file to edit.", strip=True),
                FieldSpec("oldString", description="Text (or pattern, with useRegex) to replace."),
                FieldSpec("newString", description="Replacement text; $1 refers to group 1 in regex mode."),
                FieldSpec("caseInsensitive", shape=FieldShape.BOOLEAN, required=False),
                FieldSpec("useRegex", shape=FieldShape.BOOLEAN, required=False),
                FieldSpec(
                    "order",
                    shape=FieldShape.NUMBER,
                    required=False,
                    description="Lower values run first; ties keep request order.",
                ),
            ),
        ),
    ),
)

WEB_FETCH_SCHEMA = ToolSchema(
    name="web_fetch",
    description="Fetch a web page and return its readable text content.",
    category=ToolCategory.NETWORK,
    timeout=30.0,
    fields=(
        FieldSpec("url", description="Absolute http(s) URL to fetch.", format="uri", strip=True),
    ),
)

BUILTIN_SCHEMAS: tuple[ToolSchema, ...] = (
    REPLACE_STRING_SCHEMA,
    MULTI_REPLACE_STRING_SCHEMA,
    WEB_FETCH_SCHEMA,
)


def register_builtin_tools(
    registry: ToolRegistry,
    workspace_root: Path | str,
    *,
    settings: EngineSettings | None = None,
    web_fetch: WebFetchHandler | None = None,
) -> WebFetchHandler:
    """Register the three built-in tools on ``registry``.

    Returns the ``web_fetch`` handler so the caller can ``aclose()`` it.
    """

    workspace = Workspace(workspace_root)
    fetcher = web_fetch or WebFetchHandler(settings=settings)
    registry.register(REPLACE_STRING_SCHEMA, ReplaceStringHandler(workspace))
    registry.register(MULTI_REPLACE_STRING_SCHEMA, MultiReplaceStringHandler(workspace))
    registry.register(WEB_FETCH_SCHEMA, fetcher)
    return fetcher
