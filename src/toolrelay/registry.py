"""Registry of tool schemas and their capability handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping

from .errors import DuplicateToolError, RegistryFrozenError, ToolNotFoundError
from .handlers import CapabilityHandler, FunctionHandler
from .outcomes import ErrorKind
from .parsing.decoding import default_decoder_for
from .schema import ToolSchema

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        schema: Tool schema with every structural field's decoder resolved.
        handler: Capability handler invoked by dispatch.
        metadata: Additional registration metadata.
    """

    schema: ToolSchema
    handler: CapabilityHandler
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.schema.name


def _resolve_decoders(schema: ToolSchema) -> ToolSchema:
    resolved = []
    for spec in schema.fields:
        if spec.shape.is_structural and spec.decoder is None:
            spec = replace(spec, decoder=default_decoder_for(spec))
        resolved.append(spec)
    return replace(schema, fields=tuple(resolved))


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name to (schema, handler) map, read-only once frozen.

    Tools are registered at startup; :meth:`freeze` is called when a
    conversation starts, after which the registry rejects changes.

    Example:
        registry = ToolRegistry()
        registry.register(schema, handler)
        registry.freeze()
        registration = registry.get_required("replace_string_in_file")
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        if not self._frozen:
            LOGGER.debug("Freezing tool registry with %d tool(s)", len(self._tools))
        self._frozen = True

    def register(
        self,
        schema: ToolSchema,
        handler: CapabilityHandler | Callable[..., Any],
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool.

        Args:
            schema: The tool schema. Structural fields without a decoder
                get the default JSON/repeating-element decoder.
            handler: A capability handler, or a plain function which is
                wrapped in :class:`FunctionHandler`.
            allow_override: Replace an existing registration of the same name.
            metadata: Additional metadata to store with registration.

        Returns:
            The tool registration record.

        Raises:
            RegistryFrozenError: If the registry is frozen.
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        if self._frozen:
            raise RegistryFrozenError(details={"name": schema.name})
        name = schema.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name=name)
        if not hasattr(handler, "execute"):
            if not callable(handler):
                raise TypeError(f"Handler for {name} must be callable or define execute()")
            handler = FunctionHandler(handler)
        registration = ToolRegistration(
            schema=_resolve_decoders(schema),
            handler=handler,  # type: ignore[arg-type]
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def register_function(
        self,
        schema: ToolSchema,
        func: Callable[..., Any],
        *,
        timeout: float | None = None,
        transient_kinds: frozenset[ErrorKind] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a plain sync or async function as a tool handler."""
        handler = FunctionHandler(func, timeout=timeout)
        if transient_kinds is not None:
            handler.transient_kinds = frozenset(transient_kinds)
        return self.register(schema, handler, metadata=metadata)

    def get(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def get_required(self, name: str) -> ToolRegistration:
        """Get a registration by name, raising ToolNotFoundError if absent."""
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(name=name, details={"available": self.list_names()})
        return registration

    def schema_for(self, name: str) -> ToolSchema | None:
        registration = self._tools.get(name)
        return registration.schema if registration else None

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools)

    def list_schemas(self) -> list[ToolSchema]:
        return [registration.schema for registration in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
