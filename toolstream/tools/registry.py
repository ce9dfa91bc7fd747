"""Tool registry -- the catalog of host functions exposed to the model.

Tools are registered explicitly: each tool module declares its tools in
a ToolSet (or calls ToolRegistry.register directly) with a ToolParam per
parameter, in declaration order. Nothing is discovered by reflection.

For every registration the registry builds two things:
- the ToolDefinition exported to the model (JSON schema per parameter)
- a pydantic argument model the dispatcher uses to decode and bind
  the model's JSON arguments, rejecting unknown fields
"""

from __future__ import annotations

import collections.abc
import logging
import re
import types
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union, get_args, get_origin

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, create_model

from toolstream.tools.schemas import JsonType, ParameterSchema, ToolDefinition

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

ToolHandler = Callable[..., Any]


@dataclass(frozen=True)
class ToolParam:
    """Declarative metadata for one tool parameter."""

    name: str
    type: Any = str
    description: str = ""
    enum: Sequence[str] | type[Enum] | None = None
    optional: bool = False
    default: Any = MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    @property
    def required(self) -> bool:
        """Required iff there is no default and it is not marked optional."""
        return not self.optional and not self.has_default

    @property
    def enum_class(self) -> type[Enum] | None:
        """The Enum whose members this parameter binds to, if any."""
        for candidate in (self.enum, self.type):
            if isinstance(candidate, type) and issubclass(candidate, Enum):
                return candidate
        return None

    @property
    def enum_values(self) -> tuple[str, ...] | None:
        if self.enum is None:
            enum_cls = self.enum_class
            return tuple(member.name for member in enum_cls) if enum_cls else None
        if isinstance(self.enum, type) and issubclass(self.enum, Enum):
            return tuple(member.name for member in self.enum)
        return tuple(str(v) for v in self.enum)

    def to_schema(self) -> ParameterSchema:
        values = self.enum_values
        return ParameterSchema(
            type=JsonType.STRING if values else json_type_for(self.type),
            description=self.description or self.name,
            enum=values,
        )


def json_type_for(tp: Any) -> JsonType:
    """Map a Python type to the JSON schema type exported to the model.

    bool -> boolean (checked before int), int/float/Decimal -> number,
    str -> string, sequences -> array, everything else -> object.
    Optional[X] maps like X.
    """
    origin = get_origin(tp)
    if origin is Annotated:
        return json_type_for(get_args(tp)[0])
    if origin is Union or origin is types.UnionType:
        members = [a for a in get_args(tp) if a is not type(None)]
        if len(members) == 1:
            return json_type_for(members[0])
        return JsonType.OBJECT
    if origin is Literal:
        values = get_args(tp)
        if values and all(isinstance(v, str) for v in values):
            return JsonType.STRING
        return JsonType.OBJECT

    cls = origin if origin is not None else tp
    if not isinstance(cls, type):
        return JsonType.OBJECT
    # Enums travel by member name, IntEnum included
    if issubclass(cls, Enum):
        return JsonType.STRING
    if issubclass(cls, bool):
        return JsonType.BOOLEAN
    if issubclass(cls, (int, float, Decimal)):
        return JsonType.NUMBER
    if issubclass(cls, str):
        return JsonType.STRING
    if issubclass(cls, (bytes, bytearray)):
        return JsonType.OBJECT
    if issubclass(cls, (list, tuple, set, frozenset, collections.abc.Sequence, collections.abc.Set)):
        return JsonType.ARRAY
    return JsonType.OBJECT


@dataclass(frozen=True)
class RegisteredTool:
    """A catalog entry: exported definition plus what is needed to call it."""

    definition: ToolDefinition
    handler: ToolHandler
    params: tuple[ToolParam, ...]
    args_model: type[BaseModel]

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass
class _ToolEntry:
    name: str
    handler: ToolHandler
    description: str
    params: tuple[ToolParam, ...] = ()
    requires_confirmation: bool = False


@dataclass
class ToolSet:
    """Tools declared by one host module, registered together.

    Usage:
        scene_tools = ToolSet("scene")

        @scene_tools.tool(
            "get_hierarchy",
            "Get the object hierarchy of the open scene",
            params=[ToolParam("max_depth", int, "Depth to traverse", default=10)],
        )
        def get_hierarchy(max_depth: int = 10) -> ToolResult:
            ...
    """

    name: str = ""
    _entries: list[_ToolEntry] = field(default_factory=list)

    def tool(
        self,
        name: str,
        description: str,
        *,
        params: Iterable[ToolParam] = (),
        requires_confirmation: bool = False,
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.add(name, handler, description, params=params, requires_confirmation=requires_confirmation)
            return handler

        return decorator

    def add(
        self,
        name: str,
        handler: ToolHandler,
        description: str,
        *,
        params: Iterable[ToolParam] = (),
        requires_confirmation: bool = False,
    ) -> None:
        self._entries.append(_ToolEntry(name, handler, description, tuple(params), requires_confirmation))

    def __iter__(self) -> Iterator[_ToolEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class ToolRegistry:
    """Catalog of ToolDefinitions keyed by unique tool name.

    Duplicate names are not an error: the last registration wins.
    rebuild() replaces the whole catalog rather than merging into it.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str,
        params: Iterable[ToolParam] = (),
        requires_confirmation: bool = False,
    ) -> ToolDefinition:
        """Register a tool handler with its parameter metadata."""
        tool = _build_tool(name, handler, description, tuple(params), requires_confirmation)
        if name in self._tools:
            logger.debug("Tool '%s' re-registered, replacing previous definition", name)
        self._tools[name] = tool
        return tool.definition

    def register_toolset(self, toolset: ToolSet) -> int:
        for entry in toolset:
            self.register(
                entry.name,
                entry.handler,
                description=entry.description,
                params=entry.params,
                requires_confirmation=entry.requires_confirmation,
            )
        return len(toolset)

    def rebuild(self, *toolsets: ToolSet) -> int:
        """Replace the catalog with the tools of ``toolsets``."""
        tools: dict[str, RegisteredTool] = {}
        for toolset in toolsets:
            for entry in toolset:
                tools[entry.name] = _build_tool(
                    entry.name, entry.handler, entry.description, entry.params, entry.requires_confirmation
                )
        self._tools = tools
        logger.info("Tool registry rebuilt: %d tools", len(tools))
        return len(tools)

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def definition(self, name: str) -> ToolDefinition | None:
        tool = self._tools.get(name)
        return tool.definition if tool else None

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def export(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [t.definition.to_api() for t in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


# ---------------------------------------------------------------------------
# Definition + argument model construction
# ---------------------------------------------------------------------------


def _build_tool(
    name: str,
    handler: ToolHandler,
    description: str,
    params: tuple[ToolParam, ...],
    requires_confirmation: bool,
) -> RegisteredTool:
    seen: set[str] = set()
    for param in params:
        if param.name in seen:
            raise ValueError(f"Tool '{name}' declares parameter '{param.name}' twice")
        seen.add(param.name)

    definition = ToolDefinition(
        name=name,
        description=description,
        properties={p.name: p.to_schema() for p in params},
        required=tuple(p.name for p in params if p.required),
        requires_confirmation=requires_confirmation,
    )
    return RegisteredTool(
        definition=definition,
        handler=handler,
        params=params,
        args_model=_build_args_model(name, params),
    )


def _build_args_model(tool_name: str, params: tuple[ToolParam, ...]) -> type[BaseModel]:
    # Field names are positional; the alias carries the parameter name so
    # tool parameters can never shadow BaseModel attributes.
    fields: dict[str, Any] = {}
    for index, param in enumerate(params):
        annotation = _annotation_for(param)
        if param.optional:
            # An explicit null is accepted even when a default is declared
            annotation = Optional[annotation]
            default = param.default if param.has_default else None
        elif param.has_default:
            default = param.default
        else:
            default = ...
        fields[f"p{index}"] = (annotation, Field(default, alias=param.name))

    model_name = "".join(part.capitalize() for part in re.split(r"[^0-9a-zA-Z]+", tool_name) if part) + "Args"
    return create_model(
        model_name or "ToolArgs",
        __config__=ConfigDict(extra="forbid", arbitrary_types_allowed=True),
        **fields,
    )


def _annotation_for(param: ToolParam) -> Any:
    values = param.enum_values
    if values:
        enum_cls = param.enum_class
        if enum_cls is not None and set(values) <= enum_cls.__members__.keys():
            # Validate the member name, then hand the member itself to the handler
            return Annotated[Literal[values], AfterValidator(lambda name: enum_cls[name])]
        return Literal[values]
    if param.type is None:
        return Any
    return param.type
