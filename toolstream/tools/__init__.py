"""Tools module: registry, dispatcher, and confirmation for host functions.

Public API: ToolRegistry + ToolSet/ToolParam for declaring tools,
ToolDispatcher for running them, and the DTOs from schemas.py.
"""

from toolstream.tools.confirmation import ConfirmationGate, ConfirmationRequest
from toolstream.tools.dispatcher import ToolDispatcher
from toolstream.tools.registry import ToolParam, ToolRegistry, ToolSet, json_type_for
from toolstream.tools.schemas import (
    JsonType,
    ParameterSchema,
    ToolCallResult,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    "ConfirmationGate",
    "ConfirmationRequest",
    "ToolDispatcher",
    # Registry
    "ToolParam",
    "ToolRegistry",
    "ToolSet",
    "json_type_for",
    # Schemas
    "JsonType",
    "ParameterSchema",
    "ToolCallResult",
    "ToolDefinition",
    "ToolResult",
]
