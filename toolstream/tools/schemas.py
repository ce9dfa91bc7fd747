"""Pydantic DTOs for tool definitions and results.

These models define the data contract between the tool registry, the
dispatcher, and the provider adapter that exports schemas to the model.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JsonType(StrEnum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


class ParameterSchema(BaseModel):
    """Schema for a single tool parameter."""

    model_config = ConfigDict(frozen=True)

    type: JsonType
    description: str
    enum: tuple[str, ...] | None = None

    def to_api(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": str(self.type), "description": self.description}
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        return schema


class ToolDefinition(BaseModel):
    """Exported description of a host-callable tool. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    properties: dict[str, ParameterSchema] = Field(default_factory=dict)
    required: tuple[str, ...] = ()
    requires_confirmation: bool = False

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {name: p.to_api() for name, p in self.properties.items()},
            "required": list(self.required),
        }

    def to_api(self) -> dict[str, Any]:
        """Return the definition in Anthropic tool format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolResult(BaseModel):
    """Standard return shape of a tool function: {success, message, data?}."""

    success: bool
    message: str
    data: Any = None

    @classmethod
    def succeeded(cls, message: str, data: Any = None) -> ToolResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, message: str, data: Any = None) -> ToolResult:
        return cls(success=False, message=message, data=data)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return json.dumps(payload, default=str)


class ToolCallResult(BaseModel):
    """Outcome of one tool call, fed back to the model as a tool_result."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    content: str
    is_error: bool = False

    @classmethod
    def from_tool_result(cls, tool_call_id: str, result: ToolResult) -> ToolCallResult:
        return cls(tool_call_id=tool_call_id, content=result.to_json(), is_error=not result.success)
