"""Conversation data model shared by the provider adapter and the session.

Messages and content parts are frozen; history is append-only and
order-significant. PendingToolCall is the only mutable type and lives
solely between a tool_use block's start and stop frames.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

logger = logging.getLogger(__name__)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUsePart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultPart:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentPart = Union[TextPart, ToolUsePart, ToolResultPart]


@dataclass(frozen=True)
class ConversationMessage:
    """A single message in the conversation history."""

    role: Role
    parts: tuple[ContentPart, ...]

    def to_api(self) -> dict[str, Any]:
        return {"role": str(self.role), "content": [p.to_api() for p in self.parts]}

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


@dataclass(frozen=True)
class ToolCall:
    """A sealed tool invocation request. ``arguments`` is the raw JSON text."""

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode arguments for the history record; malformed JSON becomes {}."""
        try:
            value = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            logger.warning("Tool call %s (%s) has unparseable arguments: %r", self.id, self.name, self.arguments[:200])
            return {}
        if not isinstance(value, dict):
            logger.warning("Tool call %s (%s) arguments are not an object", self.id, self.name)
            return {}
        return value


@dataclass
class PendingToolCall:
    """Accumulates input_json_delta fragments for an open tool_use block."""

    id: str
    name: str
    input_parts: list[str] = field(default_factory=list)

    def append(self, fragment: str) -> None:
        self.input_parts.append(fragment)

    def seal(self) -> ToolCall:
        arguments = "".join(self.input_parts)
        return ToolCall(id=self.id, name=self.name, arguments=arguments or "{}")


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "cached_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CodeContext:
    """A file excerpt attached to a user message."""

    file_path: str
    content: str
    relevance: float = 0.0
    start_line: int | None = None
    end_line: int | None = None

    def to_part(self) -> TextPart:
        return TextPart(text=f'<file path="{self.file_path}">\n{self.content}\n</file>')
