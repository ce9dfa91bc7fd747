"""Tool dispatcher -- resolves, gates, binds, invokes, and shapes tool calls.

Order of operations for every call:
1. look the tool up (unknown name -> error result)
2. confirmation gate, strictly before any side effect
3. decode JSON arguments and bind them through the tool's argument model
   (all-or-nothing: any missing or mistyped parameter blocks the call)
4. invoke; exceptions become error results
5. normalize the return value into {success, message, data?}

Nothing raised here reaches the host: every ToolError is folded into a
ToolCallResult with is_error=True so the model can react to it.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from toolstream.api.models import ToolCall
from toolstream.errors import (
    ToolArgumentError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    UserDeniedConfirmation,
)
from toolstream.tools.confirmation import ConfirmationRequest, Confirmer
from toolstream.tools.registry import RegisteredTool, ToolRegistry
from toolstream.tools.schemas import ToolCallResult, ToolResult

logger = logging.getLogger(__name__)

_RESULT_KEYS = frozenset({"success", "message"})


class ToolDispatcher:
    """Dispatches tool calls from the model against a ToolRegistry.

    Handlers may be plain functions or coroutine functions. Without a
    confirmer, tools that require confirmation are always denied.
    """

    def __init__(self, registry: ToolRegistry, confirmer: Confirmer | None = None) -> None:
        self._registry = registry
        self._confirmer = confirmer

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def set_confirmer(self, confirmer: Confirmer | None) -> None:
        self._confirmer = confirmer

    async def execute(
        self,
        name: str,
        arguments: str | dict[str, Any] = "{}",
        *,
        tool_call_id: str = "",
    ) -> ToolCallResult:
        """Run a tool and return the result to send back to the model."""
        result = await self.run(name, arguments, tool_call_id=tool_call_id)
        return ToolCallResult.from_tool_result(tool_call_id, result)

    async def execute_call(self, call: ToolCall) -> ToolCallResult:
        return await self.execute(call.name, call.arguments, tool_call_id=call.id)

    async def execute_all(self, calls: Iterable[ToolCall]) -> list[ToolCallResult]:
        """Run calls one after another, preserving their order."""
        return [await self.execute_call(call) for call in calls]

    async def run(
        self,
        name: str,
        arguments: str | dict[str, Any] = "{}",
        *,
        tool_call_id: str = "",
    ) -> ToolResult:
        """Run a tool and return its normalized ToolResult."""
        try:
            tool = self._resolve(name)
            await self._confirm(tool, arguments, tool_call_id)
            kwargs = _bind(tool, arguments)
        except ToolError as e:
            logger.warning("Tool call %s rejected: %s", name, e)
            return ToolResult.failed(str(e))

        start_time = time.monotonic()
        try:
            value = tool.handler(**kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            error = ToolExecutionError(name, f"Execution error: {e}")
            return ToolResult.failed(str(error))
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.debug("Tool %s finished in %dms", name, duration_ms)

        return _normalize(value)

    def _resolve(self, name: str) -> RegisteredTool:
        tool = self._registry.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    async def _confirm(self, tool: RegisteredTool, arguments: str | dict[str, Any], tool_call_id: str) -> None:
        if not tool.definition.requires_confirmation:
            return
        if self._confirmer is None:
            raise ToolExecutionError(
                tool.name, "Tool requires confirmation but no confirmation handler is configured"
            )
        request = ConfirmationRequest(
            tool_name=tool.name,
            description=tool.definition.description,
            arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            tool_call_id=tool_call_id,
        )
        try:
            approved = await self._confirmer(request)
        except Exception:
            logger.exception("Confirmation handler failed for %s, denying", tool.name)
            approved = False
        if not approved:
            raise UserDeniedConfirmation(tool.name)


def _bind(tool: RegisteredTool, arguments: str | dict[str, Any]) -> dict[str, Any]:
    """Decode arguments and bind them to the tool's declared parameters."""
    if isinstance(arguments, str):
        try:
            data = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolArgumentError(tool.name, f"Invalid JSON arguments: {e}") from e
    else:
        data = arguments
    if not isinstance(data, dict):
        raise ToolArgumentError(tool.name, "Arguments must be a JSON object")

    try:
        validated = tool.args_model.model_validate(data)
    except ValidationError as e:
        raise ToolArgumentError(tool.name, _describe(e)) from e

    return {param.name: getattr(validated, f"p{index}") for index, param in enumerate(tool.params)}


def _describe(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        param = ".".join(str(part) for part in item["loc"]) or "arguments"
        if item["type"] == "missing":
            messages.append(f"Missing required parameter: {param}")
        elif item["type"] == "extra_forbidden":
            messages.append(f"Unknown parameter: {param}")
        else:
            messages.append(f"Invalid value for parameter {param}: {item['msg']}")
    return "; ".join(messages)


def _normalize(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if isinstance(value, dict) and _RESULT_KEYS <= set(value) <= _RESULT_KEYS | {"data"}:
        try:
            return ToolResult.model_validate(value)
        except ValidationError:
            logger.debug("Result dict looks like a ToolResult but does not validate, wrapping it")
    if value is None:
        return ToolResult.succeeded("Tool executed successfully")
    if isinstance(value, (dict, list, tuple)):
        return ToolResult.succeeded(json.dumps(value, default=str))
    return ToolResult.succeeded(str(value))
