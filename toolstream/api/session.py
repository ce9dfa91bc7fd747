"""AgentSession -- wires provider, registry, dispatcher, and confirmation gate.

The provider is tick-driven and synchronous; tool execution and
confirmation are asynchronous. The session bridges the two for hosts
that run an asyncio loop: wait_idle() ticks the provider until the turn
ends, and chat() runs the full tool loop (send, stream, execute tools,
send results, repeat) up to ``max_turns`` round trips.

Hosts with their own frame loop can ignore chat() and drive
update()/send_tool_results() themselves from event handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from toolstream.api.models import CodeContext, ConversationMessage, ToolCall
from toolstream.api.provider import ClaudeProvider
from toolstream.api.transport import Transport
from toolstream.config import Settings
from toolstream.errors import ToolstreamError
from toolstream.events import AgentEvent, EventEmitter, EventHandler, EventType
from toolstream.tools.confirmation import ConfirmationGate, Confirmer
from toolstream.tools.dispatcher import ToolDispatcher
from toolstream.tools.registry import ToolRegistry, ToolSet
from toolstream.tools.schemas import ToolCallResult, ToolResult

logger = logging.getLogger(__name__)

_TOOL_LIMIT_MESSAGE = "Tool call limit reached for this request; the call was not executed."


@dataclass
class ChatResult:
    """Everything one chat() call produced."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolCallResult] = field(default_factory=list)
    turns: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AgentSession:
    """One conversation with the model plus the tools it may call.

    By default confirmations go through a ConfirmationGate: hosts listen
    for confirmation_needed events and answer with
    ``session.confirmation.respond(request.id, approved)``. Passing
    ``confirmer`` replaces the gate with a direct coroutine.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry | None = None,
        *,
        transport: Transport | None = None,
        confirmer: Confirmer | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.settings = settings
        self.emitter = emitter or EventEmitter()
        self.registry = registry or ToolRegistry()
        self.confirmation = ConfirmationGate(self.emitter, timeout=settings.confirm_timeout)
        self.dispatcher = ToolDispatcher(self.registry, confirmer or self.confirmation)
        self.provider = ClaudeProvider(settings, emitter=self.emitter, transport=transport)

        # Collected per turn from provider events
        self._turn_calls: list[ToolCall] = []
        self._turn_error: Exception | None = None
        self._turn_text = ""
        self.emitter.on(EventType.TOOL_CALL, self._collect_tool_call)
        self.emitter.on(EventType.ERROR, self._collect_error)
        self.emitter.on(EventType.TURN_COMPLETE, self._collect_turn)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.provider.session_id is not None

    @property
    def is_processing(self) -> bool:
        return self.provider.is_processing

    @property
    def history(self) -> tuple[ConversationMessage, ...]:
        return self.provider.history

    def open(self) -> str:
        """Start the provider session with the registry's current tools."""
        return self.provider.start(self.registry.definitions())

    def refresh_tools(self, *toolsets: ToolSet) -> int:
        """Rebuild the registry (if toolsets are given) and re-export it."""
        if toolsets:
            count = self.registry.rebuild(*toolsets)
        else:
            count = len(self.registry)
        self.provider.set_tools(self.registry.definitions())
        return count

    def close(self) -> None:
        denied = self.confirmation.deny_all()
        if denied:
            logger.info("Denied %d pending confirmations on close", denied)
        self.provider.close()

    def on(self, event_type: EventType | str, handler: EventHandler) -> None:
        self.emitter.on(event_type, handler)

    # ------------------------------------------------------------------
    # Low-level driving
    # ------------------------------------------------------------------

    def send_text(self, message: str, code_context: Iterable[CodeContext] | None = None) -> bool:
        if not self.is_open:
            self.open()
        if not self.provider.is_processing:
            self._reset_turn()
        return self.provider.send_text(message, code_context)

    def send_tool_results(self, results: Iterable[ToolCallResult]) -> bool:
        if not self.provider.is_processing:
            self._reset_turn()
        return self.provider.send_tool_results(results)

    def update(self) -> int:
        return self.provider.update()

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Tick the provider until the current turn ends.

        Raises asyncio.TimeoutError if ``timeout`` elapses first; the turn
        keeps running in that case.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            self.provider.update()
            if not self.provider.is_processing:
                return
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError(f"Turn still in progress after {timeout}s")
            await asyncio.sleep(self.settings.tick_interval)

    async def execute_tool_calls(self, calls: Iterable[ToolCall]) -> list[ToolCallResult]:
        return await self.dispatcher.execute_all(calls)

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------

    async def chat(self, text: str, code_context: Iterable[CodeContext] | None = None) -> ChatResult:
        """Send a message and run tool round trips until the model stops calling tools."""
        result = ChatResult()
        if not self.send_text(text, code_context):
            result.error = ToolstreamError("Request rejected: a turn is already in progress")
            return result

        while True:
            await self.wait_idle()
            result.turns += 1
            result.text = self._turn_text
            if self._turn_error is not None:
                result.error = self._turn_error
                return result

            calls = list(self._turn_calls)
            if not calls:
                return result
            result.tool_calls.extend(calls)

            if result.turns >= self.settings.max_turns:
                logger.warning(
                    "Reached max_turns (%d) with %d tool calls pending",
                    self.settings.max_turns,
                    len(calls),
                )
                results = [
                    ToolCallResult.from_tool_result(call.id, ToolResult.failed(_TOOL_LIMIT_MESSAGE))
                    for call in calls
                ]
                result.tool_results.extend(results)
                if self.send_tool_results(results):
                    await self.wait_idle()
                    result.turns += 1
                    result.text = self._turn_text
                    result.error = self._turn_error
                    if self._turn_calls:
                        logger.warning("Model requested more tools after the limit, ignoring")
                return result

            results = await self.execute_tool_calls(calls)
            result.tool_results.extend(results)
            if not self.send_tool_results(results):
                result.error = ToolstreamError("Request rejected while sending tool results")
                return result

    # ------------------------------------------------------------------
    # Event collection
    # ------------------------------------------------------------------

    def _reset_turn(self) -> None:
        self._turn_calls = []
        self._turn_error = None
        self._turn_text = ""

    def _collect_tool_call(self, event: AgentEvent) -> None:
        if event.tool_call is not None:
            self._turn_calls.append(event.tool_call)

    def _collect_error(self, event: AgentEvent) -> None:
        self._turn_error = event.error or ToolstreamError(event.text)

    def _collect_turn(self, event: AgentEvent) -> None:
        self._turn_text = event.text
