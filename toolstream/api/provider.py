"""Claude provider adapter -- the per-turn state machine.

Converts SSE frames from the Anthropic Messages API into application
events and maintains the conversation history:

    Idle -> Sending -> (StreamingText | StreamingToolInput)* -> Finalizing -> Idle

All state lives on the main thread. The transport thread only fills the
parser queue; update() drains it during the host's tick and is the only
place turn state changes in response to the network.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import Any

from toolstream.api.models import (
    CodeContext,
    ConversationMessage,
    PendingToolCall,
    Role,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolResultPart,
    ToolUsePart,
)
from toolstream.api.sse import SSEStreamParser, StreamEvent
from toolstream.api.transport import HttpTransport, Transport, TransportRequest
from toolstream.config import Settings
from toolstream.errors import ConfigurationError, ProtocolError, ProviderError, TransportError
from toolstream.events import AgentEvent, EventEmitter, EventType
from toolstream.tools.schemas import ToolCallResult, ToolDefinition

logger = logging.getLogger(__name__)


class TurnState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING_TEXT = "streaming_text"
    STREAMING_TOOL_INPUT = "streaming_tool_input"
    FINALIZING = "finalizing"


def parse_payload(event: StreamEvent) -> dict[str, Any] | None:
    """Decode a frame's JSON payload. Malformed payloads are logged and skipped."""
    try:
        data = json.loads(event.data)
    except json.JSONDecodeError as e:
        logger.warning("%s", ProtocolError(f"Unparseable SSE payload ({e}): {event.data[:200]!r}"))
        return None
    if not isinstance(data, dict):
        logger.warning("%s", ProtocolError(f"SSE payload is not an object: {event.data[:200]!r}"))
        return None
    return data


class ClaudeProvider:
    """Anthropic Messages API adapter with streaming and tool use.

    Exactly one request is in flight at a time. send_text() and
    send_tool_results() return immediately; progress happens as the host
    calls update().
    """

    provider_id = "anthropic"
    supports_streaming = True
    supports_function_calling = True

    def __init__(
        self,
        settings: Settings,
        emitter: EventEmitter | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._settings = settings
        self._emitter = emitter or EventEmitter()
        self._transport = transport
        self._owns_transport = transport is None
        self._system_prompt = settings.system_prompt
        self._history: list[ConversationMessage] = []
        self._tools: list[dict[str, Any]] = []
        self._session_id: str | None = None

        self._state = TurnState.IDLE
        self._request: TransportRequest | None = None
        self._parser: SSEStreamParser | None = None

        # Per-turn accumulation
        self._text_parts: list[str] = []
        self._open_tool: PendingToolCall | None = None
        self._tool_calls: list[ToolCall] = []
        self._turn_finalized = False
        self._stop_reason = ""
        self._input_tokens = 0
        self._cached_tokens = 0

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._state is not TurnState.IDLE

    @property
    def can_send_request(self) -> bool:
        return self._settings.has_credentials and not self.is_processing

    @property
    def history(self) -> tuple[ConversationMessage, ...]:
        return tuple(self._history)

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(self, tools: Iterable[ToolDefinition] = ()) -> str:
        """Initialize the session with the tools the model may call.

        Raises ConfigurationError if no credential is configured.
        """
        if not self._settings.has_credentials:
            raise ConfigurationError(
                "Anthropic API key not configured. Set ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN."
            )
        self.set_tools(tools)
        if self._transport is None:
            self._transport = HttpTransport(self._settings)
            self._owns_transport = True
        self._session_id = f"claude-{datetime.now():%Y%m%d-%H%M%S}"
        logger.info("Started session: %s (%d tools)", self._session_id, len(self._tools))
        return self._session_id

    def set_tools(self, tools: Iterable[ToolDefinition]) -> None:
        """Replace the exported tool schemas used by subsequent requests."""
        self._tools = [t.to_api() for t in tools]

    def set_system_prompt(self, prompt: str) -> None:
        self._system_prompt = prompt

    def clear_history(self) -> None:
        if self.is_processing:
            logger.warning("Cannot clear history while a request is in progress")
            return
        self._history.clear()

    def abort(self) -> None:
        """Tear down the active request and drop the turn's buffers.

        Events already delivered are not retracted; nothing is appended
        to history for the abandoned turn.
        """
        if self._request is not None:
            logger.info("Aborting active request")
        self._cleanup()

    def close(self) -> None:
        """Abort any request, clear history, and release the transport."""
        self.abort()
        self._history.clear()
        if self._transport is not None and self._owns_transport:
            self._transport.close()
            self._transport = None
        if self._session_id:
            logger.info("Closed session: %s", self._session_id)
        self._session_id = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_text(self, message: str, code_context: Iterable[CodeContext] | None = None) -> bool:
        """Append a user message and start a turn. Returns False if rejected."""
        if not self._ready_to_send("send_text"):
            return False
        parts = [ctx.to_part() for ctx in code_context or ()]
        parts.append(TextPart(text=message))
        self._history.append(ConversationMessage(role=Role.USER, parts=tuple(parts)))
        self._start_request()
        return True

    def send_tool_results(self, results: Iterable[ToolCallResult]) -> bool:
        """Append tool results as one user message and start a turn."""
        if not self._ready_to_send("send_tool_results"):
            return False
        parts = tuple(
            ToolResultPart(tool_use_id=r.tool_call_id, content=r.content, is_error=r.is_error)
            for r in results
        )
        if not parts:
            logger.warning("send_tool_results called with no results")
            return False
        self._history.append(ConversationMessage(role=Role.USER, parts=parts))
        self._start_request()
        return True

    def build_payload(self) -> dict[str, Any]:
        """Build the Anthropic Messages API streaming request payload."""
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "stream": True,
            "messages": [m.to_api() for m in self._history],
        }
        if self._system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": self._system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if self._tools:
            payload["tools"] = self._tools
        return payload

    def _ready_to_send(self, operation: str) -> bool:
        if self._session_id is None or self._transport is None:
            raise ConfigurationError(f"{operation}() called before start()")
        if self.is_processing:
            logger.warning("Already processing a request, %s ignored", operation)
            return False
        return True

    def _start_request(self) -> None:
        self._reset_turn()
        self._state = TurnState.SENDING
        parser = SSEStreamParser()
        self._parser = parser
        try:
            self._request = self._transport.submit(self.build_payload(), parser)
        except Exception as e:
            error = e if isinstance(e, TransportError) else TransportError(str(e))
            logger.error("Request submission failed: %s", error)
            self._cleanup()
            self._emit(EventType.ERROR, text=str(error), error=error)
            return
        logger.info("Sent request, message count: %d", len(self._history))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def update(self) -> int:
        """Drain queued frames and advance the turn. Call from the host's tick.

        Returns the number of frames handled.
        """
        parser, request = self._parser, self._request
        if parser is None or request is None:
            return 0

        # Read completion first: frames queued before completion are already in the queue
        transport_done = request.is_done
        handled = 0
        events = parser.drain()
        for event in events:
            if self._parser is not parser:
                logger.debug("Discarding %d frames from an ended turn", len(events) - handled)
                break
            self._handle_frame(event)
            handled += 1

        if transport_done and self._parser is parser:
            self._on_transport_done(request)
        return handled

    def _on_transport_done(self, request: TransportRequest) -> None:
        error = request.error
        if error is not None:
            logger.error("Request failed: %s", error)
            self._cleanup()
            self._emit(EventType.ERROR, text=str(error), error=error)
        elif not self._turn_finalized:
            error = ProtocolError("Stream ended before message_stop")
            logger.warning("%s", error)
            self._cleanup()
            self._emit(EventType.ERROR, text=str(error), error=error)
        else:
            self._cleanup()

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _handle_frame(self, event: StreamEvent) -> None:
        if event.is_terminal:
            self._finalize()
            return

        data = parse_payload(event)
        if data is None:
            return

        frame_type = data.get("type")
        handler = self._frame_handlers.get(frame_type)
        if handler is None:
            logger.debug("Ignoring SSE frame type %r", frame_type)
            return
        try:
            handler(self, data)
        except Exception as e:
            logger.warning("%s", ProtocolError(f"Error handling {frame_type} frame: {e}"), exc_info=True)

    def _on_message_start(self, data: dict[str, Any]) -> None:
        usage = (data.get("message") or {}).get("usage") or {}
        self._input_tokens = int(usage.get("input_tokens") or 0)
        self._cached_tokens = int(usage.get("cache_read_input_tokens") or 0)

    def _on_content_block_start(self, data: dict[str, Any]) -> None:
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            if self._open_tool is not None:
                logger.warning("Tool block %s started before %s stopped", block.get("id"), self._open_tool.id)
                self._tool_calls.append(self._open_tool.seal())
            self._open_tool = PendingToolCall(id=block.get("id", ""), name=block.get("name", ""))
            self._state = TurnState.STREAMING_TOOL_INPUT
        else:
            self._state = TurnState.STREAMING_TEXT

    def _on_content_block_delta(self, data: dict[str, Any]) -> None:
        delta = data.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = delta.get("text", "")
            if text:
                self._text_parts.append(text)
                if self._open_tool is None:
                    self._state = TurnState.STREAMING_TEXT
                self._emit(EventType.TEXT_CHUNK, text=text)
        elif delta_type == "input_json_delta":
            fragment = delta.get("partial_json", "")
            if self._open_tool is None:
                logger.warning("input_json_delta with no open tool block, ignoring")
            elif fragment:
                self._open_tool.append(fragment)
        else:
            logger.debug("Ignoring content_block_delta of type %r", delta_type)

    def _on_content_block_stop(self, data: dict[str, Any]) -> None:
        if self._open_tool is not None:
            self._tool_calls.append(self._open_tool.seal())
            self._open_tool = None
        else:
            self._emit(EventType.TEXT_COMPLETE)
        self._state = TurnState.SENDING

    def _on_message_delta(self, data: dict[str, Any]) -> None:
        stop_reason = (data.get("delta") or {}).get("stop_reason")
        if stop_reason:
            self._stop_reason = stop_reason
        usage = data.get("usage")
        if usage:
            token_usage = TokenUsage(
                input_tokens=int(usage.get("input_tokens") or self._input_tokens),
                output_tokens=int(usage.get("output_tokens") or 0),
                cached_tokens=int(usage.get("cache_read_input_tokens") or self._cached_tokens),
            )
            self._emit(EventType.USAGE, usage=token_usage)

    def _on_message_stop(self, data: dict[str, Any]) -> None:
        self._finalize()

    def _on_error(self, data: dict[str, Any]) -> None:
        error_info = data.get("error") or {}
        error = ProviderError(
            error_info.get("type", "unknown"),
            error_info.get("message") or "Unknown error",
        )
        logger.error("In-stream error: %s", error)
        # Abandoned, not finalized: nothing from this turn reaches history
        self._cleanup()
        self._emit(EventType.ERROR, text=str(error), error=error)

    def _on_ping(self, data: dict[str, Any]) -> None:
        pass

    _frame_handlers = {
        "message_start": _on_message_start,
        "content_block_start": _on_content_block_start,
        "content_block_delta": _on_content_block_delta,
        "content_block_stop": _on_content_block_stop,
        "message_delta": _on_message_delta,
        "message_stop": _on_message_stop,
        "error": _on_error,
        "ping": _on_ping,
    }

    # ------------------------------------------------------------------
    # Turn completion
    # ------------------------------------------------------------------

    def _finalize(self) -> None:
        """Commit the turn to history and emit tool calls + turn complete. Idempotent."""
        if self._turn_finalized:
            return
        self._turn_finalized = True
        self._state = TurnState.FINALIZING

        if self._open_tool is not None:
            logger.warning("Tool block %s never stopped, dropping it", self._open_tool.id)
            self._open_tool = None

        text = "".join(self._text_parts)
        tool_calls = list(self._tool_calls)
        stop_reason = self._stop_reason

        parts: list[Any] = []
        if text:
            parts.append(TextPart(text=text))
        for call in tool_calls:
            parts.append(ToolUsePart(id=call.id, name=call.name, input=call.parsed_arguments()))
        if parts:
            self._history.append(ConversationMessage(role=Role.ASSISTANT, parts=tuple(parts)))

        for call in tool_calls:
            if self._state is not TurnState.FINALIZING:
                # A subscriber aborted or closed the session
                return
            self._emit(EventType.TOOL_CALL, tool_call=call)

        if self._state is not TurnState.FINALIZING:
            return
        self._cleanup()
        self._emit(EventType.TURN_COMPLETE, text=text, stop_reason=stop_reason)

    def _reset_turn(self) -> None:
        self._text_parts = []
        self._open_tool = None
        self._tool_calls = []
        self._turn_finalized = False
        self._stop_reason = ""
        self._input_tokens = 0
        self._cached_tokens = 0

    def _cleanup(self) -> None:
        request = self._request
        self._request = None
        self._parser = None
        if request is not None and not request.is_done:
            request.abort()
        self._text_parts = []
        self._open_tool = None
        self._tool_calls = []
        self._state = TurnState.IDLE

    def _emit(self, event_type: EventType, **fields: Any) -> None:
        self._emitter.emit(AgentEvent(type=event_type, session_id=self._session_id, **fields))
