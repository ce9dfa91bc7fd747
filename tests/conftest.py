"""Shared fakes: settings, canned Anthropic SSE streams, scripted transport."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from toolstream.api.sse import SSEStreamParser
from toolstream.api.transport import TransportRequest
from toolstream.config import Settings
from toolstream.errors import TransportError
from toolstream.events import AgentEvent, EventEmitter, EventType

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key",
        "ANTHROPIC_AUTH_TOKEN": "",
        "tick_interval": 0.001,
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(workspace_dir=str(tmp_path))


# ---------------------------------------------------------------------------
# Canned SSE streams
# ---------------------------------------------------------------------------


def frame(payload: dict[str, Any], event: str | None = None) -> str:
    """Render one SSE frame the way the Messages API does."""
    return f"event: {event or payload['type']}\ndata: {json.dumps(payload)}\n\n"


def message_start(input_tokens: int = 10, cached: int = 0) -> str:
    return frame(
        {
            "type": "message_start",
            "message": {
                "id": "msg_1",
                "role": "assistant",
                "usage": {"input_tokens": input_tokens, "cache_read_input_tokens": cached},
            },
        }
    )


def text_block(index: int, *chunks: str) -> str:
    parts = [frame({"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}})]
    for chunk in chunks:
        parts.append(
            frame({"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": chunk}})
        )
    parts.append(frame({"type": "content_block_stop", "index": index}))
    return "".join(parts)


def tool_block(index: int, tool_id: str, name: str, *fragments: str) -> str:
    parts = [
        frame(
            {
                "type": "content_block_start",
                "index": index,
                "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
            }
        )
    ]
    for fragment in fragments:
        parts.append(
            frame(
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": fragment},
                }
            )
        )
    parts.append(frame({"type": "content_block_stop", "index": index}))
    return "".join(parts)


def message_end(stop_reason: str = "end_turn", output_tokens: int = 5) -> str:
    return frame(
        {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": output_tokens}}
    ) + frame({"type": "message_stop"})


def text_turn(*chunks: str, stop_reason: str = "end_turn") -> str:
    return message_start() + text_block(0, *chunks) + message_end(stop_reason)


def tool_turn(tool_id: str, name: str, *fragments: str, text: str | None = None) -> str:
    body = ""
    index = 0
    if text is not None:
        body += text_block(0, text)
        index = 1
    body += tool_block(index, tool_id, name, *fragments)
    return message_start() + body + message_end("tool_use")


def split_bytes(stream: str, size: int) -> list[bytes]:
    data = stream.encode("utf-8")
    return [data[i : i + size] for i in range(0, len(data), size)]


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------


@dataclass
class Script:
    """One scripted response: bytes to deliver, then an optional error."""

    stream: str = ""
    chunk_size: int = 0
    error: TransportError | None = None
    hold: bool = False


@dataclass
class _Held:
    script: Script
    parser: SSEStreamParser
    request: TransportRequest


@dataclass
class ScriptedTransport:
    """Feeds canned SSE bytes synchronously into the parser on submit.

    A script with ``hold=True`` keeps its request open until release().
    """

    scripts: list[Script] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)
    requests: list[TransportRequest] = field(default_factory=list)
    held: _Held | None = None
    closed: bool = False

    def queue(self, stream: str = "", **kwargs: Any) -> Script:
        script = Script(stream=stream, **kwargs)
        self.scripts.append(script)
        return script

    def submit(self, payload: dict[str, Any], parser: SSEStreamParser) -> TransportRequest:
        self.payloads.append(json.loads(json.dumps(payload)))
        request = TransportRequest()
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else Script(hold=True)
        if script.hold:
            self.held = _Held(script, parser, request)
        else:
            _deliver(script, parser, request)
        return request

    def release(self) -> None:
        held, self.held = self.held, None
        if held is not None and not held.request.aborted:
            _deliver(held.script, held.parser, held.request)

    def close(self) -> None:
        self.closed = True


def _deliver(script: Script, parser: SSEStreamParser, request: TransportRequest) -> None:
    if script.stream:
        if script.chunk_size:
            for chunk in split_bytes(script.stream, script.chunk_size):
                parser.feed(chunk)
        else:
            parser.feed(script.stream.encode("utf-8"))
    parser.finish()
    request.complete(script.error)


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


# ---------------------------------------------------------------------------
# Event recording
# ---------------------------------------------------------------------------


class EventRecorder:
    """Wildcard subscriber that keeps every event in emission order."""

    def __init__(self, emitter: EventEmitter) -> None:
        self.events: list[AgentEvent] = []
        emitter.on_any(self.events.append)

    def of(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    @property
    def text(self) -> str:
        return "".join(e.text for e in self.of(EventType.TEXT_CHUNK))


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(emitter) -> EventRecorder:
    return EventRecorder(emitter)
