"""Tests for toolstream/api/session.py -- the tool loop end to end.

Most tests use the scripted transport; TestHttpRoundTrip runs the same
loop over HttpTransport with httpx.MockTransport and a real I/O thread.
"""

import asyncio
import json

import httpx
import pytest

from toolstream.api.models import CodeContext, Role
from toolstream.api.session import AgentSession
from toolstream.api.transport import HttpTransport
from toolstream.errors import ConfigurationError, TransportError
from toolstream.events import EventType
from toolstream.tools.confirmation import ConfirmationRequest
from toolstream.tools.registry import ToolParam, ToolRegistry, ToolSet
from toolstream.tools.schemas import ToolResult

from conftest import EventRecorder, make_settings, message_end, message_start, text_turn, tool_block, tool_turn


def _math_registry(calls: list) -> ToolRegistry:
    registry = ToolRegistry()

    def add(a: int, b: int) -> ToolResult:
        calls.append((a, b))
        return ToolResult.succeeded(str(a + b))

    registry.register(
        "add",
        add,
        description="Add two numbers",
        params=[ToolParam("a", int, "First"), ToolParam("b", int, "Second")],
    )
    return registry


def _session(transport, registry=None, **overrides) -> AgentSession:
    return AgentSession(make_settings(**overrides), registry, transport=transport)


def _last_tool_result(payload: dict) -> dict:
    return payload["messages"][-1]["content"][0]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_opens_lazily_on_first_send(self, transport):
        session = _session(transport)
        assert not session.is_open
        transport.queue(text_turn("hello"))
        result = await session.chat("hi")
        assert session.is_open
        assert result.ok
        assert result.text == "hello"
        assert result.turns == 1

    def test_open_without_credentials(self, transport):
        session = _session(transport, ANTHROPIC_API_KEY="")
        with pytest.raises(ConfigurationError):
            session.open()

    def test_close_resets(self, transport):
        session = _session(transport)
        session.open()
        session.close()
        assert not session.is_open
        assert session.history == ()

    @pytest.mark.asyncio
    async def test_close_denies_pending_confirmations(self, transport):
        session = _session(transport)
        pending = asyncio.create_task(
            session.confirmation(ConfirmationRequest(tool_name="x", description="", arguments="{}"))
        )
        await asyncio.sleep(0)
        session.close()
        assert await pending is False

    def test_refresh_tools_re_exports(self, transport):
        session = _session(transport)
        session.open()
        tools = ToolSet("extra")
        tools.add("ping", lambda: "pong", "Ping the host")

        assert session.refresh_tools(tools) == 1
        transport.queue(text_turn("ok"))
        session.send_text("hi")
        assert [t["name"] for t in transport.payloads[0]["tools"]] == ["ping"]


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_tool_round_trip(self, transport):
        calls = []
        session = _session(transport, _math_registry(calls))
        transport.queue(tool_turn("t1", "add", '{"a": 2,', ' "b": 3}'))
        transport.queue(text_turn("The sum is 5."))

        result = await session.chat("what is 2+3?")

        assert calls == [(2, 3)]
        assert result.text == "The sum is 5."
        assert result.turns == 2
        assert [c.id for c in result.tool_calls] == ["t1"]
        assert json.loads(result.tool_results[0].content) == {"success": True, "message": "5"}
        assert _last_tool_result(transport.payloads[1]) == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": '{"success": true, "message": "5"}',
            "is_error": False,
        }
        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_tool_errors_fed_back(self, transport):
        session = _session(transport, _math_registry([]))
        transport.queue(tool_turn("t1", "divide", "{}"))
        transport.queue(text_turn("Sorry."))

        result = await session.chat("divide")
        tool_result = _last_tool_result(transport.payloads[1])
        assert tool_result["is_error"] is True
        assert "Unknown tool: divide" in tool_result["content"]
        assert result.ok

    @pytest.mark.asyncio
    async def test_all_calls_of_a_turn_sent_together(self, transport):
        calls = []
        session = _session(transport, _math_registry(calls))
        transport.queue(
            message_start()
            + tool_block(0, "t1", "add", '{"a": 1, "b": 1}')
            + tool_block(1, "t2", "add", '{"a": 2, "b": 2}')
            + message_end("tool_use")
        )
        transport.queue(text_turn("done"))

        await session.chat("go")
        contents = transport.payloads[1]["messages"][-1]["content"]
        assert [c["tool_use_id"] for c in contents] == ["t1", "t2"]
        assert calls == [(1, 1), (2, 2)]

    @pytest.mark.asyncio
    async def test_error_ends_loop(self, transport):
        session = _session(transport, _math_registry([]))
        transport.queue("", error=TransportError("overloaded", status_code=529))

        result = await session.chat("hi")
        assert not result.ok
        assert isinstance(result.error, TransportError)
        assert result.turns == 1

    @pytest.mark.asyncio
    async def test_max_turns(self, transport):
        calls = []
        session = _session(transport, _math_registry(calls), max_turns=2)
        transport.queue(tool_turn("t1", "add", '{"a": 1, "b": 1}'))
        transport.queue(tool_turn("t2", "add", '{"a": 2, "b": 2}'))
        transport.queue(text_turn("Stopping."))

        result = await session.chat("loop")

        assert calls == [(1, 1)]
        assert result.turns == 3
        assert result.text == "Stopping."
        limit_result = _last_tool_result(transport.payloads[2])
        assert limit_result["tool_use_id"] == "t2"
        assert limit_result["is_error"] is True
        assert "limit" in limit_result["content"]

    @pytest.mark.asyncio
    async def test_rejected_while_busy(self, transport):
        session = _session(transport)
        transport.queue(text_turn("first"), hold=True)
        assert session.send_text("first")

        result = await session.chat("second")
        assert not result.ok
        assert len(session.history) == 1
        assert len(transport.payloads) == 1

    @pytest.mark.asyncio
    async def test_code_context_forwarded(self, transport):
        session = _session(transport)
        transport.queue(text_turn("ok"))
        await session.chat("review", code_context=[CodeContext(file_path="a.py", content="x = 1")])
        content = transport.payloads[0]["messages"][0]["content"]
        assert content[0]["text"].startswith('<file path="a.py">')
        assert content[1]["text"] == "review"

    @pytest.mark.asyncio
    async def test_streamed_text_reaches_subscribers(self, transport):
        session = _session(transport)
        chunks = []
        session.on(EventType.TEXT_CHUNK, lambda e: chunks.append(e.text))
        transport.queue(text_turn("Hi", " there"))
        await session.chat("hi")
        assert chunks == ["Hi", " there"]


# ---------------------------------------------------------------------------
# Confirmation through the session
# ---------------------------------------------------------------------------


class TestSessionConfirmation:
    def _registry(self, written: list) -> ToolRegistry:
        registry = ToolRegistry()
        registry.register(
            "write_file",
            lambda path, content: written.append((path, content)),
            description="Write a file",
            params=[ToolParam("path"), ToolParam("content")],
            requires_confirmation=True,
        )
        return registry

    @pytest.mark.asyncio
    async def test_approved(self, transport):
        written = []
        session = _session(transport, self._registry(written))
        session.on(
            EventType.CONFIRMATION_NEEDED,
            lambda e: session.confirmation.respond(e.confirmation.id, True),
        )
        transport.queue(tool_turn("t1", "write_file", '{"path": "a.txt", "content": "hi"}'))
        transport.queue(text_turn("Written."))

        result = await session.chat("write it")
        assert written == [("a.txt", "hi")]
        assert not result.tool_results[0].is_error

    @pytest.mark.asyncio
    async def test_denied(self, transport):
        written = []
        session = _session(transport, self._registry(written))
        session.on(
            EventType.CONFIRMATION_NEEDED,
            lambda e: session.confirmation.respond(e.confirmation.id, False),
        )
        transport.queue(tool_turn("t1", "write_file", '{"path": "a.txt", "content": "hi"}'))
        transport.queue(text_turn("Okay, I won't."))

        result = await session.chat("write it")
        assert written == []
        assert result.tool_results[0].is_error
        assert result.text == "Okay, I won't."

    @pytest.mark.asyncio
    async def test_answered_later(self, transport):
        """The tick keeps running while a confirmation is outstanding."""
        written = []
        session = _session(transport, self._registry(written))
        requests = []
        session.on(EventType.CONFIRMATION_NEEDED, lambda e: requests.append(e.confirmation))
        transport.queue(tool_turn("t1", "write_file", '{"path": "a.txt", "content": "hi"}'))
        transport.queue(text_turn("Done."))

        chat = asyncio.create_task(session.chat("write it"))
        while not requests:
            await asyncio.sleep(0.001)
        assert not chat.done()
        session.confirmation.respond(requests[0].id, True)

        result = await asyncio.wait_for(chat, timeout=5)
        assert written == [("a.txt", "hi")]
        assert result.text == "Done."


# ---------------------------------------------------------------------------
# wait_idle
# ---------------------------------------------------------------------------


class TestWaitIdle:
    @pytest.mark.asyncio
    async def test_timeout(self, transport):
        session = _session(transport)
        transport.queue(text_turn("x"), hold=True)
        session.send_text("hi")
        with pytest.raises(asyncio.TimeoutError):
            await session.wait_idle(timeout=0.01)
        assert session.is_processing

    @pytest.mark.asyncio
    async def test_returns_once_released(self, transport):
        session = _session(transport)
        recorder = EventRecorder(session.emitter)
        transport.queue(text_turn("x"), hold=True)
        session.send_text("hi")

        async def release_soon():
            await asyncio.sleep(0.01)
            transport.release()

        await asyncio.gather(session.wait_idle(timeout=5), release_soon())
        assert recorder.of(EventType.TURN_COMPLETE)[0].text == "x"


# ---------------------------------------------------------------------------
# Real transport thread
# ---------------------------------------------------------------------------


class TestHttpRoundTrip:
    @pytest.mark.asyncio
    async def test_tool_loop_over_http(self):
        responses = [
            tool_turn("t1", "add", '{"a": 20, "b": 22}'),
            text_turn("It is ", "42."),
        ]
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=responses[len(bodies) - 1].encode())

        settings = make_settings()
        client = httpx.Client(base_url="https://api.test", transport=httpx.MockTransport(handler))
        calls = []
        session = AgentSession(
            settings, _math_registry(calls), transport=HttpTransport(settings, client=client)
        )

        result = await asyncio.wait_for(session.chat("20 + 22?"), timeout=10)

        assert result.ok
        assert result.text == "It is 42."
        assert calls == [(20, 22)]
        assert len(bodies) == 2
        assert bodies[1]["messages"][1]["content"][0]["type"] == "tool_use"
        session.close()
