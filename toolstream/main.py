"""Console host for toolstream: a streaming chat REPL with workspace tools."""

from __future__ import annotations

import asyncio
import logging
import sys

from toolstream.api.session import AgentSession
from toolstream.api.transport import Transport
from toolstream.config import Settings
from toolstream.errors import ConfigurationError
from toolstream.events import AgentEvent, EventType
from toolstream.tools.builtin import register_builtin_tools
from toolstream.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_EXIT_COMMANDS = frozenset({"/quit", "/exit"})
_prompt_tasks: set[asyncio.Task] = set()


def build_session(settings: Settings, transport: Transport | None = None) -> AgentSession:
    """Wire registry, built-in tools, and session with console output."""
    registry = ToolRegistry()
    register_builtin_tools(registry, settings)
    session = AgentSession(settings, registry, transport=transport)

    session.on(EventType.TEXT_CHUNK, _print_chunk)
    session.on(EventType.TOOL_CALL, _print_tool_call)
    session.on(EventType.ERROR, _print_error)
    session.on(EventType.USAGE, _log_usage)
    session.on(EventType.CONFIRMATION_NEEDED, lambda event: _ask_confirmation(session, event))
    return session


def _print_chunk(event: AgentEvent) -> None:
    sys.stdout.write(event.text)
    sys.stdout.flush()


def _print_tool_call(event: AgentEvent) -> None:
    call = event.tool_call
    print(f"\n[tool] {call.name} {call.arguments}")


def _print_error(event: AgentEvent) -> None:
    print(f"\n[error] {event.text}")


def _log_usage(event: AgentEvent) -> None:
    usage = event.usage
    logger.info("Tokens: %d in, %d out, %d cached", usage.input_tokens, usage.output_tokens, usage.cached_tokens)


def _ask_confirmation(session: AgentSession, event: AgentEvent) -> None:
    request = event.confirmation

    async def ask() -> None:
        answer = await asyncio.to_thread(input, f"\n{request.prompt}\n\nAllow? [y/N] ")
        session.confirmation.respond(request.id, answer.strip().lower() in ("y", "yes"))

    task = asyncio.get_running_loop().create_task(ask())
    _prompt_tasks.add(task)
    task.add_done_callback(_prompt_tasks.discard)


async def repl(session: AgentSession) -> None:
    print(f"toolstream ({session.settings.model}). Type /quit to exit, /clear to reset.")
    while True:
        try:
            line = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line in _EXIT_COMMANDS:
            break
        if line == "/clear":
            session.provider.clear_history()
            print("History cleared.")
            continue

        result = await session.chat(line)
        print()
        logger.debug("Chat finished after %d turns, %d tool calls", result.turns, len(result.tool_calls))


def main() -> None:
    """Entry point: parse settings, configure logging, run the REPL."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Model: %s", settings.model)
    logger.info("Workspace: %s", settings.workspace_dir)

    session = build_session(settings)
    try:
        session.open()
    except ConfigurationError as e:
        logger.error("%s", e)
        sys.exit(1)

    try:
        asyncio.run(repl(session))
    except KeyboardInterrupt:
        pass
    finally:
        session.close()


if __name__ == "__main__":
    main()
