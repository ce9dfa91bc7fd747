"""Asynchronous confirmation gate for sensitive tools.

The dispatcher awaits the gate for one tool call; the gate emits a
confirmation_needed event and suspends only that call until the host
answers with respond(). Everything else on the event loop, including
the session tick, keeps running meanwhile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import uuid4

from toolstream.events import AgentEvent, EventEmitter, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the host needs to show the user before a tool may run."""

    tool_name: str
    description: str
    arguments: str
    tool_call_id: str = ""
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def prompt(self) -> str:
        return (
            f"The AI wants to execute: {self.tool_name}\n\n"
            f"{self.description}\n\nArguments:\n{self.arguments}"
        )


Confirmer = Callable[[ConfirmationRequest], Awaitable[bool]]


class ConfirmationGate:
    """Confirmer that round-trips through events instead of a modal dialog.

    A timeout, if configured, counts as a denial.
    """

    def __init__(self, emitter: EventEmitter | None = None, timeout: float | None = None) -> None:
        self._emitter = emitter
        self._timeout = timeout
        self._pending: dict[str, tuple[ConfirmationRequest, asyncio.Future[bool]]] = {}

    async def __call__(self, request: ConfirmationRequest) -> bool:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = (request, future)
        try:
            if self._emitter is not None:
                self._emitter.emit(
                    AgentEvent(
                        type=EventType.CONFIRMATION_NEEDED,
                        text=request.prompt,
                        confirmation=request,
                    )
                )
            if self._timeout is None:
                return await future
            return await asyncio.wait_for(future, self._timeout)
        except TimeoutError:
            logger.warning(
                "Confirmation for %s timed out after %.1fs, denying", request.tool_name, self._timeout
            )
            return False
        finally:
            self._pending.pop(request.id, None)

    def respond(self, request_id: str, approved: bool) -> bool:
        """Answer a pending request. Returns False if it is unknown or already answered.

        Safe to call from a thread other than the event loop's.
        """
        entry = self._pending.get(request_id)
        if entry is None or entry[1].done():
            logger.warning("No pending confirmation with id %s", request_id)
            return False
        future = entry[1]
        loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            future.set_result(bool(approved))
        else:
            loop.call_soon_threadsafe(_set_if_pending, future, bool(approved))
        return True

    def deny_all(self) -> int:
        """Deny every pending request (used when the session closes)."""
        count = 0
        for request_id in list(self._pending):
            if self.respond(request_id, False):
                count += 1
        return count

    @property
    def pending(self) -> list[ConfirmationRequest]:
        return [request for request, future in self._pending.values() if not future.done()]


def _set_if_pending(future: asyncio.Future[bool], value: bool) -> None:
    if not future.done():
        future.set_result(value)
