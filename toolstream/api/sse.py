"""Server-Sent Events framing for streamed model responses.

The parser is fed raw byte chunks from whichever thread the transport
delivers on. Chunk boundaries never line up with frame boundaries, so
incomplete trailing data is buffered until the blank-line delimiter
arrives. Completed frames wait in a lock-guarded queue until the main
thread drains them during its tick.
"""

from __future__ import annotations

import codecs
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_EVENT = "done"
DEFAULT_EVENT = "message"

_FRAME_DELIMITER = "\n\n"


@dataclass(frozen=True)
class StreamEvent:
    """One parsed SSE frame."""

    type: str
    data: str
    id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type == DONE_EVENT


def parse_block(block: str) -> StreamEvent | None:
    """Parse one delimited SSE block into a StreamEvent.

    Lines without a ``field: value`` separator (including ``:`` comment
    lines, whose field is empty) are ignored. Multiple ``data`` lines are
    joined with ``\\n``. A block without any ``data`` field yields None.
    A ``data`` value of ``[DONE]`` is a terminal event whatever its
    ``event`` field says.
    """
    event_type: str | None = None
    data: str | None = None
    event_id: str | None = None

    for raw_line in block.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name = name.strip().lower()
        value = value.lstrip()
        if name == "event":
            event_type = value
        elif name == "data":
            data = value if data is None else f"{data}\n{value}"
        elif name == "id":
            event_id = value

    if data is None:
        return None
    if data == DONE_SENTINEL:
        return StreamEvent(type=DONE_EVENT, data=data, id=event_id)
    return StreamEvent(type=event_type or DEFAULT_EVENT, data=data, id=event_id)


class SSEStreamParser:
    """Incremental SSE parser with a thread-safe output queue.

    ``feed`` and ``finish`` run on the I/O thread; ``drain`` and
    ``process_pending`` run on the main thread. The lock guards the
    buffer and the queue for both sides.
    """

    def __init__(self, on_raw_chunk: Callable[[str], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: deque[StreamEvent] = deque()
        self._finished = False
        self._on_raw_chunk = on_raw_chunk

    def feed(self, chunk: bytes | str) -> int:
        """Append a chunk and queue every frame it completes.

        Returns the number of frames queued by this chunk.
        """
        with self._lock:
            text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            if self._on_raw_chunk and text:
                try:
                    self._on_raw_chunk(text)
                except Exception:
                    logger.exception("Raw chunk callback failed")
            self._buffer += text
            return self._process_buffer()

    def finish(self) -> int:
        """Flush the decoder and parse leftover content as a final frame."""
        with self._lock:
            self._buffer += self._decoder.decode(b"", final=True)
            count = self._process_buffer()
            residual = self._buffer
            self._buffer = ""
            self._finished = True
            if residual.strip():
                event = self._parse(residual)
                if event is not None:
                    self._pending.append(event)
                    count += 1
            return count

    def drain(self) -> list[StreamEvent]:
        """Remove and return all queued frames in parse order."""
        with self._lock:
            events = list(self._pending)
            self._pending.clear()
        return events

    def process_pending(self, callback: Callable[[StreamEvent], None]) -> int:
        """Drain the queue and hand each frame to ``callback``.

        Callback errors are logged per frame and do not stop the drain.
        """
        events = self.drain()
        for event in events:
            try:
                callback(event)
            except Exception:
                logger.exception("Error processing SSE event %s", event.type)
        return len(events)

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def _process_buffer(self) -> int:
        # A "\r" left at the end of the buffer joins with the next chunk's "\n"
        buffer = self._buffer.replace("\r\n", "\n")
        count = 0
        while (end := buffer.find(_FRAME_DELIMITER)) >= 0:
            block, buffer = buffer[:end], buffer[end + len(_FRAME_DELIMITER):]
            event = self._parse(block)
            if event is not None:
                self._pending.append(event)
                count += 1
        self._buffer = buffer
        return count

    @staticmethod
    def _parse(block: str) -> StreamEvent | None:
        try:
            return parse_block(block)
        except Exception:
            logger.warning("Skipping unparseable SSE block: %r", block[:200], exc_info=True)
            return None
