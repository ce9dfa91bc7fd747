"""Streaming HTTP transport for the Anthropic Messages API.

Each request runs on its own daemon thread. The thread only ever writes
into the SSEStreamParser (bytes in, frames queued) and into the
TransportRequest completion state; it never touches session state.
The main thread polls TransportRequest.is_done during its tick.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Protocol

import httpx

from toolstream.api.sse import SSEStreamParser
from toolstream.config import Settings
from toolstream.errors import TransportError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_MESSAGES_PATH = "/v1/messages"
_RETRY_STATUSES = frozenset({429, 500, 529})
_MAX_RETRY_AFTER = 30.0


class TransportRequest:
    """Handle for one in-flight streaming request.

    Completion is written by the I/O thread and read by the main thread,
    so every field is guarded by the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False
        self._error: TransportError | None = None
        self._aborted = threading.Event()
        self._response: httpx.Response | None = None

    @property
    def is_done(self) -> bool:
        with self._lock:
            return self._done

    @property
    def error(self) -> TransportError | None:
        with self._lock:
            return self._error

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def complete(self, error: TransportError | None = None) -> None:
        """Mark the request finished. Only the first call counts."""
        with self._lock:
            if self._done:
                return
            self._done = True
            self._error = error

    def abort(self) -> None:
        """Tear the request down from the main thread. Not reported as an error."""
        self._aborted.set()
        with self._lock:
            response = self._response
            self._response = None
            self._done = True
        if response is not None:
            try:
                response.close()
            except Exception:
                logger.debug("Error closing aborted response", exc_info=True)

    def wait_aborted(self, timeout: float) -> bool:
        return self._aborted.wait(timeout)

    def attach(self, response: httpx.Response | None) -> None:
        with self._lock:
            self._response = response


class Transport(Protocol):
    """Outbound request submission plus inbound byte delivery."""

    def submit(self, payload: dict[str, Any], parser: SSEStreamParser) -> TransportRequest: ...

    def close(self) -> None: ...


class HttpTransport:
    """httpx-based transport streaming POST /v1/messages on a background thread."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=settings.api_base_url,
            headers=build_headers(settings),
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    def submit(self, payload: dict[str, Any], parser: SSEStreamParser) -> TransportRequest:
        request = TransportRequest()
        thread = threading.Thread(
            target=self._run,
            args=(payload, parser, request),
            name="toolstream-stream",
            daemon=True,
        )
        thread.start()
        return request

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _run(self, payload: dict[str, Any], parser: SSEStreamParser, request: TransportRequest) -> None:
        try:
            self._stream(payload, parser, request)
        except httpx.TimeoutException as e:
            if not request.aborted:
                logger.error("API request timed out: %s", e)
                request.complete(TransportError(f"API request timed out: {e}"))
        except Exception as e:
            # Closing the response from abort() surfaces here as a read/stream error
            if not request.aborted:
                logger.error("HTTP error: %s", e)
                request.complete(TransportError(f"HTTP error: {e}"))
        finally:
            request.attach(None)
            request.complete()

    def _stream(self, payload: dict[str, Any], parser: SSEStreamParser, request: TransportRequest) -> None:
        # Simple retry: 1x for 429/500/529, only before any byte reached the parser
        for attempt in range(2):
            if request.aborted:
                return
            with self._client.stream("POST", _MESSAGES_PATH, json=payload) as response:
                request.attach(response)
                if response.status_code == 200:
                    for chunk in response.iter_bytes():
                        if request.aborted:
                            return
                        parser.feed(chunk)
                    parser.finish()
                    request.complete()
                    return

                body = response.read()
                error = error_from_response(response.status_code, body)

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = _retry_after(response)
                    logger.warning(
                        "API error %d, retrying in %.1fs: %s",
                        response.status_code,
                        retry_after,
                        error,
                    )
                    if request.wait_aborted(retry_after):
                        return
                    continue

                logger.error("Request failed: %s", error)
                request.complete(error)
                return


def build_headers(settings: Settings) -> dict[str, str]:
    """Default headers with auth selection: auth token (Bearer) beats API key."""
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
        "accept": "text/event-stream",
    }
    if settings.anthropic_auth_token:
        headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
    elif settings.anthropic_api_key:
        headers["x-api-key"] = settings.anthropic_api_key
    return headers


def error_from_response(status_code: int, body: bytes) -> TransportError:
    """Build a TransportError from an Anthropic error body."""
    try:
        error = json.loads(body).get("error", {})
        message = f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (ValueError, AttributeError):
        message = body.decode("utf-8", errors="replace")[:500] or "empty response"
    return TransportError(message, status_code=status_code)


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return max(0.0, min(value, _MAX_RETRY_AFTER))
