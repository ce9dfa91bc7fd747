"""Exception hierarchy for toolstream.

    ToolstreamError
    ├── ConfigurationError
    ├── TransportError(status_code)
    ├── ProtocolError
    ├── ProviderError(error_type)
    └── ToolError(tool_name)
        ├── ToolNotFoundError
        ├── ToolArgumentError
        └── ToolExecutionError
            └── UserDeniedConfirmation

Only ConfigurationError is raised to host callers. Transport and protocol
failures travel as error events; tool failures are folded into
ToolCallResult(is_error=True) by the dispatcher.
"""

from __future__ import annotations


class ToolstreamError(Exception):
    """Base exception for all toolstream errors."""


class ConfigurationError(ToolstreamError):
    """Missing credential or session used before start()."""


class TransportError(ToolstreamError):
    """Network or HTTP failure of the active request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code}: {message}"
        super().__init__(message)


class ProtocolError(ToolstreamError):
    """Malformed frame, unparseable payload, or truncated stream."""


class ProviderError(ToolstreamError):
    """Error frame sent by the provider inside an otherwise healthy stream."""

    def __init__(self, error_type: str, message: str) -> None:
        self.error_type = error_type
        super().__init__(f"{error_type}: {message}")


# ─── Tool Errors ──────────────────────────────────────────────


class ToolError(ToolstreamError):
    """Base for failures while resolving or running a tool call."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(message)


class ToolNotFoundError(ToolError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class ToolArgumentError(ToolError):
    """Arguments could not be decoded or bound to the tool's parameters."""


class ToolExecutionError(ToolError):
    """The tool was not run, or raised while running."""


class UserDeniedConfirmation(ToolExecutionError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, "User denied tool execution")
