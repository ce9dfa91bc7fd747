"""Built-in workspace tools: read_file, list_directory, write_file.

Every path is confined to ``settings.workspace_dir``. write_file mutates
the filesystem and therefore requires confirmation before it runs.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from toolstream.config import Settings
from toolstream.tools.registry import ToolParam, ToolRegistry, ToolSet
from toolstream.tools.schemas import ToolResult

logger = logging.getLogger(__name__)

# Limits
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LIST_ENTRIES = 500


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve ``path_str`` under workspace_dir.

    Raises ValueError if path escapes workspace.
    """
    workspace = Path(workspace_dir).resolve()
    path = Path(path_str)
    target = path.resolve() if path.is_absolute() else (workspace / path).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file(path: str, offset: int = 0, limit: int = 0, *, workspace_dir: str) -> ToolResult:
    """Read a text file from the workspace, optionally a line window of it."""
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolResult.failed(str(e))

    if not target.exists():
        return ToolResult.failed(f"File not found: {path}")
    if not target.is_file():
        return ToolResult.failed(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return ToolResult.failed(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    lines = content.splitlines(keepends=True)
    total_lines = len(lines)
    if offset > 0 or limit > 0:
        lines = lines[max(0, int(offset)):]
        if limit > 0:
            lines = lines[: int(limit)]
        content = "".join(lines)

    return ToolResult.succeeded(
        f"Read {path}",
        data={"path": path, "content": content, "total_lines": total_lines},
    )


async def list_directory(path: str = ".", pattern: str = "*", *, workspace_dir: str) -> ToolResult:
    """List entries in a workspace directory that match a glob pattern."""
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolResult.failed(str(e))

    pattern_path = Path(pattern)
    if pattern_path.is_absolute() or ".." in pattern_path.parts:
        return ToolResult.failed(f"Invalid pattern '{pattern}': must be relative and stay within the directory.")

    if not target.is_dir():
        return ToolResult.failed(f"Not a directory: {path}")

    workspace = Path(workspace_dir).resolve()
    entries = []
    for child in sorted(target.glob(pattern)):
        # Symlinks may point outside the workspace
        if not child.resolve().is_relative_to(workspace):
            continue
        entries.append(child.name + "/" if child.is_dir() else child.name)
        if len(entries) >= _MAX_LIST_ENTRIES:
            break

    return ToolResult.succeeded(
        f"Found {len(entries)} entries in {path}",
        data={"path": path, "entries": entries, "truncated": len(entries) >= _MAX_LIST_ENTRIES},
    )


async def write_file(path: str, content: str, *, workspace_dir: str) -> ToolResult:
    """Write content to a workspace file, creating parent directories."""
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolResult.failed(str(e))

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    logger.info("write_file: wrote %d chars to %s", len(content), target)
    return ToolResult.succeeded(f"Wrote {len(content)} characters to {path}", data={"path": path})


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def builtin_tools(settings: Settings) -> ToolSet:
    """Declare the workspace tools bound to ``settings.workspace_dir``."""
    workspace_dir = settings.workspace_dir
    tools = ToolSet("builtin")

    async def _read_file(path: str, offset: int = 0, limit: int = 0) -> ToolResult:
        return await read_file(path, offset, limit, workspace_dir=workspace_dir)

    async def _list_directory(path: str = ".", pattern: str = "*") -> ToolResult:
        return await list_directory(path, pattern, workspace_dir=workspace_dir)

    async def _write_file(path: str, content: str) -> ToolResult:
        return await write_file(path, content, workspace_dir=workspace_dir)

    tools.add(
        "read_file",
        _read_file,
        "Read a text file from the workspace. Paths are relative to the workspace root.",
        params=[
            ToolParam("path", str, "File path relative to the workspace"),
            ToolParam("offset", int, "Line offset to start reading from (0-indexed)", default=0),
            ToolParam("limit", int, "Number of lines to read (0 = all)", default=0),
        ],
    )
    tools.add(
        "list_directory",
        _list_directory,
        "List the entries of a workspace directory. Directories end with '/'.",
        params=[
            ToolParam("path", str, "Directory path relative to the workspace", default="."),
            ToolParam("pattern", str, "Glob pattern to filter entries", default="*"),
        ],
    )
    tools.add(
        "write_file",
        _write_file,
        "Write content to a workspace file, creating parent directories. Overwrites existing files.",
        params=[
            ToolParam("path", str, "File path relative to the workspace"),
            ToolParam("content", str, "Full file content to write"),
        ],
        requires_confirmation=True,
    )
    return tools


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> int:
    """Register the workspace tools into ``registry``."""
    count = registry.register_toolset(builtin_tools(settings))
    logger.info("Registered %d built-in tools (workspace: %s)", count, settings.workspace_dir)
    return count
