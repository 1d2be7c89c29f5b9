import fnmatch
import stat
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied

MAX_ENTRIES = 1000
DEFAULT_DEPTH = 3
_SIX_MONTHS = 180 * 24 * 60 * 60


@dataclass
class _Entry:
    relative_path: str
    is_dir: bool
    size: int
    mtime: float
    mode: int


def format_size(size: int) -> str:
    if size == 0:
        return "0B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TB"


def _format_mtime(mtime: float) -> str:
    stamp = datetime.fromtimestamp(mtime)
    if time.time() - mtime < _SIX_MONTHS:
        return stamp.strftime("%b %d %H:%M")
    return stamp.strftime("%b %d  %Y")


class LsTool:
    @property
    def name(self) -> str:
        return "ls"

    @property
    def description(self) -> str:
        return (
            "List directory contents with sizes and modification times. "
            "Directories come first; hidden entries are skipped unless all is true."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory to list (default: working directory)",
                },
                "all": {
                    "type": "boolean",
                    "description": "Include hidden entries (names starting with '.')",
                },
                "long": {
                    "type": "boolean",
                    "description": "Long format with permissions, size and date (default: true)",
                },
                "recursive": {
                    "type": "boolean",
                    "description": "List subdirectories recursively",
                },
                "depth": {
                    "type": "integer",
                    "description": f"Maximum depth for recursive listing (default: {DEFAULT_DEPTH})",
                },
                "pattern": {
                    "type": "string",
                    "description": "Case-insensitive name filter, e.g. '*.py'",
                },
            },
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = tool_input.get("path") or "."
        root = context.resolve_path(path)
        show_all = bool(tool_input.get("all", False))
        long_format = bool(tool_input.get("long", True))
        max_depth = int(tool_input.get("depth", DEFAULT_DEPTH)) if tool_input.get("recursive") else 0
        pattern = tool_input.get("pattern")

        permission = await context.permissions.check("read", str(root))
        if not permission.allowed:
            return permission_denied(permission.reason)

        if not root.is_dir():
            return ToolResult(f"Error: Not a directory: {root}", is_error=True)

        entries: list[_Entry] = []
        try:
            self._walk(root, root, 0, max_depth, show_all, pattern, entries)
        except OSError as ex:
            return ToolResult(f"Error listing directory: {ex}", is_error=True)

        if not entries:
            return ToolResult(f"Directory is empty: {root}", title=f"ls {path}")

        truncated = len(entries) > MAX_ENTRIES
        entries = entries[:MAX_ENTRIES]
        output = self._format_long(entries) if long_format else "\n".join(
            e.relative_path + ("/" if e.is_dir else "") for e in entries
        )
        if truncated:
            output += f"\n\n[Listing capped at {MAX_ENTRIES} entries]"
        return ToolResult(output, title=f"ls {path}", metadata={"count": len(entries)})

    def _walk(
        self,
        directory: Path,
        root: Path,
        depth: int,
        max_depth: int,
        show_all: bool,
        pattern: str | None,
        entries: list[_Entry],
    ) -> None:
        children = []
        for child in directory.iterdir():
            if not show_all and child.name.startswith("."):
                continue
            try:
                st = child.stat()
            except OSError:
                continue
            children.append((child, st))
        children.sort(key=lambda item: (not stat.S_ISDIR(item[1].st_mode), item[0].name.lower()))

        for child, st in children:
            if len(entries) > MAX_ENTRIES:
                return
            is_dir = stat.S_ISDIR(st.st_mode)
            if not pattern or fnmatch.fnmatchcase(child.name.lower(), pattern.lower()):
                entries.append(_Entry(
                    relative_path=child.relative_to(root).as_posix(),
                    is_dir=is_dir,
                    size=st.st_size,
                    mtime=st.st_mtime,
                    mode=st.st_mode,
                ))
            if is_dir and depth < max_depth:
                self._walk(child, root, depth + 1, max_depth, show_all, pattern, entries)

    @staticmethod
    def _format_long(entries: list[_Entry]) -> str:
        sizes = [format_size(e.size) for e in entries]
        width = max(4, *(len(s) for s in sizes))
        lines = [
            f"{stat.filemode(e.mode)}  {size:>{width}}  {_format_mtime(e.mtime)}  "
            f"{e.relative_path}{'/' if e.is_dir else ''}"
            for e, size in zip(entries, sizes)
        ]

        dirs = sum(1 for e in entries if e.is_dir)
        total = sum(e.size for e in entries if not e.is_dir)
        lines.append("")
        lines.append(f"Total: {len(entries) - dirs} files, {dirs} directories, {format_size(total)}")
        return "\n".join(lines)
