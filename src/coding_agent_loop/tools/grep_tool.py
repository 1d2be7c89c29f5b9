import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied
from coding_agent_loop.tools.glob_tool import IGNORED_DIRS

MAX_MATCHES = 200
MAX_FILE_BYTES = 2_000_000
MAX_LINE_CHARS = 300


def _looks_binary(path: Path) -> bool:
    try:
        with path.open("rb") as f:
            return b"\0" in f.read(1024)
    except OSError:
        return True


class GrepTool:
    @property
    def name(self) -> str:
        return "grep"

    @property
    def description(self) -> str:
        return (
            "Search file contents with a regular expression. Returns matching lines as path:line: text. "
            "Use include to restrict the file names searched (e.g. '*.py')."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Regular expression to search for",
                },
                "path": {
                    "type": "string",
                    "description": "File or directory to search (default: working directory)",
                },
                "include": {
                    "type": "string",
                    "description": "File-name glob to restrict the search, e.g. '*.ts'",
                },
                "ignore_case": {
                    "type": "boolean",
                    "description": "Case-insensitive matching",
                },
            },
            "required": ["pattern"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        pattern: str = tool_input["pattern"]
        include: str | None = tool_input.get("include")
        root = context.resolve_path(tool_input.get("path") or ".")

        permission = await context.permissions.check("read", str(root))
        if not permission.allowed:
            return permission_denied(permission.reason)

        try:
            regex = re.compile(pattern, re.IGNORECASE if tool_input.get("ignore_case") else 0)
        except re.error as ex:
            return ToolResult(f"Error: Invalid regular expression: {ex}", is_error=True)

        if not root.exists():
            return ToolResult(f"Error: Path not found: {root}", is_error=True)

        matches: list[str] = []
        truncated = False
        cancelled = False
        for file_path in self._files(root, include):
            if context.cancel_token.cancelled:
                cancelled = True
                break
            for number, line in self._search(file_path, regex):
                if len(matches) >= MAX_MATCHES:
                    truncated = True
                    break
                text = line if len(line) <= MAX_LINE_CHARS else line[:MAX_LINE_CHARS] + "..."
                matches.append(f"{file_path}:{number}: {text}")
            if truncated:
                break
            # Cancellation is checked between files.
            await asyncio.sleep(0)

        title = f"Grep: {pattern}"
        if cancelled:
            notice = "[Search cancelled; results are partial]"
            output = "\n".join(matches) + "\n\n" + notice if matches else notice
            return ToolResult(output, title=title, metadata={"count": len(matches), "cancelled": True})
        if not matches:
            return ToolResult(f"No matches for {pattern}", title=title, metadata={"count": 0})
        output = "\n".join(matches)
        if truncated:
            output += f"\n\n[Stopped after {MAX_MATCHES} matches; narrow the search]"
        return ToolResult(output, title=title, metadata={"count": len(matches), "truncated": truncated})

    @staticmethod
    def _files(root: Path, include: str | None):
        if root.is_file():
            yield root
            return
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for filename in sorted(filenames):
                if include and not fnmatch.fnmatch(filename, include):
                    continue
                yield Path(dirpath) / filename

    @staticmethod
    def _search(file_path: Path, regex: re.Pattern[str]):
        try:
            if file_path.stat().st_size > MAX_FILE_BYTES or _looks_binary(file_path):
                return
            with file_path.open(encoding="utf-8", errors="replace") as f:
                for number, line in enumerate(f, start=1):
                    line = line.rstrip("\n")
                    if regex.search(line):
                        yield number, line
        except OSError:
            return
