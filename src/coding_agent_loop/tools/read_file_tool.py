from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied

DEFAULT_LINE_LIMIT = 2000
MAX_LINE_CHARS = 2000

_BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".ico",
    ".pdf", ".zip", ".tar", ".gz", ".exe", ".dll", ".so", ".dylib",
}


class ReadFileTool:
    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read a text file and return its contents with line numbers. "
            "Use offset and limit to page through large files."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to read",
                },
                "offset": {
                    "type": "number",
                    "description": "1-based line number to start reading from",
                },
                "limit": {
                    "type": "number",
                    "description": f"Maximum number of lines to return (default {DEFAULT_LINE_LIMIT})",
                },
            },
            "required": ["path"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = tool_input["path"]
        offset = max(1, int(tool_input.get("offset") or 1))
        limit = max(1, int(tool_input.get("limit") or DEFAULT_LINE_LIMIT))
        file_path = context.resolve_path(path)

        permission = await context.permissions.check("read", str(file_path))
        if not permission.allowed:
            return permission_denied(permission.reason)

        if not file_path.exists():
            return ToolResult(f"Error: File not found: {file_path}", is_error=True)
        if file_path.is_dir():
            return ToolResult(
                f"Error: {file_path} is a directory. Use the glob or bash tool to list it.",
                is_error=True,
            )
        if file_path.suffix.lower() in _BINARY_EXTENSIONS:
            size = file_path.stat().st_size
            return ToolResult(
                f"[Binary file: {file_path}]\nSize: {size:,} bytes\nBinary files cannot be displayed as text.",
                title=f"Read: {path}",
                metadata={"binary": True, "size": size},
            )

        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as ex:
            return ToolResult(f"Error reading file: {ex}", is_error=True)

        lines = content.split("\n")
        total = len(lines)
        start = offset - 1
        end = min(total, start + limit)
        width = len(str(end))

        numbered = []
        for number, line in enumerate(lines[start:end], start=offset):
            if len(line) > MAX_LINE_CHARS:
                line = line[:MAX_LINE_CHARS] + "..."
            numbered.append(f"{number:>{width}}\t{line}")

        output = "\n".join(numbered)
        if start > 0 or end < total:
            output = f"[Showing lines {offset}-{end} of {total}]\n\n{output}"

        return ToolResult(
            output,
            title=f"Read: {path}",
            metadata={"total_lines": total, "start_line": offset, "end_line": end, "truncated": end < total},
        )
