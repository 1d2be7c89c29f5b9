from pathlib import Path
from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied

MAX_RESULTS = 1000
IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


def is_ignored(path: Path, root: Path) -> bool:
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        return False
    return any(part in IGNORED_DIRS for part in parts[:-1])


class GlobTool:
    @property
    def name(self) -> str:
        return "glob"

    @property
    def description(self) -> str:
        return (
            "Find files by glob pattern (e.g. '**/*.py', 'src/**/test_*.py'). "
            "Results are sorted by modification time, newest first."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern relative to the search directory",
                },
                "path": {
                    "type": "string",
                    "description": "Directory to search (default: working directory)",
                },
            },
            "required": ["pattern"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        pattern: str = tool_input["pattern"]
        root = context.resolve_path(tool_input.get("path") or ".")

        permission = await context.permissions.check("read", str(root))
        if not permission.allowed:
            return permission_denied(permission.reason)

        if not root.is_dir():
            return ToolResult(f"Error: Not a directory: {root}", is_error=True)

        matches: list[tuple[float, Path]] = []
        for match in root.glob(pattern):
            if not match.is_file() or is_ignored(match, root):
                continue
            try:
                matches.append((match.stat().st_mtime, match))
            except OSError:
                continue

        matches.sort(key=lambda item: item[0], reverse=True)
        total = len(matches)
        shown = [str(p) for _, p in matches[:MAX_RESULTS]]

        if not shown:
            return ToolResult(f"No files found matching {pattern} in {root}", title=f"Glob: {pattern}")

        output = "\n".join(shown)
        if total > MAX_RESULTS:
            output += f"\n\n[{total - MAX_RESULTS} more files not shown; narrow the pattern]"
        return ToolResult(output, title=f"Glob: {pattern}", metadata={"count": total})
