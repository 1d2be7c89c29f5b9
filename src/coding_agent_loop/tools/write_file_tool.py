from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied


class WriteFileTool:
    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file, creating it (and any missing parent directories) or overwriting it."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to write",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = tool_input["path"]
        content = tool_input["content"]
        file_path = context.resolve_path(path)

        permission = await context.permissions.check("write", str(file_path))
        if not permission.allowed:
            return permission_denied(permission.reason)

        existed = file_path.exists()
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except OSError as ex:
            return ToolResult(f"Error writing file: {ex}", is_error=True)

        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        verb = "Updated" if existed else "Created"
        return ToolResult(
            f"{verb} {file_path} ({line_count} lines)",
            title=f"Write: {path}",
            metadata={"path": str(file_path), "created": not existed, "lines": line_count},
        )
