from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied


class EditFileTool:
    @property
    def name(self) -> str:
        return "edit_file"

    @property
    def description(self) -> str:
        return (
            "Replace an exact string in a file. old_string must match exactly, including whitespace, "
            "and must be unique in the file unless replace_all is true."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to edit",
                },
                "old_string": {
                    "type": "string",
                    "description": "The exact text to replace",
                },
                "new_string": {
                    "type": "string",
                    "description": "The replacement text",
                },
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace every occurrence instead of requiring a unique match",
                },
            },
            "required": ["path", "old_string", "new_string"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = tool_input["path"]
        old_string: str = tool_input["old_string"]
        new_string: str = tool_input["new_string"]
        replace_all = bool(tool_input.get("replace_all", False))
        file_path = context.resolve_path(path)

        permission = await context.permissions.check("edit", str(file_path))
        if not permission.allowed:
            return permission_denied(permission.reason)

        if old_string == new_string:
            return ToolResult("Error: old_string and new_string are identical", is_error=True)
        if not old_string:
            return ToolResult("Error: old_string must not be empty", is_error=True)

        try:
            content = file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ToolResult(f"Error: File not found: {file_path}", is_error=True)
        except OSError as ex:
            return ToolResult(f"Error reading file: {ex}", is_error=True)

        occurrences = content.count(old_string)
        if occurrences == 0:
            preview = "\n".join(f"{i}: {line}" for i, line in enumerate(content.split("\n")[:10], start=1))
            return ToolResult(
                f"Error: Could not find the specified text in {file_path}.\n\n"
                f"File preview (first 10 lines):\n{preview}",
                is_error=True,
            )
        if occurrences > 1 and not replace_all:
            return ToolResult(
                f"Error: Found {occurrences} occurrences of old_string. "
                "Add surrounding context to make it unique, or set replace_all to true.",
                is_error=True,
            )

        if replace_all:
            updated = content.replace(old_string, new_string)
            replaced = occurrences
        else:
            updated = content.replace(old_string, new_string, 1)
            replaced = 1

        try:
            file_path.write_text(updated, encoding="utf-8")
        except OSError as ex:
            return ToolResult(f"Error writing file: {ex}", is_error=True)

        suffix = "" if replaced == 1 else "s"
        return ToolResult(
            f"Edited {file_path}: replaced {replaced} occurrence{suffix}",
            title=f"Edit: {path}",
            metadata={"path": str(file_path), "replacements": replaced},
        )
