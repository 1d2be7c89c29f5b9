from pathlib import Path
from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied


class _EditFailed(Exception):
    pass


def apply_edits(content: str, edits: list[dict[str, Any]]) -> tuple[str, int]:
    """Apply ``edits`` in order to ``content``; returns the new text and the replacement count.

    Each edit sees the result of the previous one. Raises ``_EditFailed`` on the first edit
    whose ``old_string`` is missing or ambiguous, leaving nothing applied.
    """
    replaced = 0
    for edit in edits:
        old_string = edit.get("old_string") or ""
        new_string = edit.get("new_string", "")
        if not old_string:
            raise _EditFailed("Missing old_string in edit")
        if old_string == new_string:
            continue

        occurrences = content.count(old_string)
        if occurrences == 0:
            preview = old_string[:50] + ("..." if len(old_string) > 50 else "")
            raise _EditFailed(f'String not found: "{preview}"')
        if occurrences > 1 and not edit.get("replace_all"):
            raise _EditFailed(f"Found {occurrences} occurrences. Use replace_all or make old_string unique.")

        if edit.get("replace_all"):
            content = content.replace(old_string, new_string)
            replaced += occurrences
        else:
            content = content.replace(old_string, new_string, 1)
            replaced += 1
    return content, replaced


class MultiEditTool:
    @property
    def name(self) -> str:
        return "multiedit"

    @property
    def description(self) -> str:
        return (
            "Apply several exact string replacements across one or more files in a single call. "
            "Edits to one file are applied in order and the file is only written if all of them succeed."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "edits": {
                    "type": "array",
                    "description": "One entry per file",
                    "items": {
                        "type": "object",
                        "properties": {
                            "file": {"type": "string", "description": "Path of the file to edit"},
                            "edits": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "old_string": {"type": "string"},
                                        "new_string": {"type": "string"},
                                        "replace_all": {"type": "boolean"},
                                    },
                                    "required": ["old_string", "new_string"],
                                },
                            },
                        },
                        "required": ["file", "edits"],
                    },
                },
                "dry_run": {
                    "type": "boolean",
                    "description": "Validate the edits without writing any file",
                },
            },
            "required": ["edits"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        file_edits = tool_input.get("edits")
        dry_run = bool(tool_input.get("dry_run", False))

        if not isinstance(file_edits, list) or not file_edits:
            return ToolResult("Error: edits must be a non-empty array", is_error=True)
        for entry in file_edits:
            if not isinstance(entry, dict) or not entry.get("file") or not isinstance(entry.get("edits"), list):
                return ToolResult('Error: each entry needs "file" (string) and "edits" (array)', is_error=True)

        targets: list[tuple[str, Path, list[dict[str, Any]]]] = []
        for entry in file_edits:
            file_path = context.resolve_path(entry["file"])
            permission = await context.permissions.check("edit", str(file_path))
            if not permission.allowed:
                return permission_denied(f"{permission.reason} ({entry['file']})")
            targets.append((entry["file"], file_path, entry["edits"]))

        lines: list[str] = []
        failed = 0
        total_replaced = 0
        for name, file_path, edits in targets:
            try:
                content = file_path.read_text(encoding="utf-8")
                updated, replaced = apply_edits(content, edits)
                if not dry_run:
                    file_path.write_text(updated, encoding="utf-8")
            except FileNotFoundError:
                failed += 1
                lines.append(f"[failed] {name}: File not found")
                continue
            except (OSError, _EditFailed) as ex:
                failed += 1
                lines.append(f"[failed] {name}: {ex}")
                continue

            total_replaced += replaced
            verb = "Would apply" if dry_run else "Applied"
            suffix = "" if replaced == 1 else "s"
            lines.append(f"[ok] {name}: {verb} edits ({replaced} replacement{suffix})")

        status = "Success" if failed == 0 else f"Partial ({failed} failed)"
        prefix = "[Dry run] " if dry_run else ""
        header = f"{prefix}{status}: {len(targets) - failed}/{len(targets)} files"
        return ToolResult(
            header + "\n\n" + "\n".join(lines),
            is_error=failed > 0,
            title=f"MultiEdit: {len(targets)} files",
            metadata={"failed": failed, "replacements": total_replaced, "dry_run": dry_run},
        )
