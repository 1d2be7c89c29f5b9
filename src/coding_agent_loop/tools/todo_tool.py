from typing import Any
from uuid import uuid4

from coding_agent_loop.models import utc_now
from coding_agent_loop.tool import ToolContext, ToolResult

_STATUSES = ("pending", "in_progress", "completed")
_PRIORITIES = ("low", "medium", "high")
_MARKERS = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}


def _format(todos: list[dict[str, Any]]) -> str:
    if not todos:
        return "No todos."
    lines = []
    for todo in todos:
        priority = f" ({todo['priority']})" if todo.get("priority") else ""
        lines.append(f"{_MARKERS[todo['status']]} {todo['id']}: {todo['content']}{priority}")
    done = sum(1 for t in todos if t["status"] == "completed")
    lines.append(f"\n{done}/{len(todos)} completed")
    return "\n".join(lines)


class TodoTool:
    """Task list for the current conversation, kept in the tool context state."""

    @property
    def name(self) -> str:
        return "todo"

    @property
    def description(self) -> str:
        return (
            "Manage a task list for the current conversation to track multi-step work. "
            "Actions: add, list, complete, update, remove, clear (removes completed items)."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "list", "complete", "update", "remove", "clear"],
                    "description": "Action to perform",
                },
                "content": {
                    "type": "string",
                    "description": "Todo text (required for add)",
                },
                "id": {
                    "type": "string",
                    "description": "Todo id (required for complete, update, remove)",
                },
                "status": {
                    "type": "string",
                    "enum": list(_STATUSES),
                    "description": "New status for update",
                },
                "priority": {
                    "type": "string",
                    "enum": list(_PRIORITIES),
                    "description": "Priority level",
                },
            },
            "required": ["action"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        action = tool_input.get("action")
        todos: list[dict[str, Any]] = context.state.setdefault("todos", [])

        if action == "add":
            content = (tool_input.get("content") or "").strip()
            if not content:
                return ToolResult("Error: content is required for add", is_error=True)
            priority = tool_input.get("priority")
            todo = {
                "id": uuid4().hex[:8],
                "content": content,
                "status": "pending",
                "priority": priority if priority in _PRIORITIES else None,
                "created_at": utc_now(),
            }
            todos.append(todo)
            return ToolResult(f"Added {todo['id']}: {content}\n\n{_format(todos)}", title="Todo: add")

        if action == "list":
            return ToolResult(_format(todos), title="Todo: list", metadata={"count": len(todos)})

        if action == "clear":
            before = len(todos)
            todos[:] = [t for t in todos if t["status"] != "completed"]
            return ToolResult(f"Cleared {before - len(todos)} completed todos\n\n{_format(todos)}", title="Todo: clear")

        if action not in ("complete", "update", "remove"):
            return ToolResult(f"Error: unknown action {action!r}", is_error=True)

        todo_id = tool_input.get("id")
        todo = next((t for t in todos if t["id"] == todo_id), None)
        if todo is None:
            return ToolResult(f"Error: no todo with id {todo_id!r}", is_error=True)

        if action == "remove":
            todos.remove(todo)
        elif action == "complete":
            todo["status"] = "completed"
        else:
            status = tool_input.get("status")
            if status is not None:
                if status not in _STATUSES:
                    return ToolResult(f"Error: invalid status {status!r}", is_error=True)
                todo["status"] = status
            if tool_input.get("content"):
                todo["content"] = tool_input["content"].strip()
            if tool_input.get("priority") in _PRIORITIES:
                todo["priority"] = tool_input["priority"]

        return ToolResult(_format(todos), title=f"Todo: {action}")
