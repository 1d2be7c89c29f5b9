from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from coding_agent_loop.tool import Tool, ToolContext, ToolResult
from coding_agent_loop.tools.bash_tool import BashTool
from coding_agent_loop.tools.edit_file_tool import EditFileTool
from coding_agent_loop.tools.glob_tool import GlobTool
from coding_agent_loop.tools.grep_tool import GrepTool
from coding_agent_loop.tools.ls_tool import LsTool
from coding_agent_loop.tools.multi_edit_tool import MultiEditTool
from coding_agent_loop.tools.question_tool import QuestionTool
from coding_agent_loop.tools.read_file_tool import ReadFileTool
from coding_agent_loop.tools.todo_tool import TodoTool
from coding_agent_loop.tools.write_file_tool import WriteFileTool


class ToolRegistry:
    """Name -> tool lookup plus the error boundary around every tool call."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning(f"Replacing already registered tool: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def definitions(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        selected = self._tools.values() if names is None else [self._tools[n] for n in names if n in self._tools]
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in selected
        ]

    async def execute(self, name: str, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(f"Unknown tool: {name}", is_error=True, title=name)
        try:
            return await tool.execute(tool_input, context)
        except Exception as ex:
            logger.warning(f'Tool "{name}" failed: {type(ex).__name__}: {ex}')
            return ToolResult(f'Error executing tool "{name}": {ex}', is_error=True, title=name)


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _base_tools(ctx: dict) -> list[Tool]:
    return [
        ReadFileTool(),
        WriteFileTool(),
        EditFileTool(),
        MultiEditTool(),
        LsTool(),
        GlobTool(),
        GrepTool(),
        BashTool(),
        TodoTool(),
        QuestionTool(),
    ]


def _web_enabled(ctx: dict) -> bool:
    return bool(ctx.get("web_enabled"))


def _web_tools(ctx: dict) -> list[Tool]:
    from coding_agent_loop.tools.web.web_fetch_tool import WebFetchTool

    return [WebFetchTool()]


_GROUPS = [
    ToolGroup(enabled=_always, build=_base_tools),
    ToolGroup(enabled=_web_enabled, build=_web_tools),
]


def get_all(web_enabled: bool = True) -> list[Tool]:
    ctx = {"web_enabled": web_enabled}

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
