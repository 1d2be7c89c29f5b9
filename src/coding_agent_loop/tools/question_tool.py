from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult


class QuestionTool:
    @property
    def name(self) -> str:
        return "ask_user"

    @property
    def description(self) -> str:
        return (
            "Ask the user a clarifying question and wait for the answer. "
            "Use only when the task cannot proceed without the user's input."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "question": {
                    "type": "string",
                    "description": "The question to ask",
                },
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Optional list of suggested answers",
                },
            },
            "required": ["question"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        question = tool_input["question"].strip()
        options = [str(o) for o in tool_input.get("options") or []]
        prompt = question
        if options:
            prompt += "\n" + "\n".join(f"  {i}. {o}" for i, o in enumerate(options, start=1))

        answer = (await context.ask(prompt)).strip()
        if not answer:
            return ToolResult("The user did not answer.", title="Question", metadata={"answered": False})

        # Let the user answer with an option number.
        if options and answer.isdigit() and 1 <= int(answer) <= len(options):
            answer = options[int(answer) - 1]
        return ToolResult(f"User answered: {answer}", title="Question", metadata={"answered": True})
