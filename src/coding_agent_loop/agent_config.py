from dataclasses import dataclass, field

from coding_agent_loop.compaction import CompactionStrategy, NoneCompactionStrategy


@dataclass
class AgentConfig:
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float | None = 1.0
    system_prompt: str = ""
    working_directory: str = "."
    max_turns: int = 50
    max_tool_result_chars: int = 40_000
    doom_loop_window: int = 10
    doom_loop_threshold: int = 3
    question_timeout_seconds: float = 300.0
    compaction_strategy: CompactionStrategy = field(default_factory=NoneCompactionStrategy)
