from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from loguru import logger

from coding_agent_loop.agent import Agent
from coding_agent_loop.agent_config import AgentConfig
from coding_agent_loop.app_config import AppConfig, RuntimeEnv
from coding_agent_loop.compaction import (
    CompactionStrategy,
    NoneCompactionStrategy,
    SummarizeCompactionStrategy,
    model_summarizer,
)
from coding_agent_loop.logging_config import setup_logging
from coding_agent_loop.memory import MemoryStore, SessionStore, prune_sessions
from coding_agent_loop.permissions import PermissionChecker, PermissionPolicy
from coding_agent_loop.provider import LLMProvider, create_provider
from coding_agent_loop.system_prompt import build_system_prompt
from coding_agent_loop.tool_registry import ToolRegistry, get_all


@dataclass
class AppRuntime:
    agent: Agent
    provider: LLMProvider
    memory_store: MemoryStore
    session_store: SessionStore
    registry: ToolRegistry
    working_directory: str
    log_descriptions: list[str]

    async def close(self) -> None:
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()
        self.memory_store.close()


def _build_compaction(app: AppConfig, provider: LLMProvider) -> CompactionStrategy:
    if app.compaction_strategy_name != "summarize":
        return NoneCompactionStrategy()
    return SummarizeCompactionStrategy(
        threshold_messages=app.compaction_threshold,
        keep_recent=app.compaction_keep_recent,
        threshold_tokens=app.compaction_threshold_tokens,
        summarizer=model_summarizer(provider, app.model) if app.compaction_use_model else None,
    )


def _resolve_db_path(path: str, working_directory: str) -> str:
    db_path = Path(path)
    if not db_path.is_absolute():
        db_path = Path(working_directory) / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    missing = env.missing_credentials(app.provider_name)
    if missing:
        raise ValueError(f"{missing} environment variable is required for provider {app.provider_name!r}")

    working_directory = str(Path(app.working_directory or Path.cwd()).resolve())

    provider = create_provider(
        app.provider_name,
        api_key=env.provider_api_key or None,
        base_url=app.base_url,
        aws_access_key_id=env.aws_access_key_id,
        aws_secret_access_key=env.aws_secret_access_key,
        aws_session_token=env.aws_session_token,
        region=app.aws_region or env.aws_region,
    )

    registry = ToolRegistry(get_all(web_enabled=app.web_enabled))
    permissions = PermissionChecker(PermissionPolicy.from_config(app.permissions))

    memory_store = MemoryStore(_resolve_db_path(app.session_db_path, working_directory))
    session_store = SessionStore(memory_store)
    if app.session_retention_days > 0 or app.max_sessions > 0:
        prune_sessions(
            session_store,
            max_age=timedelta(days=app.session_retention_days) if app.session_retention_days > 0 else None,
            max_sessions=app.max_sessions,
        )

    config = AgentConfig(
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        system_prompt=build_system_prompt(working_directory, registry.names()),
        working_directory=working_directory,
        max_turns=app.max_turns,
        max_tool_result_chars=app.max_tool_result_chars,
        question_timeout_seconds=app.question_timeout_seconds,
        compaction_strategy=_build_compaction(app, provider),
    )

    agent_kwargs = dict(
        provider=provider,
        store=session_store,
        registry=registry,
        permissions=permissions,
        config=config,
    )
    try:
        if app.resume_session_id:
            agent = Agent.resume(app.resume_session_id, **agent_kwargs)
        else:
            agent = Agent.create(**agent_kwargs)
    except Exception:
        memory_store.close()
        raise
    logger.info(f"Session {agent.session.id} ready ({app.provider_name}/{app.model})")

    return AppRuntime(
        agent=agent,
        provider=provider,
        memory_store=memory_store,
        session_store=session_store,
        registry=registry,
        working_directory=working_directory,
        log_descriptions=log_descriptions,
    )
