import asyncio
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from coding_agent_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from coding_agent_loop.bootstrap import AppRuntime, bootstrap_runtime
from coding_agent_loop.cancellation import CancellationToken
from coding_agent_loop.console import ConsoleRenderer
from coding_agent_loop.memory import export_session
from coding_agent_loop.turn_engine import TurnStatus

_HELP = """\
Commands:
  /sessions                  list recent sessions for this project
  /export <path> [markdown]  write the current session to a file (json by default)
  /help                      show this message
  exit | quit                leave"""


def _print_banner(runtime: AppRuntime) -> None:
    print("coding-agent-loop (type 'exit' to quit, '/help' for commands)")
    print(f"Session: {runtime.agent.session.id}")
    print(f"Working directory: {runtime.working_directory}")
    print(f"Tools: {', '.join(runtime.registry.names())}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()


def _handle_command(runtime: AppRuntime, command: str) -> None:
    parts = command.split()
    name = parts[0]

    if name == "/help":
        print(_HELP)
    elif name == "/sessions":
        summaries = runtime.session_store.list(runtime.working_directory)
        if not summaries:
            print("No sessions.")
        for summary in summaries[:20]:
            marker = "*" if summary.id == runtime.agent.session.id else " "
            print(f"{marker} {summary.id}  {summary.updated_at}  ({summary.message_count} msgs)  {summary.title}")
    elif name == "/export":
        if len(parts) < 2:
            print("Usage: /export <path> [markdown]")
            return
        fmt = parts[2] if len(parts) > 2 else "json"
        try:
            text = export_session(runtime.agent.session, fmt)  # type: ignore[arg-type]
        except ValueError as ex:
            print(f"Export failed: {ex}")
            return
        Path(parts[1]).write_text(text, encoding="utf-8")
        print(f"Exported session to {parts[1]}")
    else:
        print(f"Unknown command: {name} (try /help)")


async def _process(runtime: AppRuntime, text: str, renderer: ConsoleRenderer) -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    sigint_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        sigint_installed = True
    except (NotImplementedError, RuntimeError):
        pass  # Windows event loops don't support signal handlers

    try:
        result = await runtime.agent.process(text, token, renderer)
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
        renderer.close()

    if result.status == TurnStatus.CANCELLED:
        print("[cancelled]")
    elif result.warning:
        print(f"[{result.warning}]")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)

    try:
        runtime = await bootstrap_runtime(app, env)
    except (ValueError, KeyError) as ex:
        logger.error(str(ex))
        sys.exit(1)

    _print_banner(runtime)
    renderer = ConsoleRenderer(show_spinner=sys.stdout.isatty())

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            if trimmed.startswith("/"):
                _handle_command(runtime, trimmed)
                continue

            try:
                print()
                await _process(runtime, trimmed, renderer)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
