import asyncio
import contextlib
import os
import platform
import signal
import subprocess
from typing import Any

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied

_IS_WINDOWS = platform.system() == "Windows"

DEFAULT_TIMEOUT_SECONDS = 120
MAX_TIMEOUT_SECONDS = 600
KILL_GRACE_SECONDS = 5
MAX_OUTPUT_CHARS = 30_000

SENSITIVE_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "GITHUB_TOKEN",
    "NPM_TOKEN",
    "SSH_AUTH_SOCK",
)


def scrubbed_env() -> dict[str, str]:
    env = dict(os.environ)
    for name in SENSITIVE_ENV_VARS:
        env.pop(name, None)
    return env


def truncate_output(output: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + f"\n\n[output truncated: {len(output):,} chars total, showing first {limit:,}]"


class BashTool:
    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute a shell command in the working directory and return its combined stdout and stderr. "
            f"Commands time out after {DEFAULT_TIMEOUT_SECONDS}s unless a timeout is given "
            f"(max {MAX_TIMEOUT_SECONDS}s)."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
                "timeout": {
                    "type": "number",
                    "description": f"Timeout in seconds (default {DEFAULT_TIMEOUT_SECONDS}, max {MAX_TIMEOUT_SECONDS})",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does",
                },
            },
            "required": ["command"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        command: str = tool_input["command"]
        timeout = min(float(tool_input.get("timeout") or DEFAULT_TIMEOUT_SECONDS), MAX_TIMEOUT_SECONDS)
        title = f"Bash: {tool_input.get('description') or command[:60]}"

        permission = await context.permissions.check_bash(command)
        if not permission.allowed:
            return permission_denied(permission.reason)

        if context.cancel_token.cancelled:
            return ToolResult("Command cancelled before it started", is_error=True, title=title)

        context.log.debug(f"bash: {command}")
        proc = await self._spawn(command, context.working_directory)

        communicate = asyncio.ensure_future(proc.communicate())
        cancelled = asyncio.ensure_future(context.cancel_token.wait())
        try:
            done, _ = await asyncio.wait({communicate, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(proc, communicate)
            raise
        finally:
            cancelled.cancel()

        if communicate not in done:
            stdout, stderr = await self._terminate(proc, communicate)
            output = _decode(stdout, stderr)
            if context.cancel_token.cancelled:
                return ToolResult(
                    truncate_output(f"{output}\n[command cancelled]".lstrip()),
                    is_error=True,
                    title=title,
                    metadata={"cancelled": True},
                )
            return ToolResult(
                truncate_output(f"{output}\n[timed out after {timeout:g}s]".lstrip()),
                is_error=True,
                title=title,
                metadata={"timed_out": True},
            )

        stdout, stderr = communicate.result()
        output = _decode(stdout, stderr)
        metadata = {"exit_code": proc.returncode}

        if proc.returncode != 0:
            return ToolResult(
                truncate_output(f"{output}\n[exit code {proc.returncode}]".lstrip()),
                is_error=True,
                title=title,
                metadata=metadata,
            )

        return ToolResult(truncate_output(output.rstrip()), title=title, metadata=metadata)

    @staticmethod
    async def _spawn(command: str, cwd: str) -> asyncio.subprocess.Process:
        if _IS_WINDOWS:
            return await asyncio.create_subprocess_shell(
                f"cmd.exe /c {command}",
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=scrubbed_env(),
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        # Own process group so the whole pipeline can be signalled at once.
        return await asyncio.create_subprocess_shell(
            command,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=scrubbed_env(),
            start_new_session=True,
        )

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> tuple[bytes, bytes]:
        """SIGTERM the process group, then SIGKILL it if it outlives the grace period."""
        _signal(proc, signal.SIGTERM)
        try:
            return await asyncio.wait_for(asyncio.shield(communicate), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            pass
        _signal(proc, signal.SIGKILL if not _IS_WINDOWS else signal.SIGTERM)
        try:
            return await asyncio.wait_for(asyncio.shield(communicate), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            communicate.cancel()
            return b"", b""


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if not _IS_WINDOWS:
            # The group can outlive the shell itself.
            os.killpg(proc.pid, sig)
        elif proc.returncode is None:
            proc.kill()


def _decode(stdout: bytes | None, stderr: bytes | None) -> str:
    return (stdout or b"").decode(errors="replace") + (stderr or b"").decode(errors="replace")
