from __future__ import annotations

import asyncio
import json
import sys
import threading

from coding_agent_loop.agent_events import (
    AgentEvent,
    ErrorOccurred,
    MessageStarted,
    PermissionRequested,
    QuestionAsked,
    TextDelta,
    ToolDone,
    ToolStarted,
)

_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
_ASSISTANT_PREFIX = "assistant> "
_TOOL_INPUT_PREVIEW = 80


class Spinner:
    """Thread-based spinner that renders on the current line using \\r."""

    def __init__(self, prefix: str = "", label: str = " Thinking..."):
        self._prefix = prefix
        self._label = label
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._frame_width = 1 + len(label)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None or self._stop.is_set():
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        clear = self._prefix + " " * self._frame_width
        sys.stdout.write("\r" + clear + "\r" + self._prefix)
        sys.stdout.flush()

    def _run(self) -> None:
        i = 0
        try:
            while not self._stop.is_set():
                frame = _SPINNER_FRAMES[i % len(_SPINNER_FRAMES)] + self._label
                sys.stdout.write("\r" + self._prefix + frame)
                sys.stdout.flush()
                self._stop.wait(0.08)
                i += 1
        except (UnicodeEncodeError, OSError):
            pass  # terminal can't render the frames


def _preview(tool_input: dict) -> str:
    text = json.dumps(tool_input, ensure_ascii=False)
    if len(text) > _TOOL_INPUT_PREVIEW:
        return text[: _TOOL_INPUT_PREVIEW - 3] + "..."
    return text


class ConsoleRenderer:
    """Event handler that streams agent output to the terminal and answers prompts via stdin."""

    def __init__(self, *, show_spinner: bool = True):
        self._show_spinner = show_spinner
        self._spinner: Spinner | None = None
        self._mid_line = False

    async def __call__(self, event: AgentEvent) -> None:
        if isinstance(event, MessageStarted):
            self._start_spinner()
        elif isinstance(event, TextDelta):
            self._stop_spinner()
            sys.stdout.write(event.text)
            sys.stdout.flush()
            self._mid_line = not event.text.endswith("\n")
        elif isinstance(event, ToolStarted):
            self._stop_spinner()
            self._line(f"  [{event.name}] {_preview(event.input)}")
        elif isinstance(event, ToolDone):
            status = "error" if event.is_error else "ok"
            label = event.title or event.name
            self._line(f"  [{status}] {label}")
        elif isinstance(event, ErrorOccurred):
            self._stop_spinner()
            self._line(f"Error ({event.error_type}): {event.message}")
        elif isinstance(event, PermissionRequested):
            self._stop_spinner()
            answer = await self._prompt(f"{event.question} [y/N] ")
            _resolve(event.reply, answer.strip().lower() in ("y", "yes"))
        elif isinstance(event, QuestionAsked):
            self._stop_spinner()
            self._line(event.question)
            answer = await self._prompt("answer> ")
            _resolve(event.reply, answer)

    def close(self) -> None:
        self._stop_spinner()
        if self._mid_line:
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._mid_line = False

    def _start_spinner(self) -> None:
        if not self._show_spinner or self._spinner is not None:
            return
        self._spinner = Spinner(prefix=_ASSISTANT_PREFIX if not self._mid_line else "")
        self._spinner.start()

    def _stop_spinner(self) -> None:
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None

    def _line(self, text: str) -> None:
        if self._mid_line:
            sys.stdout.write("\n")
            self._mid_line = False
        sys.stdout.write(text + "\n")
        sys.stdout.flush()

    async def _prompt(self, prompt: str) -> str:
        if self._mid_line:
            sys.stdout.write("\n")
            self._mid_line = False
        try:
            return await asyncio.to_thread(input, prompt)
        except EOFError:
            return ""


def _resolve(reply: asyncio.Future, value: object) -> None:
    # The agent may already have given up on the reply (timeout or cancel).
    if not reply.done():
        reply.set_result(value)
