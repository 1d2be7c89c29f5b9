from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger

Capability = Literal["read", "write", "edit", "bash", "web", "all"]
Action = Literal["allow", "deny", "ask"]

# (capability, target, question) -> approved
ConfirmFn = Callable[[str, str | None, str], Awaitable[bool]]

NO_CALLBACK_REASON = "Interactive permission required but no callback provided"

# Substring patterns. "| sh" is left out because it also matches "| sha256sum".
DEFAULT_DENIED_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "rm -rf ~",
    "rm -rf *",
    "rm -fr /",
    "git push --force",
    "git push -f",
    ":(){ :|:& };:",
    "mkfs",
    "dd if=/dev/zero of=/dev/",
    "> /dev/sda",
    "chmod -R 777 /",
    "| bash",
    "|bash",
    "| zsh",
)

# Credential and key files, denied for every capability.
DEFAULT_DENIED_PATHS: tuple[str, ...] = (
    "**/.env*",
    "**/credentials*",
    "**/secrets*",
    "**/.ssh/*",
    "**/.aws/*",
)

_glob_cache: dict[str, re.Pattern[str]] = {}


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    compiled = _glob_cache.get(pattern)
    if compiled is not None:
        return compiled
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    compiled = re.compile("^" + "".join(parts) + "$", re.DOTALL)
    _glob_cache[pattern] = compiled
    return compiled


def match_glob(pattern: str, target: str) -> bool:
    """``**`` matches across directories, ``*`` within one segment, ``?`` one character."""
    return _glob_to_regex(pattern).match(target) is not None


@dataclass(frozen=True)
class PermissionRule:
    permission: str
    action: Action
    pattern: str | None = None

    def matches(self, capability: str, target: str | None) -> bool:
        if self.permission not in (capability, "all"):
            return False
        if not self.pattern:
            return True
        return target is not None and match_glob(self.pattern, target)


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    reason: str | None = None


@dataclass
class PermissionPolicy:
    rules: list[PermissionRule] = field(default_factory=list)
    allowed_paths: list[str] = field(default_factory=list)
    denied_paths: list[str] = field(default_factory=lambda: list(DEFAULT_DENIED_PATHS))
    allowed_commands: list[str] = field(default_factory=list)
    denied_commands: list[str] = field(default_factory=lambda: list(DEFAULT_DENIED_COMMANDS))

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> PermissionPolicy:
        """Build a policy from the ``Permissions`` section of config.json.

        Configured denied paths and commands extend the built-in lists rather than replace them.
        """
        config = config or {}
        rules: list[PermissionRule] = []
        for raw in config.get("Rules", []):
            action = str(raw.get("Action", "ask")).lower()
            if action not in ("allow", "deny", "ask"):
                logger.warning(f"Ignoring permission rule with unknown action: {raw!r}")
                continue
            rules.append(PermissionRule(
                permission=str(raw.get("Permission", "all")).lower(),
                action=action,
                pattern=raw.get("Pattern") or None,
            ))

        denied_paths = list(DEFAULT_DENIED_PATHS)
        for pattern in config.get("DeniedPaths", []):
            if pattern not in denied_paths:
                denied_paths.append(pattern)

        denied_commands = list(DEFAULT_DENIED_COMMANDS)
        for pattern in config.get("DeniedCommands", []):
            if pattern not in denied_commands:
                denied_commands.append(pattern)

        return cls(
            rules=rules,
            allowed_paths=list(config.get("AllowedPaths", [])),
            denied_paths=denied_paths,
            allowed_commands=list(config.get("AllowedCommands", [])),
            denied_commands=denied_commands,
        )


class PermissionChecker:
    """Evaluates capability requests against a policy, asking the user when the policy says ``ask``."""

    def __init__(self, policy: PermissionPolicy | None = None, confirm: ConfirmFn | None = None):
        self._policy = policy or PermissionPolicy()
        self._confirm = confirm

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    @property
    def has_confirm(self) -> bool:
        return self._confirm is not None

    def bind(self, confirm: ConfirmFn | None) -> PermissionChecker:
        """Return a checker with the same policy that asks through ``confirm``."""
        return PermissionChecker(self._policy, confirm)

    def evaluate(self, capability: str, target: str | None = None) -> Action:
        if target:
            for pattern in self._policy.denied_paths:
                if match_glob(pattern, target):
                    return "deny"
            for pattern in self._policy.allowed_paths:
                if match_glob(pattern, target):
                    return "allow"
        return self._evaluate_rules(capability, target)

    def _evaluate_rules(self, capability: str, target: str | None) -> Action:
        for rule in self._policy.rules:
            if rule.matches(capability, target):
                return rule.action
        return "ask"

    async def check(self, capability: str, target: str | None = None) -> PermissionResult:
        action = self.evaluate(capability, target)
        if action == "allow":
            return PermissionResult(True)
        if action == "deny":
            suffix = f" for {target}" if target else ""
            return PermissionResult(False, f"Permission denied by configuration: {capability}{suffix}")

        question = f"Allow {capability} access to {target}?" if target else f"Allow {capability}?"
        return await self._ask(capability, target, question, "User denied permission")

    async def check_bash(self, command: str) -> PermissionResult:
        for pattern in self._policy.denied_commands:
            if pattern in command:
                return PermissionResult(False, f"Command contains blocked pattern: {pattern}")
        for pattern in self._policy.allowed_commands:
            if pattern in command:
                return PermissionResult(True)

        action = self._evaluate_rules("bash", command)
        if action == "allow":
            return PermissionResult(True)
        if action == "deny":
            return PermissionResult(False, "Bash execution is disabled by configuration")

        preview = command if len(command) <= 100 else command[:100] + "..."
        return await self._ask("bash", command, f"Allow bash command: {preview}?", "User denied bash command")

    async def _ask(self, capability: str, target: str | None, question: str, denied_reason: str) -> PermissionResult:
        if self._confirm is None:
            return PermissionResult(False, NO_CALLBACK_REASON)
        allowed = await self._confirm(capability, target, question)
        if allowed:
            return PermissionResult(True)
        logger.info(f"Permission refused by user: {capability} {target or ''}".rstrip())
        return PermissionResult(False, denied_reason)


def allow_all() -> PermissionChecker:
    return PermissionChecker(PermissionPolicy(
        rules=[PermissionRule("all", "allow")],
        denied_paths=[],
        denied_commands=[],
    ))


def read_only() -> PermissionChecker:
    return PermissionChecker(PermissionPolicy(rules=[
        PermissionRule("read", "allow"),
        PermissionRule("all", "deny"),
    ]))
