import asyncio
import os
import sys
import unittest
from unittest.mock import patch

from coding_agent_loop.permissions import PermissionChecker, PermissionPolicy, PermissionRule
from coding_agent_loop.tools.bash_tool import BashTool, truncate_output
from tests.tools.base import ToolTestCase


@unittest.skipIf(sys.platform == "win32", "POSIX shell semantics")
class BashToolTests(ToolTestCase):
    def _run(self, tool_input: dict, permissions: PermissionChecker | None = None):
        return asyncio.run(BashTool().execute(tool_input, self._context(permissions)))

    def test_runs_in_working_directory(self) -> None:
        (self._tmp_dir / "marker.txt").write_text("", encoding="utf-8")

        result = self._run({"command": "ls"})

        self.assertFalse(result.is_error)
        self.assertEqual("marker.txt", result.output)
        self.assertEqual(0, result.metadata["exit_code"])

    def test_nonzero_exit_is_error_with_code(self) -> None:
        result = self._run({"command": "echo oops >&2; exit 3"})

        self.assertTrue(result.is_error)
        self.assertIn("oops", result.output)
        self.assertTrue(result.output.endswith("[exit code 3]"))

    def test_timeout_kills_command(self) -> None:
        result = self._run({"command": "sleep 10", "timeout": 0.3})

        self.assertTrue(result.is_error)
        self.assertTrue(result.metadata["timed_out"])
        self.assertIn("[timed out after 0.3s]", result.output)

    def test_cancellation_stops_command(self) -> None:
        async def go():
            context = self._context()
            asyncio.get_running_loop().call_later(0.2, context.cancel_token.cancel)
            return await BashTool().execute({"command": "sleep 10"}, context)

        result = asyncio.run(go())

        self.assertTrue(result.is_error)
        self.assertTrue(result.metadata["cancelled"])
        self.assertIn("[command cancelled]", result.output)

    def test_blocked_pattern_is_denied_without_running(self) -> None:
        checker = PermissionChecker(PermissionPolicy(rules=[PermissionRule("bash", "allow")]))

        result = self._run({"command": f"touch {self._tmp_dir}/ran | bash"}, checker)

        self.assertFalse(result.is_error)
        self.assertEqual("Permission denied: Command contains blocked pattern: | bash", result.output)
        self.assertFalse((self._tmp_dir / "ran").exists())

    def test_secrets_are_scrubbed_from_environment(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-test"}):
            result = self._run({"command": 'echo "${ANTHROPIC_API_KEY:-unset}"'})

        self.assertEqual("unset", result.output)


class TruncateOutputTests(unittest.TestCase):
    def test_long_output_is_cut_with_notice(self) -> None:
        output = truncate_output("x" * 50, limit=10)

        self.assertTrue(output.startswith("x" * 10 + "\n\n[output truncated: 50 chars total"))
