import asyncio
import unittest

import httpx

from coding_agent_loop.permissions import PermissionChecker
from coding_agent_loop.tools.web.html_text import html_to_text
from coding_agent_loop.tools.web.web_fetch_tool import WebFetchTool
from tests.tools.base import ToolTestCase

_PAGE = """<html><head><title>Docs</title><script>var x = 1;</script></head>
<body><h1>Install</h1><p>Run <a href="https://pypi.org/">pip</a> first.</p>
<ul><li>alpha</li><li>beta</li></ul></body></html>"""


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/page":
        return httpx.Response(200, text=_PAGE, headers={"content-type": "text/html; charset=utf-8"})
    if request.url.path == "/data":
        return httpx.Response(200, json={"b": 1, "a": [1, 2]})
    return httpx.Response(404, text="missing")


class WebFetchToolTests(ToolTestCase):
    def _fetch(self, tool_input: dict, permissions: PermissionChecker | None = None):
        tool = WebFetchTool(transport=httpx.MockTransport(_handler))
        return asyncio.run(tool.execute(tool_input, self._context(permissions)))

    def test_html_is_converted_to_text(self) -> None:
        result = self._fetch({"url": "https://docs.example.com/page"})

        self.assertFalse(result.is_error)
        self.assertIn("Title: Docs", result.output)
        self.assertIn("# Install", result.output)
        self.assertIn("[pip](https://pypi.org/)", result.output)
        self.assertIn("- alpha", result.output)
        self.assertNotIn("var x", result.output)

    def test_json_is_pretty_printed(self) -> None:
        result = self._fetch({"url": "https://api.example.com/data"})

        self.assertIn('"a": [\n    1,', result.output)

    def test_truncates_to_max_chars(self) -> None:
        result = self._fetch({"url": "https://docs.example.com/page", "max_chars": 10})

        self.assertTrue(result.metadata["truncated"])
        self.assertIn("[Content truncated at 10 of", result.output)

    def test_http_error_status(self) -> None:
        result = self._fetch({"url": "https://docs.example.com/gone"})

        self.assertTrue(result.is_error)
        self.assertIn("HTTP 404", result.output)

    def test_rejects_non_http_scheme(self) -> None:
        result = self._fetch({"url": "file:///etc/passwd"})

        self.assertTrue(result.is_error)

    def test_requires_web_permission(self) -> None:
        result = self._fetch({"url": "https://docs.example.com/page"}, PermissionChecker())

        self.assertTrue(result.output.startswith("Permission denied:"))


class HtmlToTextTests(unittest.TestCase):
    def test_drops_scripts_and_keeps_structure(self) -> None:
        text = html_to_text(_PAGE)

        self.assertTrue(text.startswith("# Install"))
        self.assertNotIn("Docs", text)


if __name__ == "__main__":
    unittest.main()
