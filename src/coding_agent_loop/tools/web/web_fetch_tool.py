import json
from typing import Any
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from coding_agent_loop.tool import ToolContext, ToolResult, permission_denied
from coding_agent_loop.tools.web.html_text import extract_title, soup_to_text

_DEFAULT_MAX_CHARS = 50_000
_MAX_RESPONSE_BYTES = 5_000_000
_TIMEOUT_SECONDS = 30
_MAX_REDIRECTS = 5

_HEADERS = {
    "User-Agent": "coding-agent-loop/0.1 (+https://pypi.org/project/coding-agent-loop/)",
    "Accept": "text/html,application/xhtml+xml,application/json,text/plain;q=0.9,*/*;q=0.8",
}


class WebFetchTool:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch a URL and return its content as readable text. HTML is converted to text with links "
            "preserved, JSON is pretty-printed. GET requests only."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The http or https URL to fetch",
                },
                "max_chars": {
                    "type": "number",
                    "description": f"Maximum characters of content to return (default {_DEFAULT_MAX_CHARS})",
                },
            },
            "required": ["url"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        url: str = tool_input["url"]
        max_chars = int(tool_input.get("max_chars") or _DEFAULT_MAX_CHARS)
        title = f"Fetch: {url}"

        if urlparse(url).scheme not in ("http", "https"):
            return ToolResult("Error: URL must use http or https", is_error=True, title=title)

        permission = await context.permissions.check("web", url)
        if not permission.allowed:
            return permission_denied(permission.reason)

        try:
            async with httpx.AsyncClient(
                headers=_HEADERS,
                timeout=_TIMEOUT_SECONDS,
                follow_redirects=True,
                max_redirects=_MAX_REDIRECTS,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            return ToolResult(f"Error: Request timed out after {_TIMEOUT_SECONDS} seconds", is_error=True, title=title)
        except httpx.TooManyRedirects:
            return ToolResult(f"Error: Too many redirects (max {_MAX_REDIRECTS})", is_error=True, title=title)
        except httpx.HTTPError as ex:
            return ToolResult(f"Error: {ex}", is_error=True, title=title)

        if response.status_code >= 400:
            return ToolResult(f"Error: HTTP {response.status_code} fetching {url}", is_error=True, title=title)

        size = len(response.content)
        if size > _MAX_RESPONSE_BYTES:
            return ToolResult(
                f"Error: Response too large ({size:,} bytes, max {_MAX_RESPONSE_BYTES:,})",
                is_error=True,
                title=title,
            )

        content_type = response.headers.get("content-type", "")
        page_title = ""
        if "html" in content_type:
            soup = BeautifulSoup(response.text, "lxml")
            page_title = extract_title(soup)
            content = soup_to_text(soup)
        elif "json" in content_type:
            try:
                content = json.dumps(response.json(), indent=2)
            except ValueError:
                content = response.text
        else:
            content = response.text

        original_length = len(content)
        truncated = original_length > max_chars
        if truncated:
            content = content[:max_chars]

        header = [f"URL: {url}"]
        final_url = str(response.url)
        if final_url != url:
            header.append(f"Final URL: {final_url}")
        header.append(f"Content-Type: {content_type}")
        if page_title:
            header.append(f"Title: {page_title}")

        parts = ["\n".join(header), "", content]
        if truncated:
            parts.append(f"\n[Content truncated at {max_chars:,} of {original_length:,} characters]")

        return ToolResult(
            "\n".join(parts),
            title=title,
            metadata={"status": response.status_code, "truncated": truncated},
        )
