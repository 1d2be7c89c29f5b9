import re
from html import unescape

from bs4 import BeautifulSoup, NavigableString

_DROP_TAGS = ["script", "style", "head", "noscript", "svg", "iframe"]
_BLOCK_TAGS = ["p", "div", "section", "article", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre"]


def extract_title(soup: BeautifulSoup) -> str:
    tag = soup.find("title")
    return tag.get_text(strip=True) if tag else ""


def soup_to_text(soup: BeautifulSoup) -> str:
    """Flatten parsed HTML to readable text. Mutates ``soup``."""
    for tag in soup.find_all(_DROP_TAGS):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for level in range(1, 7):
        for heading in soup.find_all(f"h{level}"):
            heading.insert(0, NavigableString("#" * level + " "))

    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert(0, NavigableString("\n"))
        tag.append(NavigableString("\n"))

    for code in soup.find_all("pre"):
        code.insert(0, NavigableString("```\n"))
        code.append(NavigableString("\n```"))

    for a in soup.find_all("a", href=True):
        href = a["href"]
        text = a.get_text(strip=True)
        if href.startswith(("#", "javascript:")) or href == text:
            continue
        a.replace_with(f"[{text}]({href})" if text else href)

    for li in soup.find_all("li"):
        li.insert(0, NavigableString("\n- "))

    for cell in soup.find_all(["td", "th"]):
        cell.append(NavigableString(" | "))

    body = soup.find("body")
    text = unescape((body or soup).get_text())

    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html: str) -> str:
    return soup_to_text(BeautifulSoup(html, "lxml"))
