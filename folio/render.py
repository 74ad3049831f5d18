from __future__ import annotations

import datetime as dt
import html
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import markdown
import yaml
from markdown.extensions.fenced_code import FencedBlockPreprocessor
from markdown.extensions.toc import TocExtension, unique
from markdown.treeprocessors import Treeprocessor

from .blocks import BlocksExtension
from .errors import ContentError
from .highlight import CODE_BLOCK_RE, CodeBlockPreprocessor, Highlighter
from .models import PostFrontmatter, TocItem
from .utils import parse_bool, parse_int

FRONT_MATTER_RE = re.compile(r"^---\n(.+?)\n---\n(.*)$", re.DOTALL)
SLUG_STRIP_RE = re.compile(r"[^a-z0-9-]")
HYPHENS_RE = re.compile(r"-{2,}")
DATE_FORMAT = "%Y-%m-%d"
TAG_RE = re.compile(r"<[^>]*>")
SPACE_RE = re.compile(r"\s+")
HEADING_RE = re.compile(r"^(?P<level>#{1,6})(?P<text>.*?)#*\s*$")
IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
EMPHASIS_RE = re.compile(r"\*\*|__|\*|~~|`")

CONTENT_EXTENSIONS = ["fenced_code", "tables", "smarty", "nl2br", "pymdownx.tilde", "pymdownx.magiclink"]
COMMENT_EXTENSIONS = ["fenced_code", "tables", "nl2br", "pymdownx.tilde", "pymdownx.magiclink"]
EXTENSION_CONFIGS = {"pymdownx.tilde": {"subscript": False}}
SAFE_URL_SCHEMES = {"http", "https", "mailto"}
URL_ATTRIBUTES = ("href", "src")
URL_IGNORED_RE = re.compile(r"[\x00-\x20\x7f]")


@dataclass
class RenderedDocument:
    html: str
    toc: list[TocItem] = field(default_factory=list)


def slugify(value: str, separator: str = "-") -> str:
    """Anchor id for a heading; also handed to the toc extension."""
    text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    text = text.lower().replace(" ", "-")
    text = SLUG_STRIP_RE.sub("", text)
    text = HYPHENS_RE.sub("-", text).strip("-")
    if separator != "-":
        text = text.replace("-", separator)
    return text or "section"


def parse_date(value: object) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return dt.datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        return None


def parse_front_matter(data: Union[bytes, str]) -> tuple[PostFrontmatter, str]:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    text = data.lstrip("\ufeff").replace("\r\n", "\n")
    match = FRONT_MATTER_RE.match(text)
    if not match:
        return PostFrontmatter(), text

    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise ContentError(f"invalid frontmatter: {exc}") from exc
    if meta is None:
        meta = {}
    if not isinstance(meta, dict):
        raise ContentError("frontmatter must be a mapping")

    frontmatter = PostFrontmatter(
        title=str(meta.get("title") or ""),
        description=str(meta.get("description") or ""),
        date=parse_date(meta.get("date")),
        updated=parse_date(meta.get("updated")),
        draft=parse_bool(meta.get("draft")),
        order=parse_int(meta.get("order"), 0),
    )
    return frontmatter, match.group(2)


def heading_text(raw: str) -> str:
    text = IMAGE_RE.sub(r"\1", raw)
    text = LINK_RE.sub(r"\1", text)
    text = TAG_RE.sub("", text)
    text = EMPHASIS_RE.sub("", text)
    return html.unescape(text).strip()


def extract_toc(body: str) -> list[TocItem]:
    """Collect ATX headings in document order.

    Ids are computed with the same slug function and duplicate-suffix rule
    the renderer uses, so each entry links to a rendered heading.
    """
    items: list[TocItem] = []
    used: set[str] = set()
    # drop code with the same two passes the renderer makes
    source = CODE_BLOCK_RE.sub("\n", body.replace("\r\n", "\n"))
    source = FencedBlockPreprocessor.FENCED_BLOCK_RE.sub("\n", source)
    for line in source.splitlines():
        match = HEADING_RE.match(line)
        if not match:
            continue
        text = heading_text(match.group("text"))
        ident = unique(slugify(text), used)
        if text:
            items.append(TocItem(level=len(match.group("level")), id=ident, text=text))
    return items


class Renderer:
    """Markdown to HTML for site content; raw HTML is passed through."""

    def __init__(self, highlighter: Optional[Highlighter] = None):
        self.highlighter = highlighter or Highlighter()
        self.md = markdown.Markdown(
            extensions=[*CONTENT_EXTENSIONS, TocExtension(slugify=slugify), BlocksExtension()],
            extension_configs=EXTENSION_CONFIGS,
            output_format="xhtml",
        )
        self.md.preprocessors.register(CodeBlockPreprocessor(self.md, self.highlighter), "code_blocks", 27)

    def render(self, source: str) -> str:
        try:
            return self.md.convert(source)
        finally:
            self.md.reset()

    def render_document(self, body: str) -> RenderedDocument:
        toc = extract_toc(body)
        return RenderedDocument(html=self.render(body), toc=toc)


def is_safe_url(url: str) -> bool:
    """Relative URLs and http(s)/mailto only."""
    # browsers decode entities and ignore control characters and whitespace in the scheme
    value = URL_IGNORED_RE.sub("", html.unescape(url))
    scheme, sep, _ = value.partition(":")
    if not sep or any(char in scheme for char in "/?#"):
        return True
    return scheme.lower() in SAFE_URL_SCHEMES


class SafeUrlTreeprocessor(Treeprocessor):
    """Blanks link and image targets that could run script."""

    def run(self, root) -> None:
        for element in root.iter():
            for attr in URL_ATTRIBUTES:
                value = element.get(attr)
                if value is not None and not is_safe_url(value):
                    element.set(attr, "")


def render_comment(text: str) -> str:
    md = markdown.Markdown(extensions=COMMENT_EXTENSIONS, extension_configs=EXTENSION_CONFIGS)
    md.preprocessors.deregister("html_block")
    md.inlinePatterns.deregister("html")
    # after "unescape" (0) so backslash-escaped colons are already restored
    md.treeprocessors.register(SafeUrlTreeprocessor(md), "safe_urls", -1)
    return md.convert(text)


def strip_html(html_text: str) -> str:
    text = TAG_RE.sub(" ", html_text)
    text = html.unescape(text)
    return SPACE_RE.sub(" ", text).strip()


def write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
