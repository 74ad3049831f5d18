from __future__ import annotations

import html
import logging
import re

from markdown.preprocessors import Preprocessor
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import TextLexer, get_lexer_by_name
from pygments.styles import get_all_styles
from pygments.util import ClassNotFound

logger = logging.getLogger(__name__)

# info string: first word is the language, the rest is ignored
CODE_BLOCK_RE = re.compile(
    r"^(?P<fence>`{3,}|~{3,})[ \t]*(?P<lang>[^\s`~{]*)[^\n`]*\n(?:(?P<code>.*?)\n)??(?P=fence)[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


class Highlighter:
    def __init__(self, style: str = "github-dark", cssclass: str = "chroma"):
        self.formatter = HtmlFormatter(cssclass=cssclass, style=_resolve_style(style))
        self.tab_width = 4

    def highlight(self, code: str, language: str) -> str:
        try:
            lexer = get_lexer_by_name(language, tabsize=self.tab_width)
        except ClassNotFound:
            lexer = TextLexer(tabsize=self.tab_width)
        return highlight(code, lexer, self.formatter)

    def css(self) -> str:
        return self.formatter.get_style_defs(f".{self.formatter.cssclass}")


def _resolve_style(name: str) -> str:
    return name if name in set(get_all_styles()) else "default"


def render_code_block(code: str, language: str, highlighter: Highlighter) -> str:
    language = language or "text"
    try:
        highlighted = highlighter.highlight(code, language)
    except Exception as exc:  # pragma: no cover - depends on lexer internals
        logger.warning("Highlighting failed for %s block: %s", language, exc)
        return f"<pre><code>{html.escape(code)}</code></pre>"
    return f'<div class="code-block" data-language="{html.escape(language, quote=True)}">{highlighted}</div>'


def process_code_blocks(text: str, highlighter: Highlighter, store=None) -> str:
    """Replace fenced code blocks with highlighted HTML.

    When ``store`` is given the fragment is passed through it (the Markdown
    HTML stash) and the returned placeholder is inserted instead, so block
    parsing never touches the highlighted markup.
    """

    def repl(match: re.Match) -> str:
        fragment = render_code_block(match.group("code") or "", match.group("lang"), highlighter)
        if store is None:
            return fragment
        return f"\n\n{store(fragment)}\n\n"

    return CODE_BLOCK_RE.sub(repl, text)


class CodeBlockPreprocessor(Preprocessor):
    def __init__(self, md, highlighter: Highlighter):
        super().__init__(md)
        self.highlighter = highlighter

    def run(self, lines: list[str]) -> list[str]:
        text = "\n".join(lines)
        text = process_code_blocks(text, self.highlighter, store=self.md.htmlStash.store)
        return text.split("\n")
