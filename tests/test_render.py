import datetime as dt
import re

import pytest

from folio.errors import ContentError
from folio.render import Renderer, extract_toc, is_safe_url, parse_front_matter, render_comment, slugify, strip_html


def test_parse_front_matter_reads_fields():
    meta, body = parse_front_matter(
        "---\ntitle: Hello\ndescription: A post\ndate: 2024-02-03\ndraft: true\norder: 4\n---\nBody\n"
    )
    assert meta.title == "Hello"
    assert meta.description == "A post"
    assert meta.date == dt.date(2024, 2, 3)
    assert meta.draft is True
    assert meta.order == 4
    assert body == "Body\n"


def test_parse_front_matter_handles_bom_and_crlf():
    meta, body = parse_front_matter("\ufeff---\r\ntitle: Windows\r\n---\r\nLine one\r\nLine two\r\n".encode("utf-8"))
    assert meta.title == "Windows"
    assert body == "Line one\nLine two\n"


def test_parse_front_matter_without_block_returns_whole_text():
    meta, body = parse_front_matter("# Just markdown\n")
    assert meta.title == ""
    assert meta.date is None
    assert body == "# Just markdown\n"


def test_parse_front_matter_bad_date_is_ignored():
    meta, _ = parse_front_matter("---\ntitle: X\ndate: someday\n---\n")
    assert meta.date is None


def test_parse_front_matter_invalid_yaml_raises():
    with pytest.raises(ContentError):
        parse_front_matter("---\ntitle: [unclosed\n---\nBody")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Hello World", "hello-world"),
        ("What's new?", "whats-new"),
        ("Über   Cool", "uber-cool"),
        ("--Edge--case--", "edge-case"),
        ("!!!", "section"),
    ],
)
def test_slugify(text, expected):
    assert slugify(text) == expected


@pytest.mark.parametrize("text", ["Hello World", "What's new?", "Über   Cool", "--Edge--case--", "!!!", "snake_case id"])
def test_slugify_is_idempotent(text):
    once = slugify(text)
    assert slugify(once) == once


def test_toc_ids_match_rendered_heading_ids():
    body = "# Intro\n\n## Setup\n\ntext\n\n## Setup\n\n### Deep *dive*\n"
    renderer = Renderer()
    document = renderer.render_document(body)

    assert [item.id for item in document.toc] == ["intro", "setup", "setup_1", "deep-dive"]
    assert [item.level for item in document.toc] == [1, 2, 2, 3]
    for item in document.toc:
        assert f'id="{item.id}"' in document.html


def test_toc_skips_headings_inside_fences():
    body = "## Real\n\n```bash\n# comment, not a heading\n```\n\n~~~\n## also code\n~~~\n"
    assert [item.text for item in extract_toc(body)] == ["Real"]


def test_code_blocks_are_highlighted():
    html = Renderer().render("```python\nprint('hi')\n```\n")
    assert 'class="code-block"' in html
    assert 'data-language="python"' in html
    assert 'class="chroma"' in html


def test_unknown_language_falls_back_to_plain_text():
    html = Renderer().render("```nosuchlanguage\n<b>x</b>\n```\n")
    assert 'data-language="nosuchlanguage"' in html
    assert "&lt;b&gt;" in html


def test_content_allows_raw_html_and_tables():
    html = Renderer().render('<div class="note">raw</div>\n\n| a | b |\n|---|---|\n| 1 | 2 |\n')
    assert '<div class="note">raw</div>' in html
    assert "<table>" in html


def test_strikethrough_and_autolinks():
    html = Renderer().render("~~old~~ see https://example.com\n")
    assert "<del>old</del>" in html
    assert 'href="https://example.com"' in html


def test_renderer_is_reusable_between_documents():
    renderer = Renderer()
    renderer.render("## Title\n")
    html = renderer.render("## Title\n")
    assert 'id="title"' in html


def test_comment_rendering_escapes_html():
    html = render_comment("Hello <script>alert(1)</script>\n\n<div onclick=x>block</div>")
    assert "<script>" not in html
    assert "<div" not in html
    assert "&lt;script&gt;" in html


def test_comment_rendering_supports_markdown():
    html = render_comment("**bold** and `code`\n\n```\nfenced\n```")
    assert "<strong>bold</strong>" in html
    assert "<code>code</code>" in html
    assert re.search(r"<pre><code>fenced\s*</code></pre>", html)


def test_strip_html_collapses_whitespace():
    assert strip_html("<p>One &amp; <b>two</b></p>\n<p>three</p>") == "One & two three"


def test_toc_and_headings_agree_around_tilde_fences():
    body = "~~~\n## Setup\n~~~\n\n## Setup\n"
    document = Renderer().render_document(body)

    assert [item.id for item in document.toc] == ["setup"]
    assert 'id="setup"' in document.html
    assert "setup_1" not in document.html
    assert "<p>~~~</p>" not in document.html


@pytest.mark.parametrize(
    "source",
    [
        "```python \nx = 1\n```\n",
        "```c#\nint x;\n```\n",
        "```\n```\n",
        "~~~ruby\nputs 1\n~~~\n",
        "````md\n```\nnested\n```\n````\n",
    ],
)
def test_unusual_fences_render_as_code_blocks(source):
    html = Renderer().render(source)
    assert "<pre" in html
    assert "<p><code>" not in html


def test_fence_info_string_keeps_first_word_as_language():
    html = Renderer().render('```python title="demo.py"\nprint(1)\n```\n')
    assert 'data-language="python"' in html


def test_toc_skips_headings_in_unusual_fences():
    body = "```c# \n# not a heading\n```\n\n## Real\n\n````\n## also code\n````\n"
    assert [item.text for item in extract_toc(body)] == ["Real"]


@pytest.mark.parametrize(
    "source",
    [
        "[click](javascript:alert(document.cookie))",
        "[click](JaVaScRiPt:alert(1))",
        "[click](&#106;avascript:alert(1))",
        "[click](javascript\\:alert(1))",
        "![pic](data:text/html;base64,PHNjcmlwdD4=)",
        "[click](vbscript:msgbox(1))",
    ],
)
def test_comment_rendering_blanks_script_urls(source):
    html = render_comment(source)
    lowered = html.lower()
    assert "javascript" not in lowered
    assert "vbscript" not in lowered
    assert "data:" not in lowered
    assert 'href=""' in html or 'src=""' in html


def test_comment_rendering_keeps_ordinary_links():
    html = render_comment("[site](https://example.com) [post](/blog/a) [me](mailto:ada@example.com) [up](../x)")
    assert 'href="https://example.com"' in html
    assert 'href="/blog/a"' in html
    assert 'href="mailto:ada@example.com"' in html
    assert 'href="../x"' in html


@pytest.mark.parametrize(
    "url, safe",
    [
        ("https://example.com", True),
        ("HTTP://example.com", True),
        ("/relative/path", True),
        ("page?next=javascript:x", True),
        ("#anchor", True),
        ("javascript:alert(1)", False),
        (" java\tscript:alert(1)", False),
        ("&#x6A;avascript:alert(1)", False),
        ("data:image/png;base64,AAAA", False),
    ],
)
def test_is_safe_url(url, safe):
    assert is_safe_url(url) is safe
