"""Custom block syntax for post bodies.

The set of block kinds is closed: each processor only recognises its own
syntax and produces a :class:`BlockNode`; turning a node into markup is
done by the renderer registered for its kind in :data:`BLOCK_RENDERERS`.
"""

from __future__ import annotations

import enum
import re
import xml.etree.ElementTree as etree
from dataclasses import dataclass, field
from typing import Callable, Optional

from markdown.blockprocessors import BlockProcessor
from markdown.extensions import Extension

ASIDE_OPENERS = {":::aside", "::: aside"}
BLOCK_CLOSER = ":::"
PDF_RE = re.compile(r'^:::pdf\{src="([^"]+)"\}\s*$')
ALERT_RE = re.compile(r"^> ?\[!(NOTE|TIP|IMPORTANT|WARNING|CAUTION)\]([+-]?)[ \t]*(.*)$", re.IGNORECASE)
QUOTE_PREFIX_RE = re.compile(r"^> ?")
YOUTUBE_URL = r"https?://(?:www\.|m\.)?(?:youtube\.com/watch\?v=|youtu\.be/)([A-Za-z0-9_-]{11})[^\s)]*"
EMBED_RE = re.compile(rf"^(?:!\[([^\]]*)\]\({YOUTUBE_URL}\)|{YOUTUBE_URL})$")


class BlockKind(enum.Enum):
    ASIDE = "aside"
    PDF = "pdf"
    ALERT = "alert"
    EMBED = "embed"


@dataclass
class BlockNode:
    kind: BlockKind
    attrs: dict[str, str] = field(default_factory=dict)


def build_aside(parent: etree.Element, node: BlockNode) -> etree.Element:
    aside = etree.SubElement(parent, "aside")
    aside.set("class", "aside")
    content = etree.SubElement(aside, "div")
    content.set("class", "aside-content")
    return content


def build_pdf(parent: etree.Element, node: BlockNode) -> None:
    src = node.attrs["src"]
    wrapper = etree.SubElement(parent, "div")
    wrapper.set("class", "pdf-embed")
    frame = etree.SubElement(wrapper, "iframe")
    frame.set("src", src)
    frame.set("width", "100%")
    frame.set("height", "600")
    frame.set("type", "application/pdf")
    frame.set("title", "PDF Document")
    fallback = etree.SubElement(frame, "p")
    fallback.text = "Your browser does not support PDF embeds. "
    link = etree.SubElement(fallback, "a")
    link.set("href", src)
    link.text = "Download the PDF"
    link.tail = "."
    return None


def build_alert(parent: etree.Element, node: BlockNode) -> etree.Element:
    kind = node.attrs["type"]
    fold = node.attrs.get("fold", "")
    title = node.attrs.get("title") or kind.capitalize()
    if fold:
        box = etree.SubElement(parent, "details")
        if fold == "+":
            box.set("open", "open")
        heading = etree.SubElement(box, "summary")
    else:
        box = etree.SubElement(parent, "div")
        heading = etree.SubElement(box, "p")
    box.set("class", f"callout callout-{kind}")
    heading.set("class", "callout-title")
    heading.text = title
    body = etree.SubElement(box, "div")
    body.set("class", "callout-body")
    return body


def build_embed(parent: etree.Element, node: BlockNode) -> None:
    wrapper = etree.SubElement(parent, "div")
    wrapper.set("class", "embed embed-youtube")
    frame = etree.SubElement(wrapper, "iframe")
    frame.set("src", f"https://www.youtube.com/embed/{node.attrs['video']}")
    frame.set("title", node.attrs.get("title") or "YouTube video")
    frame.set("loading", "lazy")
    frame.set("allow", "accelerometer; encrypted-media; gyroscope; picture-in-picture")
    frame.set("allowfullscreen", "allowfullscreen")
    frame.text = ""
    return None


BLOCK_RENDERERS: dict[BlockKind, Callable[[etree.Element, BlockNode], Optional[etree.Element]]] = {
    BlockKind.ASIDE: build_aside,
    BlockKind.PDF: build_pdf,
    BlockKind.ALERT: build_alert,
    BlockKind.EMBED: build_embed,
}


def render_block(parent: etree.Element, node: BlockNode) -> Optional[etree.Element]:
    return BLOCK_RENDERERS[node.kind](parent, node)


def _find_line(lines: list[str], match: Callable[[str], bool]) -> int:
    for index, line in enumerate(lines):
        if match(line):
            return index
    return -1


class AsideProcessor(BlockProcessor):
    def test(self, parent, block):
        return _find_line(block.split("\n"), lambda line: line.strip() in ASIDE_OPENERS) >= 0

    def run(self, parent, blocks):
        lines = blocks.pop(0).split("\n")
        start = _find_line(lines, lambda line: line.strip() in ASIDE_OPENERS)
        if start > 0:
            self.parser.parseBlocks(parent, ["\n".join(lines[:start])])

        chunks = [lines[start + 1 :]]
        chunks.extend(block.split("\n") for block in blocks)
        del blocks[:]

        inner: list[str] = []
        depth = 1
        for index, chunk in enumerate(chunks):
            kept: list[str] = []
            for pos, line in enumerate(chunk):
                stripped = line.strip()
                if stripped in ASIDE_OPENERS:
                    depth += 1
                elif stripped == BLOCK_CLOSER:
                    depth -= 1
                    if depth == 0:
                        inner.append("\n".join(kept))
                        rest = "\n".join(chunk[pos + 1 :])
                        remaining = ["\n".join(later) for later in chunks[index + 1 :]]
                        blocks[:0] = ([rest] if rest.strip() else []) + remaining
                        self._emit(parent, inner)
                        return True
                kept.append(line)
            inner.append("\n".join(kept))

        # unterminated: the aside runs to the end of the document
        self._emit(parent, inner)
        return True

    def _emit(self, parent, inner: list[str]) -> None:
        content = render_block(parent, BlockNode(BlockKind.ASIDE))
        text = "\n\n".join(chunk for chunk in inner if chunk.strip())
        if text:
            self.parser.parseChunk(content, text)


class PdfEmbedProcessor(BlockProcessor):
    def test(self, parent, block):
        return _find_line(block.split("\n"), lambda line: PDF_RE.match(line) is not None) >= 0

    def run(self, parent, blocks):
        lines = blocks.pop(0).split("\n")
        index = _find_line(lines, lambda line: PDF_RE.match(line) is not None)
        if index > 0:
            self.parser.parseBlocks(parent, ["\n".join(lines[:index])])
        render_block(parent, BlockNode(BlockKind.PDF, {"src": PDF_RE.match(lines[index]).group(1)}))
        after = "\n".join(lines[index + 1 :])
        if after.strip():
            blocks.insert(0, after)
        return True


class AlertProcessor(BlockProcessor):
    def test(self, parent, block):
        return ALERT_RE.match(block.split("\n", 1)[0]) is not None

    def run(self, parent, blocks):
        lines = blocks.pop(0).split("\n")
        match = ALERT_RE.match(lines[0])
        node = BlockNode(
            BlockKind.ALERT,
            {"type": match.group(1).lower(), "fold": match.group(2), "title": match.group(3).strip()},
        )
        body = render_block(parent, node)
        text = "\n".join(QUOTE_PREFIX_RE.sub("", line) for line in lines[1:])
        if text.strip():
            self.parser.parseChunk(body, text)
        return True


class EmbedProcessor(BlockProcessor):
    def test(self, parent, block):
        return EMBED_RE.match(block.strip()) is not None

    def run(self, parent, blocks):
        match = EMBED_RE.match(blocks.pop(0).strip())
        video = match.group(2) or match.group(3)
        render_block(parent, BlockNode(BlockKind.EMBED, {"video": video, "title": match.group(1) or ""}))
        return True


class BlocksExtension(Extension):
    def extendMarkdown(self, md):
        parser = md.parser
        md.parser.blockprocessors.register(PdfEmbedProcessor(parser), "pdf_embed", 76)
        md.parser.blockprocessors.register(AsideProcessor(parser), "aside", 75)
        md.parser.blockprocessors.register(AlertProcessor(parser), "alert", 25)
        md.parser.blockprocessors.register(EmbedProcessor(parser), "embed", 12)
