"""Open Graph card images, one PNG per post."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, Optional

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from .errors import BuildError
from .models import MAIN_BLOG_SLUG, Collection, Library, Post
from .utils import join_url

logger = logging.getLogger(__name__)

WIDTH = 1200
HEIGHT = 630
MARGIN = 80
PHOTO_SIZE = 120
TITLE_LINE_HEIGHT = 68
TITLE_MAX_LINES = 2

WHITE = (255, 255, 255)
INK = (20, 20, 20)
BADGE = (30, 30, 30)
MUTED = (100, 100, 100)
RULE = (230, 230, 230)

REGULAR_FONT = Path("fonts") / "SourceSerif4-Regular.ttf"
BOLD_FONT = Path("fonts") / "SourceSerif4-Semibold.ttf"


def card_path(collection: Collection, post: Post) -> str:
    return f"og/{collection.slug}/{post.slug}.png"


def host_of(url: str) -> str:
    return url.removeprefix("https://").removeprefix("http://").rstrip("/")


def wrap_text(text: str, font: ImageFont.FreeTypeFont, max_width: float) -> list[str]:
    lines: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if current and font.getlength(candidate) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


def clamp_lines(lines: list[str], limit: int = TITLE_MAX_LINES) -> list[str]:
    if len(lines) <= limit:
        return lines
    kept = lines[:limit]
    last = kept[-1].rstrip()
    kept[-1] = (last[:-3] if len(last) > 3 else last) + "..."
    return kept


def round_photo(photo: Image.Image, size: int = PHOTO_SIZE) -> Image.Image:
    photo = ImageOps.fit(photo.convert("RGB"), (size, size))
    mask = Image.new("L", (size, size), 0)
    ImageDraw.Draw(mask).ellipse((0, 0, size - 1, size - 1), fill=255)
    photo.putalpha(mask)
    return photo


class CardGenerator:
    def __init__(
        self,
        output_dir: Path,
        regular_font: Path,
        bold_font: Path,
        site_name: str,
        site_url: str,
        profile_photo: Optional[Path] = None,
    ):
        self.output_dir = Path(output_dir)
        self.regular_font = str(regular_font)
        self.bold_font = str(bold_font)
        self.site_name = site_name
        self.site_url = site_url
        self.photo: Optional[Image.Image] = None
        if profile_photo is not None:
            try:
                with Image.open(profile_photo) as image:
                    self.photo = round_photo(image)
            except (OSError, UnidentifiedImageError) as exc:
                raise BuildError(f"cannot read profile photo {profile_photo}: {exc}") from exc

    @classmethod
    def from_static(
        cls, static_dir: Path, output_dir: Path, site_name: str, site_url: str, photo_url: str = ""
    ) -> Optional["CardGenerator"]:
        """Generator using the bundled fonts, or ``None`` when they are missing."""
        regular = Path(static_dir) / REGULAR_FONT
        bold = Path(static_dir) / BOLD_FONT
        if not regular.is_file() or not bold.is_file():
            logger.info("Fonts not found under %s, skipping social cards", static_dir)
            return None
        photo = None
        if photo_url.startswith("/"):
            candidate = Path(static_dir) / photo_url.lstrip("/")
            photo = candidate if candidate.is_file() else None
        return cls(output_dir, regular, bold, site_name, site_url, photo)

    def font(self, bold: bool, size: int) -> ImageFont.FreeTypeFont:
        return ImageFont.truetype(self.bold_font if bold else self.regular_font, size)

    def generate(self, collection: Collection, post: Post) -> str:
        """Draw the card for ``post`` and return its web path."""
        image = Image.new("RGB", (WIDTH, HEIGHT), WHITE)
        draw = ImageDraw.Draw(image)

        badge = "POST"
        subtitle = ""
        if collection.is_topic():
            badge = "DOCS"
            subtitle = collection.name
        elif collection.slug != MAIN_BLOG_SLUG:
            subtitle = collection.name

        x = MARGIN
        if self.photo is not None:
            x = 240
            draw.ellipse((MARGIN - 2, 198, MARGIN + PHOTO_SIZE + 2, 200 + PHOTO_SIZE + 2), fill=RULE)
            image.paste(self.photo, (MARGIN, 200), self.photo)

        self.draw_badge(draw, badge, x, 180)
        self.draw_title(draw, post.title, x, 260)
        if subtitle:
            draw.text((x, 360), subtitle, font=self.font(False, 26), fill=MUTED, anchor="ls")
        self.draw_footer(draw)

        rel_path = card_path(collection, post)
        target = self.output_dir / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        image.save(target, "PNG")
        return "/" + rel_path

    def draw_badge(self, draw: ImageDraw.ImageDraw, text: str, x: int, y: int) -> None:
        font = self.font(True, 14)
        pad = 14
        width = font.getlength(text) + pad * 2
        draw.rounded_rectangle((x, y, x + width, y + 28), radius=4, fill=BADGE)
        draw.text((x + pad, y + 20), text, font=font, fill=WHITE, anchor="ls")

    def draw_title(self, draw: ImageDraw.ImageDraw, title: str, x: int, y: int) -> None:
        font = self.font(True, 56)
        lines = clamp_lines(wrap_text(title, font, WIDTH - x - MARGIN))
        for index, line in enumerate(lines):
            draw.text((x, y + index * TITLE_LINE_HEIGHT), line, font=font, fill=INK, anchor="ls")

    def draw_footer(self, draw: ImageDraw.ImageDraw) -> None:
        draw.line((MARGIN, HEIGHT - 90, WIDTH - MARGIN, HEIGHT - 90), fill=RULE, width=1)
        text = f"{self.site_name}  ·  {host_of(self.site_url)}"
        draw.text((MARGIN, HEIGHT - 45), text, font=self.font(False, 20), fill=MUTED, anchor="ls")


def fan_out(tasks: Iterable[Callable[[], None]], workers: Optional[int] = None) -> None:
    """Run every task on a bounded pool, then re-raise the first failure."""
    first_error: Optional[BaseException] = None
    with ThreadPoolExecutor(max_workers=workers or os.cpu_count() or 1) as pool:
        futures = [pool.submit(task) for task in tasks]
        for future in as_completed(futures):
            error = future.exception()
            if error is not None and first_error is None:
                first_error = error
    if first_error is not None:
        raise first_error


def generate_cards(generator: CardGenerator, library: Library, base_url: str) -> None:
    def task(collection: Collection, post: Post) -> Callable[[], None]:
        def run() -> None:
            post.og_image = join_url(base_url, generator.generate(collection, post))

        return run

    fan_out(task(collection, post) for collection, post in library.posts())
