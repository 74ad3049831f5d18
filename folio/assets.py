from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Callable

import csscompressor
import jsmin

from .errors import BuildError

logger = logging.getLogger(__name__)

HASH_LENGTH = 8

MINIFIERS: dict[str, Callable[[str], str]] = {
    ".css": csscompressor.compress,
    ".js": lambda text: jsmin.jsmin(text, quote_chars="'\"`"),
}


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


def hashed_name(rel_path: str, digest: str) -> str:
    path = Path(rel_path)
    return path.with_name(f"{path.stem}.{digest}{path.suffix}").as_posix()


def minify(data: bytes, suffix: str, source: Path) -> bytes:
    """Minified bytes, or ``data`` unchanged when minification fails."""
    minifier = MINIFIERS.get(suffix)
    if minifier is None:
        return data
    try:
        return minifier(data.decode("utf-8")).encode("utf-8")
    except Exception as exc:
        logger.warning("Could not minify %s, copying as-is: %s", source, exc)
        return data


class AssetProcessor:
    """Mirrors the static tree into the output directory.

    CSS and JS are minified; outside dev mode they are also renamed to
    ``name.<hash>.ext`` and the rename is recorded in the returned map,
    keyed by web path relative to the site root (``css/main.css``).
    """

    def __init__(self, static_dir: Path, output_dir: Path, dev_mode: bool = False):
        self.static_dir = Path(static_dir)
        self.output_dir = Path(output_dir)
        self.dev_mode = dev_mode

    def process_all(self) -> dict[str, str]:
        hashes: dict[str, str] = {}
        if not self.static_dir.is_dir():
            logger.info("No static directory at %s", self.static_dir)
            return hashes
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            for path in sorted(self.static_dir.rglob("*")):
                rel_path = path.relative_to(self.static_dir).as_posix()
                if path.is_dir():
                    (self.output_dir / rel_path).mkdir(parents=True, exist_ok=True)
                    continue
                self.process_file(path, rel_path, hashes)
        except OSError as exc:
            raise BuildError(f"failed to copy static files: {exc}") from exc
        return hashes

    def process_file(self, path: Path, rel_path: str, hashes: dict[str, str]) -> None:
        suffix = path.suffix.lower()
        output = minify(path.read_bytes(), suffix, path)
        dest_rel = rel_path
        if suffix in MINIFIERS and not self.dev_mode:
            dest_rel = hashed_name(rel_path, content_hash(output))
            hashes[rel_path] = dest_rel
        dest = self.output_dir / dest_rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(output)
