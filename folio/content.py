from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml

from .errors import BuildError, ContentError
from .models import MAIN_BLOG_SLUG, SERIES, TOPIC, Collection, Library, Post, ProfilePage, newest_first_key
from .render import Renderer, parse_front_matter

logger = logging.getLogger(__name__)

METADATA_FILE = "_metadata.yml"
PROFILE_FILE = "profile.md"
SERIES_TYPES = {"blog", "series"}
TOPIC_TYPES = {"docs", "topic"}


def default_type(slug: str) -> str:
    if slug == MAIN_BLOG_SLUG or slug.startswith(MAIN_BLOG_SLUG + "/"):
        return SERIES
    return TOPIC


def read_metadata(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise ContentError(f"unreadable {path.name}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ContentError(f"{path.name} must be a mapping")
    return data


def sort_posts(collection: Collection) -> None:
    if collection.is_series():
        collection.posts.sort(key=lambda post: newest_first_key(post.date), reverse=True)
    else:
        collection.posts.sort(key=lambda post: (post.order, post.title))
    for position, post in enumerate(collection.posts):
        post.position = position


class Loader:
    """Walks the content tree and builds the collection library."""

    def __init__(self, content_dir: Path, renderer: Optional[Renderer] = None):
        self.content_dir = Path(content_dir)
        self.renderer = renderer or Renderer()

    def load_all(self) -> Library:
        if not self.content_dir.is_dir():
            raise BuildError(f"content directory does not exist: {self.content_dir}")

        collections: list[Collection] = []
        self._scan(self.content_dir, "", collections)
        self._link_children(collections)
        collections.sort(key=lambda collection: newest_first_key(collection.latest_post), reverse=True)
        return Library(collections)

    def _scan(self, directory: Path, prefix: str, collections: list[Collection]) -> None:
        for entry in sorted(directory.iterdir()):
            if not entry.is_dir():
                continue
            slug = f"{prefix}/{entry.name}" if prefix else entry.name
            if (entry / METADATA_FILE).is_file():
                try:
                    collection = self.load_collection(entry, slug)
                except ContentError as exc:
                    logger.warning("Skipping collection %s: %s", slug, exc)
                else:
                    if collection.posts:
                        collections.append(collection)
            # nested collections live under other collections
            self._scan(entry, slug, collections)

    def load_collection(self, path: Path, slug: str) -> Collection:
        meta = read_metadata(path / METADATA_FILE)
        kind = str(meta.get("type") or "").strip().lower()
        if kind in SERIES_TYPES:
            collection_type = SERIES
        elif kind in TOPIC_TYPES:
            collection_type = TOPIC
        else:
            collection_type = default_type(slug)

        collection = Collection(
            slug=slug,
            name=str(meta.get("name") or "") or path.name,
            description=str(meta.get("description") or ""),
            type=collection_type,
            icon=str(meta.get("icon") or ""),
            banner=str(meta.get("banner") or ""),
        )

        for post_path in sorted(path.glob("*.md")):
            if post_path.name.startswith("_") or not post_path.is_file():
                continue
            try:
                post = self.load_post(post_path, slug)
            except ContentError as exc:
                logger.warning("Skipping %s: %s", post_path, exc)
                continue
            if post.draft:
                continue
            collection.posts.append(post)

        sort_posts(collection)
        return collection

    def load_post(self, path: Path, collection_slug: str) -> Post:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ContentError(str(exc)) from exc
        try:
            frontmatter, body = parse_front_matter(data)
        except UnicodeDecodeError as exc:
            raise ContentError(f"not valid UTF-8: {exc}") from exc

        document = self.renderer.render_document(body)
        slug = path.stem
        return Post(
            title=frontmatter.title or slug,
            slug=slug,
            collection_slug=collection_slug,
            description=frontmatter.description,
            date=frontmatter.date,
            updated=frontmatter.updated,
            draft=frontmatter.draft,
            order=frontmatter.order,
            content=document.html,
            toc=document.toc,
        )

    def load_profile(self) -> Optional[ProfilePage]:
        """``profile.md`` at the content root, rendered; ``None`` if absent."""
        path = self.content_dir / PROFILE_FILE
        if not path.is_file():
            return None
        try:
            frontmatter, body = parse_front_matter(path.read_bytes())
        except (OSError, UnicodeDecodeError, ContentError) as exc:
            logger.warning("Skipping profile page: %s", exc)
            return None
        return ProfilePage(
            title=frontmatter.title or "About",
            description=frontmatter.description,
            content=self.renderer.render(body),
        )

    def _link_children(self, collections: list[Collection]) -> None:
        by_slug = {collection.slug: collection for collection in collections}
        for collection in collections:
            parent = by_slug.get(collection.parent_slug)
            if parent is not None:
                parent.child_slugs.append(collection.slug)
        for parent in collections:
            parent.child_slugs.sort(
                key=lambda slug: newest_first_key(by_slug[slug].latest_post),
                reverse=True,
            )
