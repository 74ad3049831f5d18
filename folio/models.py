from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterator, Optional

SERIES = "series"
TOPIC = "topic"
MAIN_BLOG_SLUG = "blog"

ALLOWED_EMOJIS = ["👍", "❤️", "😂", "💡", "😢"]


def is_valid_emoji(emoji: str) -> bool:
    return emoji in ALLOWED_EMOJIS


@dataclass
class TocItem:
    level: int
    id: str
    text: str


@dataclass
class PostFrontmatter:
    title: str = ""
    description: str = ""
    date: Optional[dt.date] = None
    updated: Optional[dt.date] = None
    draft: bool = False
    order: int = 0


@dataclass
class ProfilePage:
    title: str
    description: str
    content: str


@dataclass
class Post:
    title: str
    slug: str
    collection_slug: str
    description: str = ""
    date: Optional[dt.date] = None
    updated: Optional[dt.date] = None
    draft: bool = False
    order: int = 0
    content: str = ""
    toc: list[TocItem] = field(default_factory=list)
    og_image: str = ""
    position: int = -1

    @property
    def url(self) -> str:
        return f"/{self.collection_slug}/{self.slug}"

    @property
    def last_modified(self) -> Optional[dt.date]:
        return self.updated or self.date


@dataclass
class Collection:
    slug: str
    name: str = ""
    description: str = ""
    type: str = TOPIC
    icon: str = ""
    banner: str = ""
    posts: list[Post] = field(default_factory=list)
    child_slugs: list[str] = field(default_factory=list)

    @property
    def latest_post(self) -> Optional[dt.date]:
        dates = [post.date for post in self.posts if post.date is not None]
        return max(dates) if dates else None

    @property
    def post_count(self) -> int:
        return len(self.posts)

    @property
    def url(self) -> str:
        return f"/{self.slug}"

    @property
    def parent_slug(self) -> str:
        if "/" not in self.slug:
            return ""
        return self.slug.rsplit("/", 1)[0]

    def is_series(self) -> bool:
        return self.type == SERIES

    def is_topic(self) -> bool:
        return self.type != SERIES

    def is_main_blog(self) -> bool:
        return self.slug == MAIN_BLOG_SLUG

    def prev_post(self, post: Post) -> Optional[Post]:
        if post.position <= 0:
            return None
        return self.posts[post.position - 1]

    def next_post(self, post: Post) -> Optional[Post]:
        if post.position < 0 or post.position + 1 >= len(self.posts):
            return None
        return self.posts[post.position + 1]


def newest_first_key(value: Optional[dt.date]) -> tuple[bool, dt.date]:
    """Sort key for reverse=True ordering that puts undated items last."""
    return (value is not None, value or dt.date.min)


class Library:
    """Owns every collection of one build; cross links are resolved by slug."""

    def __init__(self, collections: list[Collection]):
        self.collections = collections
        self._by_slug = {collection.slug: collection for collection in collections}

    def __iter__(self) -> Iterator[Collection]:
        return iter(self.collections)

    def __len__(self) -> int:
        return len(self.collections)

    def get(self, slug: str) -> Optional[Collection]:
        return self._by_slug.get(slug)

    def children_of(self, collection: Collection) -> list[Collection]:
        return [self._by_slug[slug] for slug in collection.child_slugs if slug in self._by_slug]

    def parent_of(self, collection: Collection) -> Optional[Collection]:
        return self._by_slug.get(collection.parent_slug)

    def posts(self) -> Iterator[tuple[Collection, Post]]:
        for collection in self.collections:
            for post in collection.posts:
                yield collection, post

    def series(self) -> list[Collection]:
        return [collection for collection in self.collections if collection.is_series()]

    def topics(self) -> list[Collection]:
        return [collection for collection in self.collections if collection.is_topic()]


@dataclass
class User:
    id: str
    email: str = ""
    name: str = ""
    avatar_url: str = ""
    created_at: Optional[dt.datetime] = None


@dataclass
class ReactionCount:
    emoji: str
    count: int
    users: list[str] = field(default_factory=list)


@dataclass
class Comment:
    id: int
    user_id: str
    post_slug: str
    content: str
    created_at: dt.datetime
    updated_at: dt.datetime
    user_name: str = ""
    user_avatar: str = ""


@dataclass
class SearchRecord:
    slug: str
    collection_slug: str
    title: str
    description: str
    content: str
    type: str
    url: str
    date: str


@dataclass
class SearchResult:
    slug: str
    collection_slug: str
    title: str
    description: str
    snippet: str
    type: str
    url: str
    date: str
