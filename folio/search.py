from __future__ import annotations

import logging
from typing import Protocol

from .errors import BuildError, StoreError
from .models import Collection, Library, Post, SearchRecord
from .render import strip_html

logger = logging.getLogger(__name__)


class SearchStore(Protocol):
    def replace_search_index(self, records: list[SearchRecord]) -> int: ...


def search_type(collection: Collection) -> str:
    return "blog" if collection.is_series() else "docs"


def build_record(collection: Collection, post: Post) -> SearchRecord:
    return SearchRecord(
        slug=post.slug,
        collection_slug=collection.slug,
        title=post.title,
        description=post.description,
        content=strip_html(post.content),
        type=search_type(collection),
        url=post.url,
        date=post.date.isoformat() if post.date else "",
    )


class Indexer:
    def __init__(self, store: SearchStore):
        self.store = store

    def index_all(self, library: Library) -> int:
        records = [build_record(collection, post) for collection, post in library.posts() if not post.draft]
        try:
            count = self.store.replace_search_index(records)
        except StoreError as exc:
            raise BuildError(f"failed to index content: {exc}") from exc
        logger.info("Indexed %d posts for search", count)
        return count
