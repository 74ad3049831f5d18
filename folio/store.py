"""SQLite persistence for users, sessions, reactions, comments and search.

One connection is shared by every request thread; a lock serialises access
and each public method runs in its own transaction.
"""

from __future__ import annotations

import datetime as dt
import html
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from .errors import StoreError
from .models import Comment, ReactionCount, SearchRecord, SearchResult, User

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
REACTION_USER_LIMIT = 3
DEFAULT_SEARCH_LIMIT = 10
# placeholders for match markers; the snippet is escaped before they become <mark>
MARK_OPEN = "\ue000"
MARK_CLOSE = "\ue001"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT,
    avatar_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    post_slug TEXT NOT NULL,
    emoji TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, post_slug, emoji)
);

CREATE INDEX IF NOT EXISTS idx_reactions_post ON reactions(post_slug);

CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    post_slug TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_slug, created_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS search_index USING fts5(
    slug UNINDEXED,
    collection_slug UNINDEXED,
    title,
    description,
    content,
    type UNINDEXED,
    url UNINDEXED,
    date UNINDEXED
);
"""

SEARCH_COLUMNS = ("slug", "collection_slug", "title", "description", "content", "type", "url", "date")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_stamp(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).strftime(STAMP_FORMAT)


def from_stamp(value: str) -> dt.datetime:
    return dt.datetime.strptime(value, STAMP_FORMAT).replace(tzinfo=dt.timezone.utc)


def escape_fts_token(token: str) -> str:
    token = token.replace('"', '""')
    if any(char in token for char in ' :"*'):
        return f'"{token}"'
    return token


def build_fts_query(query: str) -> str:
    """Prefix match on every word, any word may match."""
    return " OR ".join(f"{escape_fts_token(token)}*" for token in query.split())


def highlight_snippet(snippet: Optional[str]) -> str:
    """Escape indexed text; only the match markers become markup."""
    escaped = html.escape(snippet or "", quote=False)
    return escaped.replace(MARK_OPEN, "<mark>").replace(MARK_CLOSE, "</mark>")


def _comment(row: sqlite3.Row) -> Comment:
    keys = row.keys()
    return Comment(
        id=row["id"],
        user_id=row["user_id"],
        post_slug=row["post_slug"],
        content=row["content"],
        created_at=from_stamp(row["created_at"]),
        updated_at=from_stamp(row["updated_at"]),
        user_name=row["user_name"] if "user_name" in keys else "",
        user_avatar=row["user_avatar"] if "user_avatar" in keys else "",
    )


class Store:
    def __init__(self, path: Union[str, Path]):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"failed to open database {self.path}: {exc}") from exc
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # users and sessions

    def upsert_user(self, user: User) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, name, avatar_url, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    name = excluded.name,
                    avatar_url = excluded.avatar_url
                """,
                (user.id, user.email, user.name, user.avatar_url, to_stamp(utcnow())),
            )

    def get_user(self, user_id: str) -> Optional[User]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT id, email, name, avatar_url, created_at FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"] or "",
            avatar_url=row["avatar_url"] or "",
            created_at=from_stamp(row["created_at"]),
        )

    def create_session(self, token: str, user_id: str, expires_at: dt.datetime) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user_id, to_stamp(expires_at)),
            )

    def get_session(self, token: str) -> Optional[str]:
        """User id for a live session; expired sessions are deleted."""
        with self.transaction() as conn:
            row = conn.execute("SELECT user_id, expires_at FROM sessions WHERE token = ?", (token,)).fetchone()
            if row is None:
                return None
            if from_stamp(row["expires_at"]) < utcnow():
                conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
                return None
            return row["user_id"]

    def delete_session(self, token: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM sessions WHERE token = ?", (token,))

    def clean_expired_sessions(self) -> int:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE expires_at < ?", (to_stamp(utcnow()),))
            return cursor.rowcount

    # reactions

    def toggle_reaction(self, user_id: str, post_slug: str, emoji: str) -> bool:
        """Add the reaction, or remove it if present. Returns True when added."""
        key = (user_id, post_slug, emoji)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM reactions WHERE user_id = ? AND post_slug = ? AND emoji = ?", key
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO reactions (user_id, post_slug, emoji, created_at) VALUES (?, ?, ?, ?)",
                    (*key, to_stamp(utcnow())),
                )
                return True
            conn.execute("DELETE FROM reactions WHERE user_id = ? AND post_slug = ? AND emoji = ?", key)
            return False

    def reaction_counts(self, post_slug: str) -> list[ReactionCount]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT emoji, COUNT(*) AS count FROM reactions
                WHERE post_slug = ?
                GROUP BY emoji
                ORDER BY MIN(id)
                """,
                (post_slug,),
            ).fetchall()
            counts = []
            for row in rows:
                names = conn.execute(
                    """
                    SELECT u.name FROM reactions r
                    JOIN users u ON r.user_id = u.id
                    WHERE r.post_slug = ? AND r.emoji = ?
                    ORDER BY r.created_at DESC, r.id DESC
                    LIMIT ?
                    """,
                    (post_slug, row["emoji"], REACTION_USER_LIMIT),
                ).fetchall()
                counts.append(ReactionCount(row["emoji"], row["count"], [name["name"] or "" for name in names]))
        return counts

    def user_reactions(self, user_id: str, post_slug: str) -> list[str]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT emoji FROM reactions WHERE user_id = ? AND post_slug = ? ORDER BY id",
                (user_id, post_slug),
            ).fetchall()
        return [row["emoji"] for row in rows]

    # search

    def replace_search_index(self, records: Iterable[SearchRecord]) -> int:
        """Clear the index and insert ``records`` in a single transaction."""
        rows = [tuple(getattr(record, column) for column in SEARCH_COLUMNS) for record in records]
        placeholders = ", ".join("?" for _ in SEARCH_COLUMNS)
        with self.transaction() as conn:
            conn.execute("DELETE FROM search_index")
            conn.executemany(
                f"INSERT INTO search_index ({', '.join(SEARCH_COLUMNS)}) VALUES ({placeholders})", rows
            )
        return len(rows)

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchResult]:
        query = query.strip()
        if not query:
            return []
        if limit <= 0:
            limit = DEFAULT_SEARCH_LIMIT
        with self._lock:
            try:
                rows = self.conn.execute(
                    """
                    SELECT slug, collection_slug, title, description,
                           snippet(search_index, 4, ?, ?, '...', 32) AS snippet,
                           type, url, date
                    FROM search_index
                    WHERE search_index MATCH ?
                    ORDER BY rank
                    LIMIT ?
                    """,
                    (MARK_OPEN, MARK_CLOSE, build_fts_query(query), limit),
                ).fetchall()
            except sqlite3.OperationalError as exc:
                logger.debug("Search query %r rejected: %s", query, exc)
                return []
        results = []
        for row in rows:
            values = dict(row)
            values["snippet"] = highlight_snippet(values["snippet"])
            results.append(SearchResult(**values))
        return results

    # comments

    def create_comment(self, user_id: str, post_slug: str, content: str) -> Comment:
        now = utcnow()
        stamp = to_stamp(now)
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO comments (user_id, post_slug, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, post_slug, content, stamp, stamp),
            )
        return Comment(
            id=cursor.lastrowid,
            user_id=user_id,
            post_slug=post_slug,
            content=content,
            created_at=from_stamp(stamp),
            updated_at=from_stamp(stamp),
        )

    def list_comments(self, post_slug: str) -> list[Comment]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.user_id, c.post_slug, c.content, c.created_at, c.updated_at,
                       COALESCE(u.name, '') AS user_name, COALESCE(u.avatar_url, '') AS user_avatar
                FROM comments c
                JOIN users u ON c.user_id = u.id
                WHERE c.post_slug = ?
                ORDER BY c.created_at DESC, c.id DESC
                """,
                (post_slug,),
            ).fetchall()
        return [_comment(row) for row in rows]

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT id, user_id, post_slug, content, created_at, updated_at FROM comments WHERE id = ?",
                (comment_id,),
            ).fetchone()
        return _comment(row) if row is not None else None

    def update_comment(self, comment_id: int, user_id: str, content: str) -> Optional[Comment]:
        """Rewrite a comment owned by ``user_id``; ``None`` if there is none."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE comments SET content = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (content, to_stamp(utcnow()), comment_id, user_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_comment(comment_id)

    def delete_comment(self, comment_id: int, user_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM comments WHERE id = ? AND user_id = ?", (comment_id, user_id))
            return cursor.rowcount > 0

    def cleanup_user_data(self, user_id: str) -> None:
        with self.transaction() as conn:
            for table in ("comments", "reactions", "sessions"):
                conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
