from __future__ import annotations

import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from .auth import SESSION_DURATION, OAuthProvider, decode_state, default_providers, new_session_token
from .config import BuildConfig
from .errors import ApiError
from .models import ALLOWED_EMOJIS, Comment, User, is_valid_emoji
from .render import render_comment
from .store import Store, utcnow
from .utils import rfc3339

logger = logging.getLogger(__name__)

DEV_USER = User(
    id="dev:ephemeral",
    email="matt@localhost",
    name="Test User",
    avatar_url="https://avatar.vercel.sh/dev-user.svg?text=MB",
)

MAX_COMMENT_BYTES = 10240
SEARCH_LIMIT = 20


def comment_json(comment: Comment) -> dict[str, object]:
    return {
        "id": comment.id,
        "content": comment.content,
        "contentHtml": render_comment(comment.content),
        "createdAt": rfc3339(comment.created_at),
        "updatedAt": rfc3339(comment.updated_at),
        "userId": comment.user_id,
        "userName": comment.user_name,
        "userAvatar": comment.user_avatar,
    }


def _text_field(payload: dict[str, object], name: str) -> str:
    value = payload.get(name)
    return value if isinstance(value, str) else ""


def clean_comment(payload: dict[str, object]) -> str:
    content = _text_field(payload, "content").strip()
    if not content:
        raise ApiError(400, "Content is required")
    if len(content.encode("utf-8")) > MAX_COMMENT_BYTES:
        raise ApiError(400, "Comment too long")
    return content


def parse_comment_id(raw: str) -> int:
    try:
        comment_id = int(raw)
    except ValueError:
        raise ApiError(400, "Invalid comment ID")
    if comment_id <= 0:
        raise ApiError(400, "Invalid comment ID")
    return comment_id


def require_user(user: Optional[User]) -> User:
    if user is None:
        raise ApiError(401, "Unauthorized")
    return user


class SiteApp:
    """Request-independent behaviour of the dynamic server.

    Every ``api_*`` method returns a JSON-serialisable value or raises
    :class:`ApiError`; the HTTP handler only does routing and encoding.
    """

    def __init__(
        self,
        config: BuildConfig,
        store: Store,
        *,
        dev_mode: bool = False,
        providers: Optional[dict[str, OAuthProvider]] = None,
    ):
        self.config = config
        self.store = store
        self.dev_mode = dev_mode
        self.providers = providers if providers is not None else default_providers()

    @property
    def output_dir(self) -> Path:
        return self.config.output_dir

    @property
    def base_url(self) -> str:
        return self.config.base_url

    # users

    def install_dev_user(self) -> None:
        if self.dev_mode:
            self.store.upsert_user(DEV_USER)
            logger.info("Dev user %s is signed in for every request", DEV_USER.id)

    def remove_dev_user_data(self) -> None:
        if self.dev_mode:
            self.store.cleanup_user_data(DEV_USER.id)
            logger.info("Removed dev user comments, reactions and sessions")

    def current_user(self, token: Optional[str]) -> Optional[User]:
        user = None
        if token:
            user_id = self.store.get_session(token)
            if user_id:
                user = self.store.get_user(user_id)
        if user is None and self.dev_mode:
            return DEV_USER
        return user

    def api_me(self, user: Optional[User]) -> dict[str, object]:
        user = require_user(user)
        return {"id": user.id, "email": user.email, "name": user.name, "avatar": user.avatar_url}

    # reactions

    def api_reactions(self, post: str) -> list[dict[str, object]]:
        if not post:
            raise ApiError(400, "Missing post parameter")
        return [
            {"emoji": item.emoji, "count": item.count, "users": item.users}
            for item in self.store.reaction_counts(post)
        ]

    def api_toggle_reaction(self, user: Optional[User], payload: dict[str, object]) -> dict[str, object]:
        user = require_user(user)
        post = _text_field(payload, "post")
        emoji = _text_field(payload, "emoji")
        if not post or not emoji:
            raise ApiError(400, "Missing post or emoji")
        if not is_valid_emoji(emoji):
            raise ApiError(400, f"Invalid emoji, expected one of {' '.join(ALLOWED_EMOJIS)}")
        return {"added": self.store.toggle_reaction(user.id, post, emoji)}

    def api_user_reactions(self, user: Optional[User], post: str) -> list[str]:
        user = require_user(user)
        if not post:
            raise ApiError(400, "Missing post parameter")
        return self.store.user_reactions(user.id, post)

    # comments

    def api_comments(self, post: str) -> list[dict[str, object]]:
        if not post:
            raise ApiError(400, "Missing post parameter")
        return [comment_json(comment) for comment in self.store.list_comments(post)]

    def api_create_comment(self, user: Optional[User], payload: dict[str, object]) -> dict[str, object]:
        user = require_user(user)
        post = _text_field(payload, "post")
        if not post:
            raise ApiError(400, "Missing post")
        content = clean_comment(payload)
        comment = self.store.create_comment(user.id, post, content)
        comment.user_name = user.name
        comment.user_avatar = user.avatar_url
        return comment_json(comment)

    def api_update_comment(self, user: Optional[User], raw_id: str, payload: dict[str, object]) -> dict[str, object]:
        user = require_user(user)
        comment_id = parse_comment_id(raw_id)
        content = clean_comment(payload)
        comment = self.store.update_comment(comment_id, user.id, content)
        if comment is None:
            raise ApiError(404, "Comment not found or not owned by user")
        comment.user_name = user.name
        comment.user_avatar = user.avatar_url
        return comment_json(comment)

    def api_delete_comment(self, user: Optional[User], raw_id: str) -> None:
        user = require_user(user)
        comment_id = parse_comment_id(raw_id)
        if not self.store.delete_comment(comment_id, user.id):
            raise ApiError(404, "Comment not found or not owned by user")

    # search

    def api_search(self, query: str) -> list[dict[str, object]]:
        query = query.strip()
        if not query:
            return []
        return [asdict(result) for result in self.store.search(query, SEARCH_LIMIT)]

    # auth

    def api_providers(self) -> dict[str, object]:
        return {
            "providers": [
                {"id": provider.id, "name": provider.name}
                for provider in self.providers.values()
                if provider.configured
            ]
        }

    def provider(self, provider_id: str) -> OAuthProvider:
        provider = self.providers.get(provider_id)
        if provider is None:
            raise ApiError(404, "Unknown provider")
        return provider

    def login_url(self, provider_id: str, redirect: str) -> str:
        return self.provider(provider_id).login_url(self.base_url, redirect or "/")

    def finish_login(self, provider_id: str, code: str, state: str) -> tuple[str, str]:
        """Complete an OAuth callback; returns ``(session token, redirect)``."""
        provider = self.provider(provider_id)
        if not provider.configured:
            raise ApiError(503, f"{provider.name} OAuth not configured")
        if not code:
            raise ApiError(400, "Missing code")
        token = provider.exchange(code, self.base_url)
        user = provider.fetch_user(token)
        self.store.upsert_user(user)
        session = new_session_token()
        self.store.create_session(session, user.id, utcnow() + SESSION_DURATION)
        logger.info("User %s signed in with %s", user.id, provider.name)
        return session, decode_state(state)

    def logout(self, token: Optional[str]) -> None:
        if token:
            self.store.delete_session(token)

    # redirects and static files

    def social_redirect(self, name: str) -> str:
        profile = self.config.profile
        target = {"github": profile.github, "linkedin": profile.linkedin, "email": profile.email}.get(name, "")
        if not target:
            raise ApiError(404, "Not found")
        if name == "email":
            return f"mailto:{target}"
        return target

    def resolve_site_file(self, request_path: str) -> Optional[Path]:
        site_abs = self.output_dir.resolve()
        rel = unquote(request_path).lstrip("/")
        candidate = (site_abs / rel).resolve()
        if not (candidate == site_abs or str(candidate).startswith(str(site_abs) + os.sep)):
            return None

        if candidate.is_file():
            return candidate
        last = rel.rstrip("/").rsplit("/", 1)[-1]
        if "." not in last:
            index = candidate / "index.html"
            if index.is_file():
                return index
        page = candidate.with_name(candidate.name + ".html") if rel else None
        if page is not None and page.is_file():
            return page
        return None

    def not_found_page(self) -> Optional[Path]:
        page = self.output_dir / "404.html"
        return page if page.is_file() else None
