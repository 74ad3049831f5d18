"""OAuth login against Google and GitHub plus session helpers.

The authorization-code exchange and the profile lookups are plain HTTP
calls made with ``requests``; client credentials come from the
environment (``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` and the
``GITHUB_`` equivalents).
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import logging
import os
import secrets
from typing import Optional
from urllib.parse import urlencode

import requests

from .errors import ApiError
from .models import User
from .utils import join_url

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
SESSION_DURATION = dt.timedelta(days=30)
TOKEN_BYTES = 32
HTTP_TIMEOUT = 10


def new_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def safe_redirect(target: str) -> str:
    """Only same-site paths are accepted as post-login destinations."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return "/"
    return target


def encode_state(redirect: str) -> str:
    return base64.urlsafe_b64encode(safe_redirect(redirect).encode("utf-8")).decode("ascii")


def decode_state(state: str) -> str:
    try:
        redirect = base64.urlsafe_b64decode(state.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return "/"
    return safe_redirect(redirect)


class OAuthProvider:
    id = ""
    name = ""
    env_prefix = ""
    authorize_url = ""
    token_url = ""
    scopes: tuple[str, ...] = ()
    extra_params: dict[str, str] = {}

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    @property
    def client_id(self) -> str:
        return os.environ.get(f"{self.env_prefix}_CLIENT_ID", "")

    @property
    def client_secret(self) -> str:
        return os.environ.get(f"{self.env_prefix}_CLIENT_SECRET", "")

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def callback_url(self, base_url: str) -> str:
        return join_url(base_url, f"auth/{self.id}/callback")

    def login_url(self, base_url: str, redirect: str) -> str:
        if not self.configured:
            raise ApiError(503, f"{self.name} OAuth not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url(base_url),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": encode_state(redirect),
            **self.extra_params,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def exchange(self, code: str, base_url: str) -> str:
        try:
            response = self.session.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.callback_url(base_url),
                },
                headers={"Accept": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
            response.raise_for_status()
            token = response.json().get("access_token")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("%s token exchange failed: %s", self.name, exc)
            raise ApiError(500, "Failed to exchange token") from exc
        if not token:
            raise ApiError(500, "Failed to exchange token")
        return token

    def get_json(self, url: str, token: str):
        try:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("%s user lookup failed: %s", self.name, exc)
            raise ApiError(500, "Failed to get user info") from exc

    def fetch_user(self, token: str) -> User:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    id = "google"
    name = "Google"
    env_prefix = "GOOGLE"
    authorize_url = "https://accounts.google.com/o/oauth2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    scopes = (
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    )
    extra_params = {"access_type": "offline"}
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"

    def fetch_user(self, token: str) -> User:
        info = self.get_json(self.userinfo_url, token)
        return User(
            id=f"google:{info['id']}",
            email=info.get("email") or "",
            name=info.get("name") or "",
            avatar_url=info.get("picture") or "",
        )


class GitHubProvider(OAuthProvider):
    id = "github"
    name = "GitHub"
    env_prefix = "GITHUB"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    scopes = ("user:email",)
    api_url = "https://api.github.com"

    def fetch_user(self, token: str) -> User:
        info = self.get_json(f"{self.api_url}/user", token)
        email = info.get("email") or ""
        if not email:
            # the profile omits private addresses; the primary one is listed separately
            try:
                emails = self.get_json(f"{self.api_url}/user/emails", token)
            except ApiError:
                emails = []
            email = next((item.get("email", "") for item in emails if item.get("primary")), "")
        return User(
            id=f"github:{info['id']}",
            email=email,
            name=info.get("name") or info.get("login") or "",
            avatar_url=info.get("avatar_url") or "",
        )


def default_providers(session: Optional[requests.Session] = None) -> dict[str, OAuthProvider]:
    session = session or requests.Session()
    return {provider.id: provider for provider in (GoogleProvider(session), GitHubProvider(session))}
