from __future__ import annotations

import datetime as dt
import http.client
import io
import json
import threading
from pathlib import Path
from typing import Optional

import pytest

from conftest import write_file
from folio.api import DEV_USER, SiteApp
from folio.auth import OAuthProvider
from folio.config import BuildConfig, ProfileConfig
from folio.errors import ApiError
from folio.models import SearchRecord, User
from folio.server import MAX_BODY_BYTES, SiteServer, _parse_json_body, make_handler, read_session_token, session_cookie
from folio.store import Store, utcnow


class StubProvider(OAuthProvider):
    id = "github"
    name = "GitHub"
    env_prefix = "STUB"

    def __init__(self, configured: bool = True):
        super().__init__(session=None)
        self._configured = configured

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def client_id(self) -> str:
        return "stub-id" if self._configured else ""

    def exchange(self, code: str, base_url: str) -> str:
        return f"token-for-{code}"

    def fetch_user(self, token: str) -> User:
        return User(id="github:7", email="seven@example.com", name="Seven", avatar_url="/7.png")


def _start_server(app: SiteApp) -> tuple[SiteServer, int]:
    server = SiteServer(("127.0.0.1", 0), make_handler(app))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, server.server_address[1]


def _request(
    port: int, method: str, path: str, payload: Optional[object] = None, cookie: str = ""
) -> tuple[int, str, dict[str, str]]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        headers = {}
        body = None
        if payload is not None:
            body = json.dumps(payload)
            headers["Content-Type"] = "application/json"
        if cookie:
            headers["Cookie"] = cookie
        conn.request(method, path, body=body, headers=headers)
        res = conn.getresponse()
        text = res.read().decode("utf-8", errors="ignore")
        return res.status, text, {k.lower(): v for k, v in res.getheaders()}
    finally:
        conn.close()


def _get_json(port: int, path: str, cookie: str = "") -> tuple[int, object]:
    status, text, _ = _request(port, "GET", path, cookie=cookie)
    return status, json.loads(text) if status == 200 else text


@pytest.fixture
def site(tmp_path: Path):
    out = tmp_path / "dist"
    write_file(out / "index.html", "<h1>home</h1>")
    write_file(out / "blog" / "index.html", "<h1>blog</h1>")
    write_file(out / "about.html", "<h1>about</h1>")
    write_file(out / "css" / "main.abc12345.css", "body{}")
    write_file(tmp_path / "secret.txt", "top secret")
    config = BuildConfig(
        output_dir=out,
        base_url="https://example.com",
        profile=ProfileConfig(github="https://github.com/ada", email="ada@example.com"),
    )
    store = Store(":memory:")
    store.upsert_user(User(id="github:1", email="ada@example.com", name="Ada", avatar_url="/ada.png"))
    store.upsert_user(User(id="google:2", email="bob@example.com", name="Bob"))
    store.create_session("ada-token", "github:1", utcnow() + dt.timedelta(days=1))
    store.create_session("bob-token", "google:2", utcnow() + dt.timedelta(days=1))
    yield config, store
    store.close()


@pytest.fixture
def server(site):
    config, store = site
    app = SiteApp(config, store, providers={"github": StubProvider()})
    server, port = _start_server(app)
    try:
        yield port, store
    finally:
        server.shutdown()
        server.server_close()


ADA = "session=ada-token"
BOB = "session=bob-token"


def test_static_files_and_html_fallbacks(server):
    port, _ = server
    assert _request(port, "GET", "/")[1] == "<h1>home</h1>"
    assert _request(port, "GET", "/blog")[1] == "<h1>blog</h1>"
    assert _request(port, "GET", "/blog/")[1] == "<h1>blog</h1>"
    assert _request(port, "GET", "/about")[1] == "<h1>about</h1>"
    status, body, headers = _request(port, "GET", "/css/main.abc12345.css")
    assert status == 200
    assert headers["content-type"].startswith("text/css")


def test_missing_and_traversal_paths_are_404(server):
    port, _ = server
    assert _request(port, "GET", "/nope")[0] == 404
    assert _request(port, "GET", "/../secret.txt")[0] == 404
    assert _request(port, "GET", "/%2e%2e/secret.txt")[0] == 404


def test_social_redirects(server):
    port, _ = server
    status, _, headers = _request(port, "GET", "/github")
    assert status == 301
    assert headers["location"] == "https://github.com/ada"
    assert _request(port, "GET", "/email")[2]["location"] == "mailto:ada@example.com"
    assert _request(port, "GET", "/linkedin")[0] == 404


def test_me_requires_session(server):
    port, _ = server
    assert _request(port, "GET", "/api/me")[0] == 401
    assert _request(port, "GET", "/api/me", cookie="session=bogus")[0] == 401
    status, me = _get_json(port, "/api/me", cookie=ADA)
    assert status == 200
    assert me == {"id": "github:1", "email": "ada@example.com", "name": "Ada", "avatar": "/ada.png"}


def test_reactions_flow(server):
    port, _ = server
    assert _request(port, "POST", "/api/reactions", {"post": "blog/a", "emoji": "👍"})[0] == 401

    status, body, _ = _request(port, "POST", "/api/reactions", {"post": "blog/a", "emoji": "👍"}, cookie=ADA)
    assert status == 200
    assert json.loads(body) == {"added": True}
    _request(port, "POST", "/api/reactions", {"post": "blog/a", "emoji": "👍"}, cookie=BOB)

    status, counts = _get_json(port, "/api/reactions?post=blog/a")
    assert status == 200
    assert counts[0]["emoji"] == "👍"
    assert counts[0]["count"] == 2
    assert sorted(counts[0]["users"]) == ["Ada", "Bob"]

    assert _get_json(port, "/api/reactions/user?post=blog/a", cookie=ADA) == (200, ["👍"])
    assert _request(port, "GET", "/api/reactions/user?post=blog/a")[0] == 401

    status, body, _ = _request(port, "POST", "/api/reactions", {"post": "blog/a", "emoji": "👍"}, cookie=ADA)
    assert json.loads(body) == {"added": False}


def test_reaction_validation(server):
    port, _ = server
    assert _request(port, "POST", "/api/reactions", {"post": "blog/a", "emoji": "🦄"}, cookie=ADA)[0] == 400
    assert _request(port, "POST", "/api/reactions", {"post": "", "emoji": "👍"}, cookie=ADA)[0] == 400
    assert _request(port, "GET", "/api/reactions")[0] == 400
    status, body, headers = _request(port, "DELETE", "/api/reactions", cookie=ADA)
    assert status == 405
    assert headers["content-type"].startswith("text/plain")


def test_comment_lifecycle(server):
    port, _ = server
    status, body, _ = _request(
        port, "POST", "/api/comments", {"post": "blog/a", "content": "  Hello **world**  "}, cookie=ADA
    )
    assert status == 201
    created = json.loads(body)
    assert created["content"] == "Hello **world**"
    assert "<strong>world</strong>" in created["contentHtml"]
    assert created["userName"] == "Ada"
    assert created["createdAt"].endswith("Z")

    status, comments = _get_json(port, "/api/comments?post=blog/a")
    assert [comment["id"] for comment in comments] == [created["id"]]
    assert comments[0]["userAvatar"] == "/ada.png"

    path = f"/api/comments/{created['id']}"
    assert _request(port, "PUT", path, {"content": "stolen"}, cookie=BOB)[0] == 404
    status, body, _ = _request(port, "PUT", path, {"content": "edited"}, cookie=ADA)
    assert status == 200
    assert json.loads(body)["content"] == "edited"

    assert _request(port, "DELETE", path, cookie=BOB)[0] == 404
    assert _request(port, "DELETE", path, cookie=ADA)[0] == 204
    assert _get_json(port, "/api/comments?post=blog/a") == (200, [])


def test_comment_validation(server):
    port, _ = server
    assert _request(port, "POST", "/api/comments", {"post": "blog/a", "content": "hi"})[0] == 401
    assert _request(port, "POST", "/api/comments", {"post": "blog/a", "content": "   "}, cookie=ADA)[0] == 400
    assert _request(port, "POST", "/api/comments", {"content": "hi"}, cookie=ADA)[0] == 400
    too_long = "é" * 5121
    assert _request(port, "POST", "/api/comments", {"post": "blog/a", "content": too_long}, cookie=ADA)[0] == 400
    at_limit = "a" * 10240
    assert _request(port, "POST", "/api/comments", {"post": "blog/a", "content": at_limit}, cookie=ADA)[0] == 201
    assert _request(port, "PUT", "/api/comments/abc", {"content": "x"}, cookie=ADA)[0] == 400
    assert _request(port, "DELETE", "/api/comments/999", cookie=ADA)[0] == 404


def test_comment_markdown_does_not_pass_raw_html(server):
    port, _ = server
    status, body, _ = _request(
        port, "POST", "/api/comments", {"post": "blog/a", "content": "<img src=x onerror=alert(1)>"}, cookie=ADA
    )
    assert status == 201
    assert "<img" not in json.loads(body)["contentHtml"]


def test_comment_links_cannot_run_script(server):
    port, _ = server
    content = "[click](javascript:alert(document.cookie)) and [safe](https://example.com)"
    status, body, _ = _request(port, "POST", "/api/comments", {"post": "blog/a", "content": content}, cookie=ADA)
    assert status == 201
    html = json.loads(body)["contentHtml"]
    assert "javascript:" not in html
    assert 'href="https://example.com"' in html

    _, comments = _get_json(port, "/api/comments?post=blog/a")
    assert "javascript:" not in comments[0]["contentHtml"]


def test_invalid_json_body(server):
    port, _ = server
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request("POST", "/api/comments", body="{not json", headers={"Cookie": ADA})
        assert conn.getresponse().status == 400
    finally:
        conn.close()


def test_search_endpoint(server):
    port, store = server
    store.replace_search_index(
        [SearchRecord("fts", "blog", "Full text", "", "searching with sqlite", "blog", "/blog/fts", "2024-01-01")]
    )
    status, results = _get_json(port, "/api/search?q=sqli")
    assert status == 200
    assert results[0]["url"] == "/blog/fts"
    assert results[0]["title"] == "Full text"
    assert _get_json(port, "/api/search?q=") == (200, [])
    assert _get_json(port, "/api/search") == (200, [])


def test_providers_endpoint(server):
    port, _ = server
    assert _get_json(port, "/api/auth/providers") == (200, {"providers": [{"id": "github", "name": "GitHub"}]})


def test_oauth_callback_creates_session(server):
    port, store = server
    status, _, headers = _request(port, "GET", "/auth/github?redirect=/blog")
    assert status == 307
    assert headers["location"].startswith("https://github.com/login/oauth/authorize?")

    state = "L2Jsb2c="  # "/blog"
    status, _, headers = _request(port, "GET", f"/auth/github/callback?code=abc&state={state}")
    assert status == 307
    assert headers["location"] == "/blog"
    cookie = headers["set-cookie"]
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie
    assert "Path=/" in cookie
    token = read_session_token(cookie.split(";")[0])
    assert store.get_session(token) == "github:7"
    assert store.get_user("github:7").name == "Seven"

    status, _, headers = _request(port, "GET", "/auth/logout", cookie=f"session={token}")
    assert status == 307
    assert headers["location"] == "/"
    assert "Max-Age=0" in headers["set-cookie"]
    assert store.get_session(token) is None


def test_oauth_callback_requires_code(server):
    port, _ = server
    assert _request(port, "GET", "/auth/github/callback")[0] == 400
    assert _request(port, "GET", "/auth/gitlab")[0] == 404


def test_unconfigured_provider_is_503(site):
    config, store = site
    app = SiteApp(config, store, providers={"github": StubProvider(configured=False)})
    server, port = _start_server(app)
    try:
        assert _request(port, "GET", "/auth/github")[0] == 503
        assert _request(port, "GET", "/auth/github/callback?code=x")[0] == 503
        assert _get_json(port, "/api/auth/providers") == (200, {"providers": []})
    finally:
        server.shutdown()
        server.server_close()


def test_dev_mode_uses_ephemeral_user(site):
    config, store = site
    app = SiteApp(config, store, dev_mode=True, providers={})
    app.install_dev_user()
    server, port = _start_server(app)
    try:
        status, me = _get_json(port, "/api/me")
        assert me["id"] == DEV_USER.id
        assert _get_json(port, "/api/me", cookie=ADA)[1]["id"] == "github:1"
        assert _request(port, "POST", "/api/comments", {"post": "blog/a", "content": "dev note"})[0] == 201
        _request(port, "POST", "/api/comments", {"post": "blog/a", "content": "real"}, cookie=ADA)
    finally:
        server.shutdown()
        server.server_close()

    app.remove_dev_user_data()
    assert [comment.content for comment in store.list_comments("blog/a")] == ["real"]


def test_unexpected_errors_become_500(site, monkeypatch):
    config, store = site
    app = SiteApp(config, store, providers={})

    def explode(post):
        raise RuntimeError("database exploded with secrets")

    monkeypatch.setattr(app, "api_comments", explode)
    server, port = _start_server(app)
    try:
        status, body, _ = _request(port, "GET", "/api/comments?post=x")
        assert status == 500
        assert "secrets" not in body
    finally:
        server.shutdown()
        server.server_close()


def test_session_cookie_round_trip():
    header = session_cookie("abc")
    assert header.startswith("session=abc")
    assert read_session_token("other=1; session=abc") == "abc"
    assert read_session_token("") is None
    assert read_session_token("other=1") is None


def test_drain_returns_when_idle(site):
    config, store = site
    server, port = _start_server(SiteApp(config, store, providers={}))
    _request(port, "GET", "/")
    server.shutdown()
    assert server.drain(timeout=1.0) == 0
    server.server_close()


def test_search_snippets_are_escaped(server):
    port, store = server
    store.replace_search_index(
        [SearchRecord("x", "blog", "Tags", "", "use <img src=x onerror=alert(1)> images", "blog", "/blog/x", "")]
    )
    status, results = _get_json(port, "/api/search?q=images")
    assert status == 200
    snippet = results[0]["snippet"]
    assert "<img" not in snippet
    assert "&lt;img" in snippet
    assert "<mark>images</mark>" in snippet


class BodyHandler:
    def __init__(self, length: str, body: bytes = b""):
        self.headers = {"Content-Length": length}
        self.rfile = io.BytesIO(body)


def test_oversized_body_is_rejected_before_reading():
    handler = BodyHandler(str(MAX_BODY_BYTES + 1), b"{}")
    with pytest.raises(ApiError) as info:
        _parse_json_body(handler)
    assert info.value.status == 413
    assert handler.rfile.tell() == 0


def test_body_within_limit_is_parsed():
    body = json.dumps({"content": "x" * 1000}).encode("utf-8")
    assert _parse_json_body(BodyHandler(str(len(body)), body)) == {"content": "x" * 1000}
