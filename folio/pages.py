from __future__ import annotations

import datetime as dt
import html
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import jinja2
from markupsafe import Markup

from .config import BuildConfig
from .errors import BuildError
from .highlight import Highlighter
from .models import ALLOWED_EMOJIS, Collection, Library, Post, ProfilePage, newest_first_key
from .render import write_text
from .utils import rfc3339

logger = logging.getLogger(__name__)

POSTS_PER_PAGE = 10
HOME_POST_LIMIT = 5
HOME_DOCS_LIMIT = 5
PAGE_WINDOW = 7
ELLIPSIS = -1


def asset_resolver(hashes: dict[str, str]) -> Callable[[str], str]:
    """``asset("css/main.css")`` -> ``/css/main.<hash>.css`` when hashed."""

    def asset(path: str) -> str:
        normalized = path.replace("\\", "/").lstrip("/")
        return "/" + hashes.get(normalized, normalized)

    return asset


def template_globals(hashes: dict[str, str], static_dir: Path, highlighter: Optional[Highlighter] = None) -> dict:
    critical_path = Path(static_dir) / "css" / "critical.css"
    critical = critical_path.read_text(encoding="utf-8") if critical_path.is_file() else ""
    highlighter = highlighter or Highlighter()
    return {
        "asset": asset_resolver(hashes),
        "critical_css": lambda: Markup(critical),
        "highlight_css": lambda: Markup(highlighter.css()),
    }


@dataclass
class TemplateSet:
    home: jinja2.Template
    docs: jinja2.Template
    collection: jinja2.Template
    post: jinja2.Template
    profile: jinja2.Template
    blog: Optional[jinja2.Template] = None
    referrals: Optional[jinja2.Template] = None

    @classmethod
    def load(cls, template_dir: Path, globals: Optional[dict] = None) -> "TemplateSet":
        env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(template_dir)),
            autoescape=jinja2.select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.globals.update(globals or {})

        def required(name: str) -> jinja2.Template:
            try:
                return env.get_template(name)
            except jinja2.TemplateNotFound as exc:
                raise BuildError(f"missing template {exc.name}") from exc
            except jinja2.TemplateSyntaxError as exc:
                raise BuildError(f"failed to parse {exc.name or name}:{exc.lineno}: {exc.message}") from exc

        def optional(name: str) -> Optional[jinja2.Template]:
            try:
                return required(name)
            except BuildError as exc:
                if isinstance(exc.__cause__, jinja2.TemplateNotFound) and exc.__cause__.name == name:
                    return None
                raise

        required("base.html")
        collection = optional("collection.html") or required("topic.html")
        return cls(
            home=required("home.html"),
            docs=required("docs.html"),
            collection=collection,
            post=required("post.html"),
            profile=required("profile.html"),
            blog=optional("blog.html") or collection,
            referrals=optional("referrals.html"),
        )


def social_image(config: BuildConfig, collection: Optional[Collection] = None) -> str:
    if collection is not None and collection.banner:
        return f"{config.base_url}/images/{collection.banner}"
    if collection is not None and collection.icon.startswith(("/", "http")):
        return collection.icon
    if config.profile.photo:
        return config.profile.photo
    return config.default_social_image or ""


def page_numbers(current: int, total: int) -> list[int]:
    """Page links for the pager; ``ELLIPSIS`` marks a gap."""
    if total <= PAGE_WINDOW:
        return list(range(1, total + 1))
    pages = [1]
    if current > 3:
        pages.append(ELLIPSIS)
    pages.extend(page for page in range(current - 1, current + 2) if 1 < page < total)
    if current < total - 2:
        pages.append(ELLIPSIS)
    pages.append(total)
    return pages


def paginate(posts: list[Post], page_size: int = POSTS_PER_PAGE) -> list[list[Post]]:
    total = max(1, math.ceil(len(posts) / page_size))
    return [posts[index * page_size : (index + 1) * page_size] for index in range(total)]


def blog_page_path(page: int) -> str:
    return "blog" if page == 1 else f"blog/page/{page}"


def structured_data(post: Post) -> dict:
    data = {
        "@context": "https://schema.org",
        "@type": "Article",
        "headline": post.title,
        "description": post.description,
        "datePublished": rfc3339(post.date) if post.date else "",
    }
    if post.updated:
        data["dateModified"] = rfc3339(post.updated)
    return data


def script_json(data: dict) -> Markup:
    return Markup(json.dumps(data, indent=2, ensure_ascii=False).replace("</", "<\\/"))


def build_sitemap(base_url: str, library: Library) -> str:
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">',
        f"  <url><loc>{html.escape(base_url)}</loc></url>",
    ]
    for collection in library:
        lines.append(f"  <url><loc>{html.escape(base_url + collection.url)}</loc></url>")
        for post in collection.posts:
            loc = html.escape(base_url + post.url)
            lastmod = post.last_modified
            if lastmod is None:
                lines.append(f"  <url><loc>{loc}</loc></url>")
            else:
                lines.append(f"  <url><loc>{loc}</loc><lastmod>{lastmod.isoformat()}</lastmod></url>")
    lines.append("</urlset>")
    return "\n".join(lines) + "\n"


class PageGenerator:
    """Renders every page of one build from already loaded state."""

    def __init__(self, config: BuildConfig, library: Library, templates: TemplateSet):
        self.config = config
        self.library = library
        self.templates = templates
        self.year = dt.date.today().year

    def page(self, title: str, path: str = "", **extra) -> dict:
        data = {
            "title": title,
            "description": "",
            "canonical_url": self.config.base_url + path,
            "og_type": "website",
            "og_image": social_image(self.config),
            "date_published": "",
            "date_modified": "",
            "site_name": self.config.site_name,
            "site_description": self.config.site_description,
            "collections": self.library.collections,
            "year": self.year,
            "structured_data": "",
            "dev_mode": self.config.dev_mode,
        }
        data.update(extra)
        return data

    def render_page(self, template: jinja2.Template, out_path: str, **context) -> Path:
        try:
            text = template.render(**context)
        except jinja2.TemplateError as exc:
            raise BuildError(f"failed to render {out_path}: {exc}") from exc
        target = self.config.output_dir / out_path
        write_text(target, text)
        logger.debug("Wrote %s", target)
        return target

    def generate_all(self, profile: Optional[ProfilePage] = None) -> None:
        self.generate_home()
        if profile is not None:
            self.generate_profile(profile)
        if self.templates.referrals is not None and self.config.referrals:
            self.generate_referrals()
        self.generate_docs()
        for collection in self.library:
            if collection.is_main_blog() and self.templates.blog is not None:
                self.generate_blog(collection)
            else:
                self.generate_collection(collection)
            for post in collection.posts:
                self.generate_post(collection, post)

    def generate_home(self) -> None:
        posts = [post for collection in self.library.series() for post in collection.posts]
        posts.sort(key=lambda post: newest_first_key(post.date), reverse=True)
        self.render_page(
            self.templates.home,
            "index.html",
            page=self.page(self.config.site_name, description=self.config.site_description),
            profile=self.config.profile,
            referrals=self.config.referrals,
            latest_posts=posts[:HOME_POST_LIMIT],
            docs_collections=self.library.topics()[:HOME_DOCS_LIMIT],
        )

    def generate_profile(self, profile: ProfilePage) -> None:
        self.render_page(
            self.templates.profile,
            "profile/index.html",
            page=self.page(
                f"{profile.title} | {self.config.site_name}",
                "/profile",
                description=profile.description,
                og_type="profile",
            ),
            profile=self.config.profile,
            content=Markup(profile.content),
        )

    def generate_referrals(self) -> None:
        self.render_page(
            self.templates.referrals,
            "referrals/index.html",
            page=self.page(
                f"Referrals | {self.config.site_name}",
                "/referrals",
                description="People I recommend and work with",
            ),
            referrals=self.config.referrals,
        )

    def generate_docs(self) -> None:
        self.render_page(
            self.templates.docs,
            "docs/index.html",
            page=self.page(
                f"Documentation | {self.config.site_name}",
                "/docs",
                description="Browse all documentation and guides",
            ),
            docs_collections=self.library.topics(),
        )

    def generate_blog(self, collection: Collection) -> int:
        posts = sorted(collection.posts, key=lambda post: newest_first_key(post.date), reverse=True)
        pages = paginate(posts, POSTS_PER_PAGE)
        total = len(pages)
        for number, page_posts in enumerate(pages, start=1):
            self.render_page(
                self.templates.blog,
                f"{blog_page_path(number)}/index.html",
                page=self.page(
                    f"{collection.name} | {self.config.site_name}",
                    "/blog",
                    description=collection.description,
                    og_image=social_image(self.config, collection),
                ),
                collection=collection,
                children=self.library.children_of(collection),
                posts=page_posts,
                current_page=number,
                total_pages=total,
                prev_page=number - 1,
                next_page=number + 1,
                page_numbers=page_numbers(number, total),
                page_url=lambda page: "/" + blog_page_path(page),
            )
        return total

    def generate_collection(self, collection: Collection) -> None:
        self.render_page(
            self.templates.collection,
            f"{collection.slug}/index.html",
            page=self.page(
                f"{collection.name} | {self.config.site_name}",
                collection.url,
                description=collection.description,
                og_image=social_image(self.config, collection),
            ),
            collection=collection,
            parent=self.library.parent_of(collection),
            children=self.library.children_of(collection),
        )

    def generate_post(self, collection: Collection, post: Post) -> None:
        self.render_page(
            self.templates.post,
            f"{collection.slug}/{post.slug}/index.html",
            page=self.page(
                f"{post.title} | {collection.name} | {self.config.site_name}",
                post.url,
                description=post.description,
                og_type="article",
                og_image=post.og_image or social_image(self.config, collection),
                date_published=rfc3339(post.date) if post.date else "",
                date_modified=rfc3339(post.updated) if post.updated else "",
                structured_data=script_json(structured_data(post)),
            ),
            collection=collection,
            post=post,
            content=Markup(post.content),
            prev_post=collection.prev_post(post),
            next_post=collection.next_post(post),
            emojis=ALLOWED_EMOJIS,
        )

    def write_sitemap(self) -> Path:
        target = self.config.output_dir / "sitemap.xml"
        write_text(target, build_sitemap(self.config.base_url, self.library))
        return target
