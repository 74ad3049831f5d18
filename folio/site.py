from __future__ import annotations

import functools
import logging
import time

from .assets import AssetProcessor
from .config import BuildConfig
from .content import Loader
from .errors import BuildError, FolioError
from .highlight import Highlighter
from .models import Library
from .og import CardGenerator, generate_cards
from .pages import PageGenerator, TemplateSet, template_globals
from .render import Renderer
from .search import Indexer
from .utils import clean_output_dir

logger = logging.getLogger(__name__)


def stage(name: str):
    """Decorator that reports failures as ``failed to <name>: ...``."""

    def wrap(func):
        @functools.wraps(func)
        def run(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except BuildError as exc:
                if str(exc).startswith("failed to "):
                    raise
                raise BuildError(f"failed to {name}: {exc}") from exc
            except (FolioError, OSError) as exc:
                raise BuildError(f"failed to {name}: {exc}") from exc

        return run

    return wrap


@stage("clean output directory")
def _clean(config: BuildConfig) -> None:
    clean_output_dir(config.output_dir)


@stage("load content")
def _load(loader: Loader) -> Library:
    return loader.load_all()


@stage("index content")
def _index(config: BuildConfig, library: Library) -> None:
    Indexer(config.store).index_all(library)


@stage("copy static files")
def _assets(config: BuildConfig) -> dict[str, str]:
    return AssetProcessor(config.static_dir, config.output_dir, config.dev_mode).process_all()


@stage("load templates")
def _templates(config: BuildConfig, hashes: dict[str, str], highlighter: Highlighter) -> TemplateSet:
    return TemplateSet.load(config.template_dir, template_globals(hashes, config.static_dir, highlighter))


@stage("generate OG images")
def _cards(config: BuildConfig, library: Library) -> None:
    generator = CardGenerator.from_static(
        config.static_dir,
        config.output_dir,
        config.site_name,
        config.base_url,
        config.profile.photo,
    )
    if generator is not None:
        generate_cards(generator, library, config.base_url)


@stage("generate pages")
def _pages(generator: PageGenerator, loader: Loader) -> None:
    generator.generate_all(loader.load_profile())


@stage("generate sitemap")
def _sitemap(generator: PageGenerator) -> None:
    generator.write_sitemap()


def build_site(config: BuildConfig) -> Library:
    """Run the whole pipeline into ``config.output_dir``."""
    start = time.perf_counter()
    config.validate()
    highlighter = Highlighter()
    loader = Loader(config.content_dir, Renderer(highlighter))

    _clean(config)
    library = _load(loader)
    if config.store is not None:
        _index(config, library)
    hashes = _assets(config)
    templates = _templates(config, hashes, highlighter)
    _cards(config, library)
    generator = PageGenerator(config, library, templates)
    _pages(generator, loader)
    _sitemap(generator)

    logger.info(
        "Built %d collections, %d posts into %s in %.2fs",
        len(library),
        sum(collection.post_count for collection in library),
        config.output_dir,
        time.perf_counter() - start,
    )
    return library
