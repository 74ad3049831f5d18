from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Optional

from .api import SiteApp
from .config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONTENT_DIR,
    DEFAULT_DB_PATH,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_STATIC_DIR,
    DEFAULT_TEMPLATE_DIR,
    BuildConfig,
    SiteConfig,
    load_config,
)
from .errors import FolioError
from .livereload import Broker
from .server import serve
from .site import build_site
from .store import Store
from .watch import Rebuilder

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
DEV_PORT = 3000
SERVE_PORT = 8080

logger = logging.getLogger(__name__)


def local_url(port: int) -> str:
    return f"http://localhost:{port}"


def make_config(args: argparse.Namespace, site: SiteConfig, base_url: str, dev_mode: bool = False) -> BuildConfig:
    config = BuildConfig(
        content_dir=Path(getattr(args, "content", DEFAULT_CONTENT_DIR)),
        output_dir=Path(args.output),
        static_dir=Path(args.static),
        template_dir=Path(args.templates),
        base_url=base_url.rstrip("/"),
        dev_mode=dev_mode,
    )
    config.apply_site(site)
    return config


def cmd_build(args: argparse.Namespace, site: SiteConfig) -> int:
    config = make_config(args, site, args.base_url or site.base_url)
    store = Store(args.database)
    try:
        config.store = store
        start = time.perf_counter()
        build_site(config)
        elapsed = time.perf_counter() - start
    finally:
        store.close()
    print(f"Build complete in {elapsed:.2f}s.")
    print(f"Site generated in: {config.output_dir}")
    return 0


def cmd_dev(args: argparse.Namespace, site: SiteConfig) -> int:
    base_url = args.base_url or site.dev_base_url or local_url(args.port)
    config = make_config(args, site, base_url, dev_mode=True)
    store = Store(args.database)
    try:
        config.store = store
        start = time.perf_counter()
        build_site(config)
        logger.info("Initial build finished in %.2fs", time.perf_counter() - start)

        app = SiteApp(config, store, dev_mode=True)
        app.install_dev_user()
        broker = Broker()
        watcher = Rebuilder(config, broker).watcher()
        watcher.start()
        serve(app, args.port, broker=broker, on_shutdown=watcher.stop)
    finally:
        store.close()
    return 0


def cmd_serve(args: argparse.Namespace, site: SiteConfig) -> int:
    base_url = args.base_url or site.base_url or local_url(args.port)
    config = make_config(args, site, base_url)
    if not config.output_dir.is_dir():
        logger.warning("Output directory %s does not exist; run 'folio build' first", config.output_dir)
    store = Store(args.database)
    try:
        serve(SiteApp(config, store), args.port)
    finally:
        store.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to site config file (YAML/TOML/JSON).",
    )
    pre_args, _ = pre_parser.parse_known_args(argv)
    try:
        config = load_config(Path(pre_args.config))
        site = SiteConfig.from_mapping(config)
    except FolioError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    def cfg_str(key: str, default: str) -> str:
        value = config.get(key)
        return default if value is None else str(value)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=pre_args.config, help="Path to site config file (YAML/TOML/JSON).")
    common.add_argument(
        "--log-level",
        default=cfg_str("log_level", "INFO").upper(),
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging verbosity.",
    )
    common.add_argument("--static", default=cfg_str("static", DEFAULT_STATIC_DIR), help="Directory containing static assets.")
    common.add_argument(
        "--templates", default=cfg_str("templates", DEFAULT_TEMPLATE_DIR), help="Directory containing templates."
    )
    common.add_argument("--database", default=cfg_str("database", DEFAULT_DB_PATH), help="SQLite database path.")
    common.add_argument("--output", default=cfg_str("output", DEFAULT_OUTPUT_DIR), help="Output directory for the site.")
    common.add_argument("--base-url", default="", help="Public site URL used for canonical links.")

    parser = argparse.ArgumentParser(prog="folio", description="Markdown blog and docs generator.")
    commands = parser.add_subparsers(dest="command", required=True)

    build = commands.add_parser("build", parents=[common], help="Generate the static site.")
    build.add_argument("--content", default=cfg_str("content", DEFAULT_CONTENT_DIR), help="Content directory.")
    build.set_defaults(handler=cmd_build)

    dev = commands.add_parser("dev", parents=[common], help="Build, watch and serve with live reload.")
    dev.add_argument("--port", type=int, default=DEV_PORT, help="Port to listen on.")
    dev.add_argument("--content", default=cfg_str("content", DEFAULT_CONTENT_DIR), help="Content directory.")
    dev.set_defaults(handler=cmd_dev)

    serve_cmd = commands.add_parser("serve", parents=[common], help="Serve a built site and its API.")
    serve_cmd.add_argument("--port", type=int, default=SERVE_PORT, help="Port to listen on.")
    serve_cmd.set_defaults(handler=cmd_serve)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        return args.handler(args, site)
    except FolioError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
