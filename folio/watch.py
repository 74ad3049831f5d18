"""Dev-mode file watching and rebuilds."""

from __future__ import annotations

import dataclasses
import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from .config import BuildConfig
from .errors import FolioError
from .livereload import Broker
from .site import build_site

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.1
POLL_SECONDS = 0.25

Snapshot = dict[Path, tuple[int, int]]


def snapshot(paths: Iterable[Path]) -> Snapshot:
    """``(mtime_ns, size)`` of every file below ``paths``."""
    state: Snapshot = {}
    for root in paths:
        if not root.exists():
            continue
        for path in root.rglob("*"):
            try:
                if path.is_file():
                    stat = path.stat()
                    state[path] = (stat.st_mtime_ns, stat.st_size)
            except OSError:
                # removed between listing and stat
                continue
    return state


class Debouncer:
    """Collapse a burst of triggers into one call after ``delay`` seconds of quiet."""

    def __init__(self, delay: float, func: Callable[[], None]):
        self.delay = delay
        self.func = func
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.func)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class Watcher:
    def __init__(self, paths: Iterable[Path], on_change: Callable[[], None], interval: float = POLL_SECONDS):
        self.paths = [Path(path) for path in paths]
        self.interval = interval
        self.debouncer = Debouncer(DEBOUNCE_SECONDS, on_change)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state: Snapshot = {}

    def poll(self) -> bool:
        """Compare against the last snapshot; fires the debouncer on any change."""
        state = snapshot(self.paths)
        changed = state != self._state
        self._state = state
        if changed:
            self.debouncer.trigger()
        return changed

    def start(self) -> None:
        self._state = snapshot(self.paths)
        self._thread = threading.Thread(target=self._run, name="watcher", daemon=True)
        self._thread.start()
        logger.info("Watching %s", ", ".join(str(path) for path in self.paths))

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll()

    def stop(self) -> None:
        self._stop.set()
        self.debouncer.cancel()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 4)


def staging_dir(output_dir: Path) -> Path:
    return output_dir.with_name(output_dir.name + ".staging")


def swap_into_place(staging: Path, output_dir: Path) -> None:
    backup = output_dir.with_name(output_dir.name + ".old")
    if backup.exists():
        shutil.rmtree(backup)
    if output_dir.exists():
        output_dir.rename(backup)
    staging.rename(output_dir)
    if backup.exists():
        shutil.rmtree(backup)


class Rebuilder:
    """Builds into a staging directory and swaps it in only on success."""

    def __init__(self, config: BuildConfig, broker: Optional[Broker] = None):
        self.config = config
        self.broker = broker
        self._lock = threading.Lock()

    def rebuild(self) -> bool:
        with self._lock:
            start = time.perf_counter()
            staging = staging_dir(self.config.output_dir)
            try:
                build_site(dataclasses.replace(self.config, output_dir=staging))
                swap_into_place(staging, self.config.output_dir)
            except (FolioError, OSError) as exc:
                logger.error("Rebuild failed, keeping previous output: %s", exc)
                shutil.rmtree(staging, ignore_errors=True)
                return False
            logger.info("Rebuilt in %.0fms", (time.perf_counter() - start) * 1000)
        if self.broker is not None:
            self.broker.publish()
        return True

    def watcher(self) -> Watcher:
        config = self.config
        return Watcher([config.content_dir, config.template_dir, config.static_dir], self.rebuild)
