import threading
import time
from pathlib import Path

from conftest import write_file
from folio.config import BuildConfig
from folio.livereload import Broker
from folio.watch import Debouncer, Rebuilder, Watcher, staging_dir


def test_debouncer_collapses_bursts():
    calls = []
    fired = threading.Event()

    def record():
        calls.append(time.monotonic())
        fired.set()

    debouncer = Debouncer(0.05, record)
    for _ in range(5):
        debouncer.trigger()
    assert fired.wait(1.0)
    time.sleep(0.1)
    assert len(calls) == 1


def test_debouncer_cancel():
    calls = []
    debouncer = Debouncer(0.05, lambda: calls.append(1))
    debouncer.trigger()
    debouncer.cancel()
    time.sleep(0.1)
    assert calls == []


def test_watcher_poll_detects_changes(tmp_path: Path):
    target = write_file(tmp_path / "content" / "a.md", "one")
    triggered = []
    watcher = Watcher([tmp_path / "content", tmp_path / "missing"], lambda: None)
    watcher.debouncer.trigger = lambda: triggered.append(True)

    assert watcher.poll() is True
    assert watcher.poll() is False

    target.write_text("a longer body", encoding="utf-8")
    assert watcher.poll() is True
    write_file(tmp_path / "content" / "nested" / "b.md", "two")
    assert watcher.poll() is True
    assert len(triggered) == 3


def test_rebuild_swaps_in_new_output_and_notifies(site_config: BuildConfig):
    site_config.dev_mode = True
    broker = Broker()
    client = broker.subscribe()
    rebuilder = Rebuilder(site_config, broker)

    assert rebuilder.rebuild() is True
    assert (site_config.output_dir / "index.html").is_file()
    assert not staging_dir(site_config.output_dir).exists()
    assert client.get_nowait() == "reload"


def test_failed_rebuild_keeps_previous_output(site_config: BuildConfig, caplog):
    rebuilder = Rebuilder(site_config)
    assert rebuilder.rebuild() is True
    home = site_config.output_dir / "index.html"
    before = home.read_text(encoding="utf-8")

    (site_config.template_dir / "post.html").write_text("{% block content %}", encoding="utf-8")
    assert rebuilder.rebuild() is False

    assert home.read_text(encoding="utf-8") == before
    assert not staging_dir(site_config.output_dir).exists()
    assert "Rebuild failed" in caplog.text
