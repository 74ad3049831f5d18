import shutil
import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path for absolute imports.
REPO_ROOT = Path(__file__).resolve().parents[1]
repo_root_str = str(REPO_ROOT)
if repo_root_str not in sys.path:
    sys.path.insert(0, repo_root_str)

from folio.config import BuildConfig  # noqa: E402


def write_file(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def write_post(directory: Path, name: str, title: str, date: str = "", body: str = "Body text.", **meta) -> Path:
    lines = ["---", f"title: {title}"]
    if date:
        lines.append(f"date: {date}")
    for key, value in meta.items():
        lines.append(f"{key}: {value}")
    lines.append("---")
    return write_file(directory / name, "\n".join(lines) + "\n" + body + "\n")


@pytest.fixture
def content_dir(tmp_path: Path) -> Path:
    content = tmp_path / "content"
    blog = content / "blog"
    write_file(blog / "_metadata.yml", "name: Blog\ndescription: Notes and essays\n")
    write_post(blog, "first-post.md", "First Post", "2024-01-10", "# Hello\n\nSome **bold** words about sqlite.")
    write_post(blog, "second-post.md", "Second Post", "2024-03-05", "Searching with full text.", updated="2024-04-01")
    write_post(blog, "draft-post.md", "Draft", "2024-05-01", draft="true")

    guide = content / "guide"
    write_file(guide / "_metadata.yml", "name: Guide\ntype: docs\n")
    write_post(guide, "install.md", "Install", body="## Requirements\n\nPython.", order=1)
    write_post(guide, "usage.md", "Usage", body="Run it.", order=2)

    write_file(content / "profile.md", "---\ntitle: About me\ndescription: Who I am\n---\nHi there.\n")
    return content


@pytest.fixture
def site_config(tmp_path: Path, content_dir: Path) -> BuildConfig:
    templates = tmp_path / "templates"
    static = tmp_path / "static"
    shutil.copytree(REPO_ROOT / "templates", templates)
    shutil.copytree(REPO_ROOT / "static", static)
    return BuildConfig(
        content_dir=content_dir,
        output_dir=tmp_path / "dist",
        static_dir=static,
        template_dir=templates,
        base_url="https://example.com",
        site_name="Example",
    )
