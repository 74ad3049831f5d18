from pathlib import Path

from folio import cli


def test_build_command(site_config, tmp_path: Path, capsys):
    config_file = tmp_path / "site.yml"
    config_file.write_text("title: CLI Site\nbase_url: https://cli.example.com\n", encoding="utf-8")
    database = tmp_path / "data" / "sqlite.db"

    code = cli.main(
        [
            "build",
            "--config",
            str(config_file),
            "--content",
            str(site_config.content_dir),
            "--output",
            str(site_config.output_dir),
            "--static",
            str(site_config.static_dir),
            "--templates",
            str(site_config.template_dir),
            "--database",
            str(database),
        ]
    )

    assert code == 0
    assert "Build complete" in capsys.readouterr().out
    home = (site_config.output_dir / "index.html").read_text(encoding="utf-8")
    assert "CLI Site" in home
    assert "https://cli.example.com" in home
    assert database.is_file()


def test_base_url_flag_wins_over_config(site_config, tmp_path: Path):
    config_file = tmp_path / "site.yml"
    config_file.write_text("base_url: https://config.example.com\n", encoding="utf-8")
    code = cli.main(
        [
            "build",
            "--config",
            str(config_file),
            "--content",
            str(site_config.content_dir),
            "--output",
            str(site_config.output_dir),
            "--static",
            str(site_config.static_dir),
            "--templates",
            str(site_config.template_dir),
            "--database",
            str(tmp_path / "db.sqlite"),
            "--base-url",
            "https://flag.example.com/",
        ]
    )
    assert code == 0
    sitemap = (site_config.output_dir / "sitemap.xml").read_text(encoding="utf-8")
    assert "https://flag.example.com/blog" in sitemap
    assert "config.example.com" not in sitemap


def test_build_failure_exits_with_error(tmp_path: Path, capsys):
    code = cli.main(
        [
            "build",
            "--config",
            str(tmp_path / "missing.yml"),
            "--content",
            str(tmp_path / "no-content"),
            "--output",
            str(tmp_path / "dist"),
            "--database",
            str(tmp_path / "db.sqlite"),
        ]
    )
    assert code == 1
    assert "content directory does not exist" in capsys.readouterr().err


def test_invalid_config_file(tmp_path: Path, capsys):
    config_file = tmp_path / "site.yml"
    config_file.write_text("title: [broken\n", encoding="utf-8")
    assert cli.main(["build", "--config", str(config_file)]) == 1
    assert "Invalid YAML" in capsys.readouterr().err


def test_local_url():
    assert cli.local_url(3000) == "http://localhost:3000"
