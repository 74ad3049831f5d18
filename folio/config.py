from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import BuildError, ConfigError

DEFAULT_CONTENT_DIR = "content"
DEFAULT_OUTPUT_DIR = "dist"
DEFAULT_STATIC_DIR = "static"
DEFAULT_TEMPLATE_DIR = "templates"
DEFAULT_DB_PATH = "data/sqlite.db"
DEFAULT_CONFIG_PATH = "site.yml"


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".toml":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in config file {path}: {exc}") from exc
    elif suffix in {".yml", ".yaml"}:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc
        if data is None:
            return {}
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping: {path}")
    return data


def _from_mapping(cls, data: object):
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{key: str(value) for key, value in data.items() if key in known and value is not None})


@dataclass
class ProfileConfig:
    photo: str = ""
    bio: str = ""
    github: str = ""
    linkedin: str = ""
    email: str = ""


@dataclass
class ReferralConfig:
    name: str = ""
    photo: str = ""
    github: str = ""
    linkedin: str = ""
    website: str = ""
    twitter: str = ""
    email: str = ""


@dataclass
class SiteConfig:
    title: str = ""
    description: str = ""
    base_url: str = ""
    dev_base_url: str = ""
    default_social_image: str = ""
    profile: ProfileConfig = field(default_factory=ProfileConfig)
    referrals: list[ReferralConfig] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: dict) -> "SiteConfig":
        referrals = data.get("referrals") or []
        if not isinstance(referrals, list):
            raise ConfigError("'referrals' must be a list")
        return cls(
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            base_url=str(data.get("base_url") or ""),
            dev_base_url=str(data.get("dev_base_url") or ""),
            default_social_image=str(data.get("default_social_image") or ""),
            profile=_from_mapping(ProfileConfig, data.get("profile")),
            referrals=[_from_mapping(ReferralConfig, item) for item in referrals],
        )

    @classmethod
    def load(cls, path: Path) -> "SiteConfig":
        return cls.from_mapping(load_config(path))


@dataclass
class BuildConfig:
    content_dir: Path = Path(DEFAULT_CONTENT_DIR)
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    static_dir: Path = Path(DEFAULT_STATIC_DIR)
    template_dir: Path = Path(DEFAULT_TEMPLATE_DIR)
    base_url: str = ""
    site_name: str = "Site"
    site_description: str = ""
    dev_mode: bool = False
    profile: ProfileConfig = field(default_factory=ProfileConfig)
    referrals: list[ReferralConfig] = field(default_factory=list)
    default_social_image: str = ""
    store: Optional[Any] = None

    def apply_site(self, site: SiteConfig) -> None:
        if site.title:
            self.site_name = site.title
        if site.description:
            self.site_description = site.description
        if site.base_url and not self.base_url:
            self.base_url = site.base_url
        if site.default_social_image:
            self.default_social_image = site.default_social_image
        self.profile = site.profile
        self.referrals = site.referrals

    def validate(self) -> None:
        if self.output_dir.resolve() == self.content_dir.resolve():
            raise BuildError("output directory must differ from the content directory")
        if not self.content_dir.is_dir():
            raise BuildError(f"content directory does not exist: {self.content_dir}")
