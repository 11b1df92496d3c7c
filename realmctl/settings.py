#!/usr/bin/env python3
"""
Runtime settings for realmctl.

Settings come from built-in defaults, then an optional YAML file, then
``REALMCTL_*`` environment variables (a ``.env`` file is honoured).
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

ENV_PREFIX = "REALMCTL_"
SETTINGS_ENV_VAR = "REALMCTL_SETTINGS"

DEFAULT_TARGETS = [
    "x86_64-unknown-linux-musl",
    "x86_64-unknown-linux-gnu",
]

_PATH_FIELDS = {
    "realm_dir", "config_file", "bin_path", "log_file",
    "service_file", "pid_file", "run_dir",
}


class SettingsError(Exception):
    """Raised when a settings source is unreadable or invalid."""
    pass


@dataclass
class Settings:
    """Resolved locations and versions used by every realmctl command."""
    realm_dir: Path = Path("/root/realm")
    config_file: Optional[Path] = None
    bin_path: Optional[Path] = None
    log_file: Path = Path("/var/log/realm_manager.log")
    service_name: str = "realm"
    service_file: Path = Path("/etc/init.d/realm")
    run_dir: Path = Path("/run")
    pid_file: Optional[Path] = None
    releases_url: str = "https://github.com/zhboner/realm/releases"
    download_url_template: str = (
        "https://github.com/zhboner/realm/releases/download/v{version}/realm-{target}.tar.gz"
    )
    fallback_version: str = "2.7.0"
    http_timeout: float = 30.0
    targets: List[str] = field(default_factory=lambda: list(DEFAULT_TARGETS))

    def __post_init__(self):
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                setattr(self, name, Path(value))
        if self.config_file is None:
            self.config_file = self.realm_dir / "config.toml"
        if self.bin_path is None:
            self.bin_path = self.realm_dir / "realm"
        if self.pid_file is None:
            self.pid_file = self.run_dir / f"{self.service_name}.pid"
        self.http_timeout = float(self.http_timeout)
        if isinstance(self.targets, str):
            self.targets = [t.strip() for t in self.targets.split(",") if t.strip()]

    def download_url(self, version: str, target: str) -> str:
        return self.download_url_template.format(version=version, target=target)

    def as_dict(self) -> Dict[str, Any]:
        """Plain representation for display."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = str(value) if isinstance(value, Path) else value
        return data


def _field_names() -> List[str]:
    return [f.name for f in fields(Settings)]


def load_settings_file(path: Path) -> Dict[str, Any]:
    """Read a YAML settings file into a dict of known keys.

    Raises:
        SettingsError: If the file is missing, malformed or has unknown keys
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise SettingsError(f"Settings file not found: {path}")
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping")

    unknown = sorted(set(data) - set(_field_names()))
    if unknown:
        raise SettingsError(f"Unknown settings in {path}: {', '.join(unknown)}")
    return data


def _env_overrides(environ) -> Dict[str, Any]:
    overrides = {}
    for name in _field_names():
        value = environ.get(ENV_PREFIX + name.upper())
        if value:
            overrides[name] = value
    return overrides


def load_settings(settings_file: Optional[str] = None, environ=None) -> Settings:
    """Resolve settings from defaults, YAML file and environment.

    Args:
        settings_file: Optional YAML path; falls back to ``$REALMCTL_SETTINGS``
        environ: Mapping to read variables from (defaults to ``os.environ``)

    Returns:
        Resolved Settings
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values: Dict[str, Any] = {}
    settings_file = settings_file or environ.get(SETTINGS_ENV_VAR)
    if settings_file:
        values.update(load_settings_file(Path(settings_file)))
    values.update(_env_overrides(environ))

    try:
        return Settings(**values)
    except (TypeError, ValueError) as e:
        raise SettingsError(f"Invalid settings: {e}")

