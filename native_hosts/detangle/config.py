from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .platforms import PlatformDefaults

_LOGGER = logging.getLogger("detangle.config")

# Deprecated profile name -> canonical profile name.
LEGACY_ALIASES: dict[str, str] = {
    "NONPRIV": "REGULAR",
    "SANDBOX": "ISOLATED",
}


class ConfigError(Exception):
    pass


class ProfileTable(Mapping[str, tuple[str, ...]]):
    """Read-only mapping of browser profile name -> base command line.

    Overlays return a new table; callers get mutable copies via `command_line()`.
    """

    __slots__ = ("_profiles",)

    def __init__(self, profiles: Mapping[str, Any] | None = None) -> None:
        frozen = {str(name): tuple(str(arg) for arg in args) for name, args in (profiles or {}).items()}
        self._profiles = MappingProxyType(frozen)

    def __getitem__(self, name: str) -> tuple[str, ...]:
        return self._profiles[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def __repr__(self) -> str:
        return f"ProfileTable({dict(self._profiles)!r})"

    def command_line(self, name: str) -> list[str] | None:
        args = self._profiles.get(name)
        return list(args) if args is not None else None

    def overlay(self, other: Mapping[str, Any]) -> ProfileTable:
        merged: dict[str, Any] = dict(self._profiles)
        merged.update(other)
        return ProfileTable(merged)

    def with_legacy_aliases(self) -> ProfileTable:
        merged: dict[str, Any] = dict(self._profiles)
        for alias, canonical in LEGACY_ALIASES.items():
            if canonical in merged:
                merged[alias] = merged[canonical]
            else:
                merged.pop(alias, None)
        return ProfileTable(merged)


def _browsers_section(data: Any) -> Any:
    if not isinstance(data, dict):
        raise ConfigError("config root must be a JSON object")
    if "Browsers" in data:
        return data["Browsers"]
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == "browsers":
            return value
    return {}


def parse_config(data: Any) -> ProfileTable:
    """Validate a decoded config document and expand env vars in its arguments."""
    browsers = _browsers_section(data)
    if browsers is None:
        return ProfileTable()
    if not isinstance(browsers, dict):
        raise ConfigError("`Browsers` must map profile names to argument lists")

    profiles: dict[str, list[str]] = {}
    for name, args in browsers.items():
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise ConfigError(f"profile {name!r}: expected a list of strings")
        profiles[name] = [os.path.expandvars(arg) for arg in args]
    return ProfileTable(profiles)


def load_config_file(path: str | os.PathLike[str]) -> ProfileTable:
    """Read one config file.

    Raises FileNotFoundError when the file is absent, OSError for other read
    failures and ConfigError for malformed content.
    """
    raw = Path(path).read_bytes()
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    try:
        return parse_config(data)
    except ConfigError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def _apply_optional(table: ProfileTable, path: Any, label: str) -> ProfileTable:
    if path is None:
        return table
    try:
        layer = load_config_file(path)
    except FileNotFoundError:
        _LOGGER.debug("config_missing source=%s path=%s", label.lower(), path)
        return table
    except (OSError, ConfigError) as exc:
        _LOGGER.warning("%s configuration not applied: %s", label, exc)
        return table
    _LOGGER.debug("config_applied source=%s path=%s profiles=%s", label.lower(), path, sorted(layer))
    return table.overlay(layer)


def load_profile_table(defaults: PlatformDefaults) -> ProfileTable:
    """Platform defaults <- system config <- user config, then legacy aliases."""
    table = ProfileTable(defaults.profiles)
    table = _apply_optional(table, defaults.system_config_path, "System")
    table = _apply_optional(table, defaults.user_config_path, "User")
    return table.with_legacy_aliases()


__all__ = [
    "LEGACY_ALIASES",
    "ConfigError",
    "ProfileTable",
    "load_config_file",
    "load_profile_table",
    "parse_config",
]
