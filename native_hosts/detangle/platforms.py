from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath

CONFIG_FILE_NAME = "detangleconfig.json"

_MAC_CHROME = "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
_LINUX_CHROME = "/usr/bin/google-chrome"


@dataclass(frozen=True, slots=True)
class PlatformDefaults:
    profiles: dict[str, tuple[str, ...]] = field(default_factory=dict)
    system_config_path: Path | PureWindowsPath | None = None
    user_config_path: Path | PureWindowsPath | None = None


def _chrome_profiles(binary: str) -> dict[str, tuple[str, ...]]:
    return {
        "REGULAR": (binary, "--profile-directory=DetangleRegular", "--no-default-browser-check"),
        "ISOLATED": (binary, "--profile-directory=DetangleIsolated", "--no-default-browser-check"),
    }


def _windows_defaults(home: Path) -> PlatformDefaults:
    program_files = os.environ.get("ProgramFiles") or "C:\\Program Files"
    program_data = os.environ.get("ProgramData") or "C:\\ProgramData"
    appdata = os.environ.get("APPDATA") or str(PureWindowsPath(home) / "AppData" / "Roaming")
    chrome = PureWindowsPath(program_files) / "Google" / "Chrome" / "Application" / "chrome.exe"
    return PlatformDefaults(
        profiles=_chrome_profiles(str(chrome)),
        system_config_path=PureWindowsPath(program_data) / "Detangle" / CONFIG_FILE_NAME,
        user_config_path=PureWindowsPath(appdata) / "Detangle" / CONFIG_FILE_NAME,
    )


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(name)
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()
    return None


def platform_defaults(platform: str | None = None, home: Path | None = None) -> PlatformDefaults:
    """Default browser profiles and config file locations for `platform`.

    `DETANGLE_SYSTEM_CONFIG` / `DETANGLE_USER_CONFIG` override the config paths.
    """
    platform = platform or sys.platform
    home = home or Path.home()

    if platform == "darwin":
        support = Path("Library") / "Application Support" / "Detangle" / CONFIG_FILE_NAME
        defaults = PlatformDefaults(
            profiles=_chrome_profiles(_MAC_CHROME),
            system_config_path=Path("/") / support,
            user_config_path=home / support,
        )
    elif platform.startswith("linux"):
        defaults = PlatformDefaults(
            profiles=_chrome_profiles(_LINUX_CHROME),
            system_config_path=Path("/etc") / CONFIG_FILE_NAME,
            user_config_path=home / ".config" / CONFIG_FILE_NAME,
        )
    elif platform == "win32":
        defaults = _windows_defaults(home)
    else:
        defaults = PlatformDefaults()

    system_override = _env_path("DETANGLE_SYSTEM_CONFIG")
    user_override = _env_path("DETANGLE_USER_CONFIG")
    if system_override is None and user_override is None:
        return defaults
    return PlatformDefaults(
        profiles=defaults.profiles,
        system_config_path=system_override or defaults.system_config_path,
        user_config_path=user_override or defaults.user_config_path,
    )


__all__ = ["CONFIG_FILE_NAME", "PlatformDefaults", "platform_defaults"]
