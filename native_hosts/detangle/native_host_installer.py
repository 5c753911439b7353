from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

HOST_NAME = "com.google.corp.detangle"
_LOGGER = logging.getLogger("detangle.native_host_installer")
_EXT_ID_RE = re.compile(r"^[a-p]{32}$")


@dataclass(frozen=True, slots=True)
class InstallTarget:
    label: str
    path: Path


@dataclass(slots=True)
class InstallReport:
    ok: bool = False
    wrote: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    manifest_path: str | None = None


def _normalize_ext_id(raw: str) -> str | None:
    candidate = str(raw or "").strip().lower()
    if _EXT_ID_RE.match(candidate):
        return candidate
    return None


def _host_dir(platform: str, home: Path) -> Path:
    if platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        base = Path(local) if local else (home / "AppData" / "Local")
        return base / "Detangle" / "NativeMessagingHosts"
    if platform == "darwin":
        return home / "Library" / "Application Support" / "Detangle" / "NativeMessagingHosts"
    return home / ".local" / "share" / "detangle"


# Launcher scripts Chrome runs as the host; {python} is the interpreter path.
_WRAPPERS = {
    "win32": ("detangle-native-host.cmd", "\r\n", ("@echo off", '"{python}" -m native_hosts.detangle.native_host %*')),
    "posix": ("detangle-native-host", "\n", ("#!/bin/sh", 'exec "{python}" -m native_hosts.detangle.native_host "$@"')),
}


def _wrapper_spec(platform: str) -> tuple[str, str, tuple[str, ...]]:
    return _WRAPPERS["win32" if platform == "win32" else "posix"]


def _wrapper_path(platform: str, home: Path) -> Path:
    return _host_dir(platform, home) / _wrapper_spec(platform)[0]


def _write_wrapper(path: Path, *, python_exe: str, platform: str) -> None:
    _name, newline, lines = _wrapper_spec(platform)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(newline.join([*(line.format(python=python_exe) for line in lines), ""]), encoding="utf-8")
    if platform != "win32":
        path.chmod(0o755)


# Per-user browser data dirs, relative to the platform base; the host
# manifest goes into <dir>/NativeMessagingHosts.
_BROWSER_DIRS: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    "darwin": (
        ("chrome", ("Google", "Chrome")),
        ("chrome-beta", ("Google", "Chrome Beta")),
        ("chrome-canary", ("Google", "Chrome Canary")),
        ("chromium", ("Chromium",)),
    ),
    "linux": (
        ("chrome", ("google-chrome",)),
        ("chrome-beta", ("google-chrome-beta",)),
        ("chrome-unstable", ("google-chrome-unstable",)),
        ("chromium", ("chromium",)),
    ),
}

# HKCU keys Chrome and Chromium consult for native messaging hosts on Windows.
_REGISTRY_KEYS = (
    ("chrome", "Software\\Google\\Chrome\\NativeMessagingHosts"),
    ("chromium", "Software\\Chromium\\NativeMessagingHosts"),
)


def _targets_for_platform(platform: str, home: Path) -> list[InstallTarget]:
    if platform == "darwin":
        base, dirs = home / "Library" / "Application Support", _BROWSER_DIRS["darwin"]
    elif platform.startswith("linux"):
        base, dirs = home / ".config", _BROWSER_DIRS["linux"]
    else:
        return []
    return [InstallTarget(label, base.joinpath(*parts, "NativeMessagingHosts")) for label, parts in dirs]


def _write_manifest(path: Path, manifest: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(manifest, fp, indent=2)
        fp.write("\n")
    if os.name != "nt":
        with contextlib.suppress(OSError):
            path.chmod(0o644)


def _register_windows_host(manifest_file: Path, report: InstallReport) -> None:
    try:
        import winreg  # type: ignore[import-not-found]
    except ImportError as exc:
        report.errors.append(f"winreg unavailable: {exc}")
        return

    for label, parent in _REGISTRY_KEYS:
        key_path = f"{parent}\\{HOST_NAME}"
        try:
            with winreg.CreateKey(winreg.HKEY_CURRENT_USER, key_path) as key:
                winreg.SetValueEx(key, "", 0, winreg.REG_SZ, str(manifest_file))
        except OSError as exc:
            report.errors.append(f"{label}: registry write failed: {exc}")
            continue
        report.wrote.append(f"{label}:HKCU\\{key_path}")
    report.ok = bool(report.wrote)


def build_host_manifest(wrapper: Path, extension_ids: Sequence[str]) -> dict[str, object]:
    return {
        "name": HOST_NAME,
        "description": "Detangle browser launcher (native messaging host).",
        "path": str(wrapper),
        "type": "stdio",
        "allowed_origins": [f"chrome-extension://{ext_id}/" for ext_id in extension_ids],
    }


def install_native_host(
    extension_ids: Sequence[str],
    *,
    platform: str | None = None,
    home: Path | None = None,
    python_exe: str | None = None,
) -> InstallReport:
    report = InstallReport()
    platform = platform or sys.platform
    home = home or Path.home()
    python_exe = python_exe or sys.executable

    ids: list[str] = []
    for raw in extension_ids:
        norm = _normalize_ext_id(raw)
        if norm is None:
            report.errors.append(f"invalid extension id: {raw!r}")
        elif norm not in ids:
            ids.append(norm)
    if not ids:
        report.errors.append("no valid extension ids (set DETANGLE_EXTENSION_IDS)")
        return report

    wrapper = _wrapper_path(platform, home)
    try:
        _write_wrapper(wrapper, python_exe=python_exe, platform=platform)
    except OSError as exc:
        report.errors.append(f"failed to create native host wrapper: {exc}")
        return report

    host_manifest = build_host_manifest(wrapper, ids)
    out_name = f"{HOST_NAME}.json"

    if platform == "win32":
        manifest_file = _host_dir(platform, home) / out_name
        try:
            _write_manifest(manifest_file, host_manifest)
        except OSError as exc:
            report.errors.append(f"failed to write native host manifest: {exc}")
            return report
        report.manifest_path = str(manifest_file)
        _register_windows_host(manifest_file, report)
        return report

    targets = _targets_for_platform(platform, home)
    if not targets:
        report.errors.append(f"unsupported platform for installer: {platform}")
        return report

    for target in targets:
        out_path = target.path / out_name
        try:
            _write_manifest(out_path, host_manifest)
        except OSError as exc:
            report.errors.append(f"{target.label}: failed to install: {exc}")
        else:
            report.wrote.append(f"{target.label}:{out_path}")

    report.ok = bool(report.wrote)
    report.manifest_path = str(wrapper)
    return report


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    raw = os.environ.get("DETANGLE_EXTENSION_IDS") or ""
    report = install_native_host([s for s in raw.split(",") if s.strip()])
    if report.ok:
        _LOGGER.info("native_host_install_ok targets=%s", report.wrote)
    else:
        _LOGGER.warning("native_host_install_failed errors=%s", report.errors)
    raise SystemExit(0 if report.ok else 1)


__all__ = ["HOST_NAME", "InstallReport", "InstallTarget", "build_host_manifest", "install_native_host", "main"]


if __name__ == "__main__":
    main()
