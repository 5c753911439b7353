"""Command dispatch and validation for messages from the Detangle extension.

Everything here sits on the trust boundary: message fields are extension
controlled and end up on a browser command line.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import SplitResult, unquote_plus, urlencode, urlsplit, urlunsplit

from .config import ProfileTable, load_profile_table
from .launcher import ProcessLauncher
from .native_messaging import NativeMessagingError
from .platforms import platform_defaults

_LOGGER = logging.getLogger("detangle.handler")

EXTENSION_URL_PREFIX = "chrome-extension://"
SAFE_URL_PREFIXES = ("https://", "http://", "ftp://")
OPEN_PAGE = "open.html"
SYNC_OPTIONS_PAGE = "sync_options.html"

_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class MessageHandlerError(Exception):
    pass


class Launcher(Protocol):
    def launch(self, argv: Sequence[str]) -> Any: ...


def _field_values(payload: dict[str, Any], key: str) -> list[Any]:
    # Keys match case-insensitively; later keys win and null leaves the field unset.
    return [value for name, value in payload.items() if name.casefold() == key and value is not None]


def _str_field(payload: dict[str, Any], key: str) -> str:
    result = ""
    for value in _field_values(payload, key):
        if not isinstance(value, str):
            raise NativeMessagingError(f"field {key!r}: expected string, got {type(value).__name__}")
        result = value
    return result


def _bool_field(payload: dict[str, Any], key: str) -> bool:
    result = False
    for value in _field_values(payload, key):
        if not isinstance(value, bool):
            raise NativeMessagingError(f"field {key!r}: expected boolean, got {type(value).__name__}")
        result = value
    return result


@dataclass(frozen=True, slots=True)
class NativeMessage:
    command: str = ""
    profile: str = ""

    # command=launch
    url: str = ""
    incognito: bool = False
    raise_window: bool = False

    # command=sync
    sync_data: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> NativeMessage:
        return cls(
            command=_str_field(payload, "command"),
            profile=_str_field(payload, "profile"),
            url=_str_field(payload, "url"),
            incognito=_bool_field(payload, "incognito"),
            raise_window=_bool_field(payload, "raise"),
            sync_data=_str_field(payload, "sync_data"),
        )


@dataclass(frozen=True, slots=True)
class NativeMessageResponse:
    command: str = ""
    error: str = ""
    status: str = ""

    def to_payload(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.command:
            out["command"] = self.command
        if self.error:
            out["error"] = self.error
        if self.status:
            out["status"] = self.status
        return out


def find_extension_url(argv: Sequence[str]) -> str:
    """Find the URL of the extension that started this host in argv."""
    for arg in argv:
        if arg.startswith(EXTENSION_URL_PREFIX):
            return arg
    raise MessageHandlerError("unable to find chrome-extension:// URL in argv")


def is_safe_url(url: str) -> bool:
    """Whether `url` may be handed to a browser by the launch command."""
    return url.startswith(SAFE_URL_PREFIXES)


def _unescape_query_part(raw: str) -> str:
    bad = _BAD_ESCAPE_RE.search(raw)
    if bad:
        raise MessageHandlerError(f'invalid URL escape "{raw[bad.start() : bad.start() + 3]}"')
    return unquote_plus(raw, errors="surrogateescape")


def parse_query(query: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for part in query.split("&"):
        if ";" in part:
            raise MessageHandlerError("invalid semicolon separator in query")
        if not part:
            continue
        key, _, value = part.partition("=")
        pairs.append((_unescape_query_part(key), _unescape_query_part(value)))
    return pairs


def sanitize_sync_data(sync_data: str) -> str:
    """Check that sync data is a query string and return it canonically encoded."""
    if not sync_data:
        return ""
    if not sync_data.startswith("?"):
        raise MessageHandlerError("sync data should start with a '?' character")
    pairs = parse_query(sync_data[1:])
    # Stable sort: values keep their order within a key.
    pairs.sort(key=lambda kv: kv[0])
    return urlencode(pairs, errors="surrogateescape")


class MessageHandler:
    """Executes browser commands requested by the extension.

    The profile table and extension URL are fixed at construction.
    """

    def __init__(self, extension_url: str, profiles: ProfileTable, launcher: Launcher | None = None) -> None:
        try:
            parsed = urlsplit(extension_url)
        except ValueError as exc:
            raise MessageHandlerError(f"invalid extension URL {extension_url!r}: {exc}") from exc
        self._extension_url: SplitResult = parsed
        self._profiles = profiles
        self._launcher: Launcher = launcher or ProcessLauncher()

    @classmethod
    def from_environment(
        cls,
        argv: Sequence[str] | None = None,
        *,
        platform: str | None = None,
        home: Path | None = None,
        launcher: Launcher | None = None,
    ) -> MessageHandler:
        extension_url = find_extension_url(sys.argv if argv is None else argv)
        profiles = load_profile_table(platform_defaults(platform, home))
        _LOGGER.debug("handler_ready extension=%s profiles=%s", extension_url, sorted(profiles))
        return cls(extension_url, profiles, launcher=launcher)

    @property
    def extension_url(self) -> str:
        return urlunsplit(self._extension_url)

    @property
    def profiles(self) -> ProfileTable:
        return self._profiles

    def process(self, message: NativeMessage) -> NativeMessageResponse:
        """Run one command and build the response for the extension."""
        try:
            if message.command == "launch":
                self._launch(message)
            elif message.command == "sync":
                self._sync(message)
            elif message.command == "noop":
                pass
            else:
                raise MessageHandlerError("invalid command")
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("command_failed command=%s error=%s", message.command, exc)
            return NativeMessageResponse(command=message.command, error=str(exc) or type(exc).__name__)
        return NativeMessageResponse(command=message.command, status="success")

    def _command_line(self, profile: str) -> list[str]:
        command_line = self._profiles.command_line(profile)
        if command_line is None:
            raise MessageHandlerError(f"invalid browser profile: {profile}")
        if not command_line:
            # Never let a URL or flag end up as argv[0].
            raise MessageHandlerError(f"empty command line for browser profile: {profile}")
        return command_line

    def _launch(self, message: NativeMessage) -> None:
        command_line = self._command_line(message.profile)

        if message.url and not is_safe_url(message.url):
            raise MessageHandlerError(f"invalid URL: {message.url}")

        if message.incognito:
            command_line.append("--incognito")

        if message.url:
            if message.incognito:
                # The extension isn't available in incognito, so open.html can't be used.
                command_line.append(message.url)
            else:
                command_line.append(self.encode_launch_url(message.url, message.raise_window))

        self._launcher.launch(command_line)

    def _sync(self, message: NativeMessage) -> None:
        command_line = self._command_line(message.profile)
        sync_data = sanitize_sync_data(message.sync_data)
        command_line.extend(["--new-window", self.encode_sync_url(sync_data)])
        self._launcher.launch(command_line)

    def _extension_page(self, page: str, raw_query: str) -> str:
        u = self._extension_url
        return urlunsplit((u.scheme, u.netloc, "/" + page, raw_query, u.fragment))

    def encode_launch_url(self, launch_url: str, raise_window: bool) -> str:
        """Route `launch_url` through open.html so the extension can raise its window."""
        if not raise_window:
            return launch_url
        return self._extension_page(OPEN_PAGE, urlencode([("raise", "true"), ("url", launch_url)]))

    def encode_sync_url(self, sync_data: str) -> str:
        # TODO: carry sync settings as a JSON field instead of a pre-encoded query string.
        return self._extension_page(SYNC_OPTIONS_PAGE, sync_data)


__all__ = [
    "MessageHandler",
    "MessageHandlerError",
    "NativeMessage",
    "NativeMessageResponse",
    "find_extension_url",
    "is_safe_url",
    "parse_query",
    "sanitize_sync_data",
]
