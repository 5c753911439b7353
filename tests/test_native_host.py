from __future__ import annotations

import io
import json
import logging
import struct
from collections.abc import Sequence

import pytest

from native_hosts.detangle import native_host
from native_hosts.detangle.config import ProfileTable
from native_hosts.detangle.handler import MessageHandler
from native_hosts.detangle.native_messaging import read_native_message


class _RecordingLauncher:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def launch(self, argv: Sequence[str]) -> None:
        self.calls.append(list(argv))


def _frame(payload: object) -> bytes:
    raw = json.dumps(payload).encode("utf-8")
    return struct.pack("=I", len(raw)) + raw


def _responses(data: bytes) -> list[dict]:
    stream = io.BytesIO(data)
    out = []
    while stream.tell() < len(data):
        out.append(read_native_message(stream))
    return out


def _handler() -> tuple[MessageHandler, _RecordingLauncher]:
    launcher = _RecordingLauncher()
    return MessageHandler("chrome-extension://abc/", ProfileTable({"REGULAR": ["/bin/browser"]}), launcher), launcher


def test_serve_answers_each_message_then_exits_on_eof() -> None:
    handler, launcher = _handler()
    reader = io.BytesIO(
        _frame({"command": "noop"})
        + _frame({"command": "launch", "profile": "REGULAR", "url": "https://example.com"})
        + _frame({"command": "launch", "profile": "unknown"})
        + _frame({"command": "shell"})
    )
    writer = io.BytesIO()

    assert native_host.serve(handler, reader, writer) == 1
    assert _responses(writer.getvalue()) == [
        {"command": "noop", "status": "success"},
        {"command": "launch", "status": "success"},
        {"command": "launch", "error": "invalid browser profile: unknown"},
        {"command": "shell", "error": "invalid command"},
    ]
    assert launcher.calls == [["/bin/browser", "https://example.com"]]


def test_serve_stops_on_corrupt_frame(caplog) -> None:
    handler, launcher = _handler()
    reader = io.BytesIO(
        struct.pack("=I", 1 << 31) + _frame({"command": "launch", "profile": "REGULAR"})
    )
    writer = io.BytesIO()

    with caplog.at_level(logging.CRITICAL, logger="detangle.native_host"):
        assert native_host.serve(handler, reader, writer) == 1
    assert writer.getvalue() == b""
    assert launcher.calls == []
    assert any("Unable to read native message" in r.getMessage() for r in caplog.records)


def test_serve_treats_wrong_field_types_as_fatal() -> None:
    handler, launcher = _handler()
    reader = io.BytesIO(_frame({"command": "launch", "profile": "REGULAR", "incognito": "yes"}))
    writer = io.BytesIO()

    assert native_host.serve(handler, reader, writer) == 1
    assert writer.getvalue() == b""
    assert launcher.calls == []


def test_serve_drops_oversized_response_and_continues() -> None:
    handler, _launcher = _handler()
    huge_profile = "p" * (1 << 20)
    reader = io.BytesIO(_frame({"command": "launch", "profile": huge_profile}) + _frame({"command": "noop"}))
    writer = io.BytesIO()

    assert native_host.serve(handler, reader, writer) == 1
    assert _responses(writer.getvalue()) == [{"command": "noop", "status": "success"}]


def test_main_without_extension_url_is_fatal(monkeypatch) -> None:
    monkeypatch.setattr(native_host, "configure_logging", lambda platform=None: None)
    with pytest.raises(SystemExit) as excinfo:
        native_host.main(["/usr/bin/detangle-native-host"])
    assert excinfo.value.code == 1


def test_configure_logging_discards_on_windows(monkeypatch) -> None:
    calls: list[dict] = []
    monkeypatch.delenv("DETANGLE_NATIVE_HOST_LOG", raising=False)
    monkeypatch.delenv("DETANGLE_NATIVE_HOST_DEBUG", raising=False)
    monkeypatch.setattr(native_host.logging, "basicConfig", lambda **kw: calls.append(kw))

    native_host.configure_logging("win32")
    native_host.configure_logging("linux")

    assert isinstance(calls[0]["handlers"][0], logging.NullHandler)
    assert isinstance(calls[1]["handlers"][0], logging.StreamHandler)
    assert calls[1]["level"] == logging.INFO


def test_configure_logging_to_file_with_debug(monkeypatch, tmp_path) -> None:
    calls: list[dict] = []
    log_path = tmp_path / "host.log"
    monkeypatch.setenv("DETANGLE_NATIVE_HOST_LOG", str(log_path))
    monkeypatch.setenv("DETANGLE_NATIVE_HOST_DEBUG", "1")
    monkeypatch.setattr(native_host.logging, "basicConfig", lambda **kw: calls.append(kw))

    native_host.configure_logging("win32")

    handler = calls[0]["handlers"][0]
    try:
        assert isinstance(handler, logging.FileHandler)
        assert handler.baseFilename == str(log_path)
        assert calls[0]["level"] == logging.DEBUG
    finally:
        handler.close()


def test_serve_replaces_lone_surrogates_in_replies() -> None:
    handler, launcher = _handler()
    reader = io.BytesIO(_frame({"command": "launch", "profile": "\ud800"}) + _frame({"command": "noop"}))
    writer = io.BytesIO()

    assert native_host.serve(handler, reader, writer) == 1
    assert _responses(writer.getvalue()) == [
        {"command": "launch", "error": "invalid browser profile: \ufffd"},
        {"command": "noop", "status": "success"},
    ]
    assert launcher.calls == []
