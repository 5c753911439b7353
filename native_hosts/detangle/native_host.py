"""Chrome Native Messaging host for the Detangle extension.

Chrome starts this process when the extension calls `sendNativeMessage()`,
passing the extension origin in argv. Messages are answered strictly one at a
time; the host exits when the message channel breaks.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Sequence
from typing import BinaryIO

from .handler import MessageHandler, MessageHandlerError, NativeMessage
from .native_messaging import NativeMessagingError, read_native_message, write_native_message

_LOGGER = logging.getLogger("detangle.native_host")
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(platform: str | None = None) -> None:
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    platform = platform or sys.platform
    level = logging.DEBUG if os.environ.get("DETANGLE_NATIVE_HOST_DEBUG") == "1" else logging.INFO
    log_path = (os.environ.get("DETANGLE_NATIVE_HOST_LOG") or "").strip()
    if log_path:
        handler: logging.Handler = logging.FileHandler(os.path.expanduser(log_path), encoding="utf-8")
    elif platform == "win32":
        # Chrome hands Windows hosts a stderr that shares the stdout pipe.
        handler = logging.NullHandler()
    else:
        handler = logging.StreamHandler(sys.stderr)
    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=[handler], force=True)


def serve(handler: MessageHandler, reader: BinaryIO, writer: BinaryIO) -> int:
    """Answer messages until the channel breaks; returns the exit status."""
    while True:
        try:
            message = NativeMessage.from_payload(read_native_message(reader))
        except NativeMessagingError as exc:
            _LOGGER.critical("Unable to read native message: %s", exc)
            return 1

        response = handler.process(message)
        try:
            write_native_message(writer, response.to_payload())
        except NativeMessagingError as exc:
            _LOGGER.error("response_dropped command=%s error=%s", message.command, exc)
        except OSError as exc:
            _LOGGER.critical("Unable to write native message: %s", exc)
            return 1


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    try:
        handler = MessageHandler.from_environment(sys.argv if argv is None else argv)
    except MessageHandlerError as exc:
        _LOGGER.critical("%s", exc)
        raise SystemExit(1) from None
    try:
        raise SystemExit(serve(handler, sys.stdin.buffer, sys.stdout.buffer))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
