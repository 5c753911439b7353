from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections.abc import Sequence

_LOGGER = logging.getLogger("detangle.launcher")


def _detach_kwargs() -> dict[str, object]:
    if os.name == "nt":
        flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        return {"creationflags": flags}
    return {"start_new_session": True}


def _reap(proc: subprocess.Popen) -> None:
    code = proc.wait()
    _LOGGER.debug("browser_exited pid=%s code=%s", proc.pid, code)


class ProcessLauncher:
    """Start browsers detached from the host, with stdio on the null device."""

    def launch(self, argv: Sequence[str]) -> subprocess.Popen:
        command = [str(arg) for arg in argv]
        if not command:
            raise ValueError("empty command line")
        proc = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            **_detach_kwargs(),  # type: ignore[arg-type]
        )
        # Reap the zombies.
        threading.Thread(target=_reap, args=(proc,), name=f"detangle-reap-{proc.pid}", daemon=True).start()
        _LOGGER.info("browser_launched pid=%s binary=%s", proc.pid, command[0])
        return proc


__all__ = ["ProcessLauncher"]
