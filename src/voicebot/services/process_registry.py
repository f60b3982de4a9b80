"""Bookkeeping for external player and recorder processes."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Iterator, List

logger = logging.getLogger(__name__)


def close_stdin(process: asyncio.subprocess.Process) -> None:
    """Signal EOF on a process's input pipe, ignoring pipes already gone."""
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.close()
    except (OSError, RuntimeError) as e:
        logger.debug(f"Ignoring error closing stdin of {process.pid}: {e}")


def send_signal(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Deliver a signal if the process is still running. Returns True if sent."""
    if process.returncode is not None:
        return False
    try:
        process.send_signal(sig)
        return True
    except ProcessLookupError:
        return False
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to signal process {process.pid}: {e}")
        return False


class ProcessRegistry:
    """
    Tracks every process spawned for one role (players or recorders).

    Whatever happens to the code that spawned a process, a call to
    ``signal_all`` reaches it, so nothing is left holding the sound card.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._processes: List[asyncio.subprocess.Process] = []

    def add(self, process: asyncio.subprocess.Process) -> None:
        self._processes.append(process)

    def discard(self, process: asyncio.subprocess.Process) -> None:
        if process in self._processes:
            self._processes.remove(process)

    def release(self, process: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
        """Stop tracking a process, terminating it first if it is still alive."""
        close_stdin(process)
        send_signal(process, sig)
        self.discard(process)

    def signal_all(self, sig: int = signal.SIGTERM) -> int:
        """Close stdin of and signal every tracked process, then forget them."""
        signalled = 0
        for process in list(self._processes):
            logger.info(f"Killing {self.label} process {process.pid}")
            close_stdin(process)
            if send_signal(process, sig):
                signalled += 1
        self._processes.clear()
        return signalled

    def __len__(self) -> int:
        return len(self._processes)

    def __iter__(self) -> Iterator[asyncio.subprocess.Process]:
        return iter(list(self._processes))

    def __contains__(self, process: object) -> bool:
        return process in self._processes


__all__ = ["ProcessRegistry", "close_stdin", "send_signal"]
