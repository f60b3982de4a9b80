"""Playback session state and the "playback ended" broadcast."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import List, Optional


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"


class PlaybackSession:
    """
    Idle/Playing state machine guarding the playback loop.

    ``begin`` hands out a token for the new session; only the holder of the
    current token may ``finish`` it. ``reset`` (used by stop) invalidates the
    token, so a completion that fires late for a stopped session is a no-op.
    """

    def __init__(self) -> None:
        self._state = PlaybackState.IDLE
        self._token = 0

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state is PlaybackState.PLAYING

    def begin(self) -> Optional[int]:
        """Move Idle -> Playing. Returns None if a session is already active."""
        if self._state is PlaybackState.PLAYING:
            return None
        self._token += 1
        self._state = PlaybackState.PLAYING
        return self._token

    def finish(self, token: int) -> bool:
        """Move Playing -> Idle if ``token`` still owns the session."""
        if self._state is PlaybackState.PLAYING and token == self._token:
            self._state = PlaybackState.IDLE
            return True
        return False

    def reset(self) -> None:
        self._token += 1
        self._state = PlaybackState.IDLE


class PlaybackEndSignal:
    """
    Releases every registered waiter at once when playback ends.

    Each waiter is a future resolved at most once; waiters registered after a
    ``fire`` wait for the next one. Cancelling a waiter's future only removes
    that waiter.
    """

    def __init__(self) -> None:
        self._waiters: List[asyncio.Future] = []

    @property
    def pending(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def wait(self) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        waiter.add_done_callback(self._forget)
        self._waiters.append(waiter)
        return waiter

    def resolved(self) -> asyncio.Future:
        """A waiter that has already been released."""
        waiter = asyncio.get_running_loop().create_future()
        waiter.set_result(None)
        return waiter

    def fire(self) -> int:
        """Release all current waiters. Returns how many were released."""
        waiters, self._waiters = self._waiters, []
        released = 0
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
                released += 1
        return released

    def _forget(self, waiter: asyncio.Future) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)


__all__ = ["PlaybackEndSignal", "PlaybackSession", "PlaybackState"]
