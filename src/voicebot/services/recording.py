"""Recording sessions on top of the shared audio device."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from voicebot.errors import VoicebotError

if TYPE_CHECKING:
    from voicebot.config import Settings
    from voicebot.services.audio_device import AudioDevice, RecordingHandle

logger = logging.getLogger(__name__)


class RecordingSession:
    """
    One capture at a time, either bounded by silence/max duration or
    ended by the caller.

    Output files are named ``user_<timestamp>.<format>`` inside
    ``output_dir``. The device lock keeps captures from overlapping with
    playback; this class only keeps its own captures from overlapping.
    """

    def __init__(
        self,
        device: "AudioDevice",
        output_dir: Path = Path("data/recordings"),
        *,
        file_format: str = "wav",
        max_duration_seconds: float = 10.0,
    ) -> None:
        self._device = device
        self.output_dir = Path(output_dir)
        self.file_format = file_format
        self.max_duration_seconds = max_duration_seconds
        self._handle: Optional["RecordingHandle"] = None
        self._bounded: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(cls, settings: "Settings", device: "AudioDevice") -> "RecordingSession":
        return cls(
            device,
            settings.recordings_dir,
            file_format=settings.record_file_format,
            max_duration_seconds=settings.record_max_duration_seconds,
        )

    @property
    def active(self) -> bool:
        if self._handle is not None and not self._handle.completion.done():
            return True
        return self._bounded is not None and not self._bounded.done()

    def next_path(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        return self.output_dir / f"user_{stamp}.{self.file_format}"

    async def capture(self, max_duration_seconds: Optional[float] = None) -> Path:
        """Record one utterance; ends on silence after speech or at the limit."""
        self._ensure_idle()
        limit = max_duration_seconds or self.max_duration_seconds
        self._bounded = asyncio.ensure_future(self._device.record(self.next_path(), limit))
        try:
            return await self._bounded
        finally:
            self._bounded = None

    def start_manual(self) -> "RecordingHandle":
        """Begin an open-ended capture; call ``finish`` to end it."""
        self._ensure_idle()
        self._handle = self._device.record_manually(self.next_path())
        return self._handle

    async def finish(self) -> Path:
        """End the manual capture and wait for the file to be released."""
        handle = self._handle
        if handle is None:
            raise VoicebotError("No manual recording in progress")
        handle.stop()
        try:
            return await handle.completion
        finally:
            self._handle = None

    def cancel(self) -> None:
        """Abort whatever is being captured. Safe to call when idle."""
        self._device.stop_recording()
        self._handle = None

    def _ensure_idle(self) -> None:
        if self.active:
            raise VoicebotError("A recording is already in progress")


__all__ = ["RecordingSession"]
