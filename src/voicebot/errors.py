"""Exception types raised by the voicebot services."""

from __future__ import annotations


class VoicebotError(Exception):
    """Base class for all voicebot errors."""


class AudioDeviceError(VoicebotError):
    """A player or recorder process could not be started or failed."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class RecordingCancelledError(VoicebotError):
    """A pending recording was aborted by ``stop_recording``."""


class AudioMergeError(VoicebotError):
    """Concatenating speech artifacts into one file failed."""


__all__ = [
    "AudioDeviceError",
    "AudioMergeError",
    "RecordingCancelledError",
    "VoicebotError",
]
