"""
Speech artifacts and the helpers that measure and merge them.

A ``SpeechArtifact`` is what a synthesizer hands back: audio as raw bytes, a
base64 payload, or a file on disk, plus a duration estimate in milliseconds.
When the synthesizer does not report a duration, ``probe_duration_ms`` derives
one from the WAV header or, for compressed formats, by decoding the stream.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import struct
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Sequence

from pydub import AudioSegment

from voicebot.errors import AudioMergeError

logger = logging.getLogger(__name__)

# Canonical PCM WAV header layout
WAV_HEADER_SIZE = 44
_CHANNELS_OFFSET = 22
_SAMPLE_RATE_OFFSET = 24
_BITS_PER_SAMPLE_OFFSET = 34

COMPRESSED_FORMATS = ("mp3", "opus", "aac", "flac", "ogg")

# Formats whose byte streams can be concatenated as-is
JOINABLE_FORMATS = ("mp3", "pcm")

# Headerless pcm as produced by the Kokoro server: 24 kHz, mono, 16-bit LE
PCM_SAMPLE_RATE = 24000
PCM_CHANNELS = 1
PCM_SAMPLE_WIDTH = 2


@dataclass(frozen=True)
class SpeechArtifact:
    """Synthesized audio plus its duration. Immutable once produced."""

    data: Optional[bytes] = None
    base64_data: Optional[str] = None
    file_path: Optional[Path] = None
    duration_ms: float = 0.0
    audio_format: Optional[str] = None

    @classmethod
    def empty(cls) -> "SpeechArtifact":
        """Artifact standing in for a failed or silent synthesis."""
        return cls()

    @property
    def is_file(self) -> bool:
        return self.file_path is not None

    @property
    def has_audio(self) -> bool:
        return bool(self.file_path or self.data or self.base64_data)

    @property
    def format(self) -> Optional[str]:
        """Container format, falling back to the file suffix."""
        if self.audio_format:
            return self.audio_format.lower()
        if self.file_path is not None and self.file_path.suffix:
            return self.file_path.suffix.lstrip(".").lower()
        return None

    def audio_bytes(self) -> bytes:
        """Return the in-memory payload, decoding base64 when needed."""
        if self.data is not None:
            return self.data
        if self.base64_data is not None:
            return base64.b64decode(self.base64_data)
        return b""

    def with_duration(self, duration_ms: float) -> "SpeechArtifact":
        return replace(self, duration_ms=duration_ms)


def wav_duration_ms(buffer: bytes) -> float:
    """
    Duration of a canonical PCM WAV buffer in milliseconds.

    Buffers shorter than the 44-byte header, or headers with a zero sample
    rate or sample width, yield 0.
    """
    if len(buffer) < WAV_HEADER_SIZE:
        return 0.0

    (channels,) = struct.unpack_from("<H", buffer, _CHANNELS_OFFSET)
    (sample_rate,) = struct.unpack_from("<I", buffer, _SAMPLE_RATE_OFFSET)
    (bits_per_sample,) = struct.unpack_from("<H", buffer, _BITS_PER_SAMPLE_OFFSET)

    bytes_per_frame = (bits_per_sample / 8) * channels
    if sample_rate == 0 or bytes_per_frame == 0:
        return 0.0

    frames = (len(buffer) - WAV_HEADER_SIZE) / bytes_per_frame
    return frames / sample_rate * 1000


def pcm_duration_ms(
    buffer: bytes,
    sample_rate: int = PCM_SAMPLE_RATE,
    channels: int = PCM_CHANNELS,
    sample_width: int = PCM_SAMPLE_WIDTH,
) -> float:
    """Duration of headerless pcm in milliseconds, from its known sample format."""
    bytes_per_frame = channels * sample_width
    if sample_rate <= 0 or bytes_per_frame <= 0:
        return 0.0
    return len(buffer) // bytes_per_frame / sample_rate * 1000


def compressed_duration_ms(buffer: bytes, audio_format: Optional[str] = None) -> float:
    """Duration of a compressed stream, measured by decoding it with pydub."""
    try:
        audio = AudioSegment.from_file(io.BytesIO(buffer), format=audio_format)
        return float(len(audio))  # pydub returns duration in milliseconds
    except Exception as e:
        logger.warning(f"Failed to probe {audio_format or 'audio'} duration: {e}")
        return 0.0


def _looks_like_wav(buffer: bytes) -> bool:
    return buffer[:4] == b"RIFF" and buffer[8:12] == b"WAVE"


def probe_duration_ms(artifact: SpeechArtifact) -> float:
    """
    Derive a duration for an artifact that arrived without one.

    Reads the file when the artifact is file-based. Never raises: unreadable
    or undecodable audio yields 0 and a warning.
    """
    try:
        if artifact.file_path is not None:
            buffer = artifact.file_path.read_bytes()
        else:
            buffer = artifact.audio_bytes()
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read audio for duration probe: {e}")
        return 0.0

    audio_format = artifact.format
    if audio_format == "wav" or (audio_format is None and _looks_like_wav(buffer)):
        duration = wav_duration_ms(buffer)
    elif audio_format == "pcm":
        duration = pcm_duration_ms(buffer)
    else:
        duration = compressed_duration_ms(buffer, audio_format)

    logger.debug(f"Derived audio duration: {duration:.0f}ms ({duration / 1000:.2f}s)")
    return duration


async def merge_audio_files(
    paths: Sequence[Path],
    output_path: Path,
    command: str = "sox",
) -> Path:
    """
    Concatenate audio files into one with an external tool.

    A single input is returned unchanged. Zero inputs, a spawn failure, or a
    non-zero exit raise ``AudioMergeError``.
    """
    if not paths:
        raise AudioMergeError("No audio files to merge")
    if len(paths) == 1:
        return paths[0]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    argv = [command, *(str(p) for p in paths), str(output_path)]
    logger.info(f"Merging {len(paths)} audio files into {output_path}")

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise AudioMergeError(f"Could not start {command}: {e}") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        detail = stderr.decode(errors="replace").strip() if stderr else ""
        raise AudioMergeError(
            f"{command} exited with code {process.returncode}: {detail}"
        )

    return output_path


__all__ = [
    "COMPRESSED_FORMATS",
    "JOINABLE_FORMATS",
    "PCM_CHANNELS",
    "PCM_SAMPLE_RATE",
    "PCM_SAMPLE_WIDTH",
    "SpeechArtifact",
    "WAV_HEADER_SIZE",
    "compressed_duration_ms",
    "merge_audio_files",
    "pcm_duration_ms",
    "probe_duration_ms",
    "wav_duration_ms",
]
