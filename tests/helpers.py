"""Test doubles for external processes and the audio device."""

from __future__ import annotations

import asyncio
import signal
import struct
from typing import Callable, List, Optional

from voicebot.services.tts.artifact import SpeechArtifact


class FakeStdin:
    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for asyncio.subprocess.Process; exits only when told to."""

    def __init__(self, argv, pid: int) -> None:
        self.argv = list(argv)
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stdin = FakeStdin()
        self.stderr = None
        self.signals: List[int] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        self.exit(-sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)


class FakeSpawner:
    """Callable replacing asyncio.create_subprocess_exec."""

    def __init__(self) -> None:
        self.processes: List[FakeProcess] = []
        self.error: Optional[OSError] = None
        self.ignore_signals = False

    async def __call__(self, *argv, **kwargs) -> FakeProcess:
        if self.error is not None:
            raise self.error
        process = FakeProcess(argv, pid=4000 + len(self.processes))
        if self.ignore_signals:
            process.send_signal = process.signals.append  # type: ignore[method-assign]
        self.processes.append(process)
        return process


class FakeDevice:
    """Records play calls; ``gate`` keeps a playback 'running' until set."""

    def __init__(self) -> None:
        self.played: List[SpeechArtifact] = []
        self.timeouts: List[Optional[float]] = []
        self.stop_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def play(self, artifact: SpeechArtifact, timeout_ms: Optional[float] = None) -> None:
        self.played.append(artifact)
        self.timeouts.append(timeout_ms)
        if self.error is not None:
            raise self.error
        if self.gate is not None:
            await self.gate.wait()

    def stop_playing(self) -> None:
        self.stop_calls += 1
        if self.gate is not None:
            self.gate.set()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_wav(duration_ms: int, sample_rate: int = 16000, channels: int = 1, bits: int = 16) -> bytes:
    """Build a canonical PCM WAV buffer of silence."""
    bytes_per_frame = channels * bits // 8
    data_size = int(sample_rate * duration_ms / 1000) * bytes_per_frame
    header = b"RIFF" + struct.pack("<I", 36 + data_size) + b"WAVE"
    header += b"fmt " + struct.pack(
        "<IHHIIHH",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * bytes_per_frame,
        bytes_per_frame,
        bits,
    )
    header += b"data" + struct.pack("<I", data_size)
    return header + b"\x00" * data_size
