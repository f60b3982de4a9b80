"""
Exclusive access to the sound card through external processes.

Playback and capture are delegated to command line tools (``play``/``mpg123``/
``aplay`` for output, ``sox`` for input). The sound card cannot be shared, so
every operation holds one ``asyncio.Lock`` for as long as its process runs,
plus a short settle delay after a recorder exits. A playback request that
arrives while another is active queues behind it on the lock.

Every spawned process is tracked in a ``ProcessRegistry``. ``stop_playing``,
``stop_recording`` and ``close`` go through the registries, so a process is
never left holding the device after an error, a timeout or a stop.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Coroutine, List, Optional, Set

from voicebot.errors import AudioDeviceError, RecordingCancelledError
from voicebot.services.process_registry import ProcessRegistry, close_stdin, send_signal
from voicebot.services.tts.artifact import PCM_CHANNELS, PCM_SAMPLE_RATE, PCM_SAMPLE_WIDTH

if TYPE_CHECKING:
    from voicebot.config import Settings
    from voicebot.services.tts.artifact import SpeechArtifact

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]

# sox silence effect: start after 0.1s above 60%, stop after 1s below 60%
SILENCE_EFFECT = ["silence", "1", "0.1", "60%", "1", "1.0", "60%"]

# How long a recorder gets to exit after SIGINT before it is killed
_RECORDER_EXIT_TIMEOUT = 2.0


class DeviceState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    RECORDING = "recording"


@dataclass
class _Recording:
    output_path: Path
    result: asyncio.Future
    process: Optional[asyncio.subprocess.Process] = None
    stop_requested: bool = False


@dataclass
class RecordingHandle:
    """An open-ended capture: await ``completion``, call ``stop`` to end it."""

    completion: asyncio.Future
    stop: Callable[[], None] = field(repr=False)


class AudioDevice:
    """Wrapper around one physical sound card shared by playback and capture."""

    def __init__(
        self,
        *,
        sound_card_index: str = "1",
        wav_player_command: str = "play",
        mp3_decoder_command: str = "mpg123",
        mp3_decoder_scale: int = 2,
        wav_decoder_command: str = "aplay",
        persistent_decoder: bool = False,
        player_grace_ms: int = 2000,
        record_command: str = "sox",
        record_file_format: str = "wav",
        record_sample_rate: int = 16000,
        record_settle_seconds: float = 0.5,
        record_stop_grace_seconds: float = 0.2,
        spawner: Optional[Spawner] = None,
    ) -> None:
        self.sound_card_index = sound_card_index
        self.wav_player_command = wav_player_command
        self.mp3_decoder_command = mp3_decoder_command
        self.mp3_decoder_scale = mp3_decoder_scale
        self.wav_decoder_command = wav_decoder_command
        self.persistent_decoder = persistent_decoder
        self.player_grace_ms = player_grace_ms
        self.record_command = record_command
        self.record_file_format = record_file_format
        self.record_sample_rate = record_sample_rate
        self.record_settle_seconds = record_settle_seconds
        self.record_stop_grace_seconds = record_stop_grace_seconds
        self._spawn: Spawner = spawner or asyncio.create_subprocess_exec

        self._lock = asyncio.Lock()
        self._state = DeviceState.IDLE
        self._players = ProcessRegistry("player")
        self._recorders = ProcessRegistry("recorder")
        self._recordings: List[_Recording] = []
        self._decoder: Optional[asyncio.subprocess.Process] = None
        self._decoder_format: Optional[str] = None
        self._play_generation = 0
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides) -> "AudioDevice":
        options = dict(
            sound_card_index=settings.sound_card_index,
            wav_player_command=settings.wav_player_command,
            mp3_decoder_command=settings.mp3_decoder_command,
            mp3_decoder_scale=settings.mp3_decoder_scale,
            wav_decoder_command=settings.wav_decoder_command,
            persistent_decoder=settings.persistent_decoder,
            player_grace_ms=settings.player_grace_ms,
            record_command=settings.record_command,
            record_file_format=settings.record_file_format,
            record_sample_rate=settings.record_sample_rate,
            record_settle_seconds=settings.record_settle_seconds,
            record_stop_grace_seconds=settings.record_stop_grace_seconds,
        )
        options.update(overrides)
        return cls(**options)

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state is DeviceState.PLAYING

    @property
    def is_recording(self) -> bool:
        return self._state is DeviceState.RECORDING

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def play(self, artifact: "SpeechArtifact", timeout_ms: Optional[float] = None) -> None:
        """
        Play one artifact, waiting for the device if it is busy.

        File artifacts get their own player process. Byte artifacts are
        piped into a decoder. The call returns when the player exits, when
        the fallback budget (``timeout_ms``, default ``duration_ms``) plus
        ``player_grace_ms`` has elapsed, or when ``stop_playing`` is called.
        A persistent decoder never exits, so its playback ends after the
        real ``duration_ms`` instead.

        Raises:
            AudioDeviceError: The player could not start or exited non-zero.
        """
        budget_ms = artifact.duration_ms if timeout_ms is None else timeout_ms
        if not artifact.has_audio or budget_ms <= 0:
            logger.info("No audio data to play, skipping playback")
            return

        generation = self._play_generation
        async with self._lock:
            if generation != self._play_generation:
                logger.info("Playback request dropped, device was stopped while it waited")
                return

            self._state = DeviceState.PLAYING
            logger.info(f"Playback duration: {artifact.duration_ms:.0f}ms")
            try:
                if artifact.is_file:
                    await self._play_file(artifact, generation, budget_ms)
                else:
                    await self._play_bytes(artifact, generation, budget_ms)
            finally:
                self._state = DeviceState.IDLE

    def stop_playing(self) -> None:
        """Terminate every player process, including a persistent decoder."""
        logger.info("Stopping all audio playback and releasing the device")
        self._play_generation += 1
        count = self._players.signal_all(signal.SIGTERM)
        self._decoder = None
        self._decoder_format = None
        logger.info(f"All player processes killed ({count} signalled)")

    async def _play_file(self, artifact: "SpeechArtifact", generation: int, budget_ms: float) -> None:
        argv = [self.wav_player_command, str(artifact.file_path)]
        process = await self._start(argv, self._players, "player")
        timeout = self._fallback_seconds(budget_ms)

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Playback timeout ({timeout:.1f}s) reached, forcing cleanup")
            return
        finally:
            self._players.release(process)

        self._check_player_exit(returncode, generation)
        logger.info("Audio playback completed")

    async def _play_bytes(self, artifact: "SpeechArtifact", generation: int, budget_ms: float) -> None:
        payload = artifact.audio_bytes()
        audio_format = artifact.format or "mp3"
        persistent = self.persistent_decoder

        if persistent:
            process = await self._ensure_decoder(audio_format)
        else:
            process = await self._start(
                self._decoder_argv(audio_format), self._players, "decoder"
            )

        keep = False
        try:
            await self._feed(process, payload, close=not persistent)
            if persistent and artifact.duration_ms > 0:
                timeout = artifact.duration_ms / 1000
            else:
                timeout = self._fallback_seconds(budget_ms)
            try:
                returncode = await asyncio.wait_for(process.wait(), timeout)
            except asyncio.TimeoutError:
                if persistent:
                    # The decoder never exits on its own; the timer marks the end
                    keep = True
                    logger.debug("Persistent decoder drained by duration")
                else:
                    logger.warning(f"Playback timeout ({timeout:.1f}s) reached, forcing cleanup")
                return
        finally:
            if not keep:
                self._players.release(process)
                if process is self._decoder:
                    self._decoder = None
                    self._decoder_format = None

        self._check_player_exit(returncode, generation)
        logger.info("Audio playback completed, player cleaned up")

    async def _ensure_decoder(self, audio_format: str) -> asyncio.subprocess.Process:
        decoder = self._decoder
        if decoder is not None and decoder.returncode is None and self._decoder_format == audio_format:
            return decoder
        if decoder is not None:
            logger.info("Cleaning up existing decoder before new playback")
            self._players.release(decoder)
        self._decoder = await self._start(
            self._decoder_argv(audio_format), self._players, "decoder"
        )
        self._decoder_format = audio_format
        return self._decoder

    async def _feed(self, process: asyncio.subprocess.Process, payload: bytes, *, close: bool) -> None:
        stdin = process.stdin
        if stdin is None:
            raise AudioDeviceError("Decoder has no input pipe")
        try:
            stdin.write(payload)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error(f"Decoder input closed early: {e}")
        if close:
            close_stdin(process)

    def _decoder_argv(self, audio_format: str) -> List[str]:
        device = f"hw:{self.sound_card_index},0"
        if audio_format == "wav":
            return [self.wav_decoder_command, "-q", "-D", device, "-"]
        if audio_format == "pcm":
            return [
                self.wav_decoder_command,
                "-q",
                "-D",
                device,
                "-t",
                "raw",
                "-f",
                f"S{PCM_SAMPLE_WIDTH * 8}_LE",
                "-r",
                str(PCM_SAMPLE_RATE),
                "-c",
                str(PCM_CHANNELS),
                "-",
            ]
        return [
            self.mp3_decoder_command,
            "-",
            "--scale",
            str(self.mp3_decoder_scale),
            "-o",
            "alsa",
            "-a",
            device,
        ]

    def _fallback_seconds(self, budget_ms: float) -> float:
        return (budget_ms + self.player_grace_ms) / 1000

    def _check_player_exit(self, returncode: int, generation: int) -> None:
        if returncode == 0:
            return
        if generation != self._play_generation:
            logger.info(f"Player exited with code {returncode} after stop")
            return
        raise AudioDeviceError(
            f"Audio playback error: exit code {returncode}", returncode=returncode
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(self, output_path: Path | str, max_duration_seconds: float = 10.0) -> Path:
        """
        Capture until silence follows speech or ``max_duration_seconds`` passes.

        Resolves with ``output_path`` once the recorder has exited and the
        settle delay has elapsed.

        Raises:
            RecordingCancelledError: ``stop_recording`` aborted the capture.
            AudioDeviceError: The recorder could not be started.
        """
        output_path = Path(output_path)
        logger.info(f"Starting recording, maximum {max_duration_seconds} seconds...")
        recording = self._new_recording(output_path)
        argv = self._record_argv(output_path, silence=True)
        self._run_in_background(self._run_recording(recording, argv, max_duration_seconds))
        return await recording.result

    def record_manually(self, output_path: Path | str) -> RecordingHandle:
        """Start an open-ended capture that ends when ``handle.stop()`` is called."""
        output_path = Path(output_path)
        logger.info("Starting manual recording")
        recording = self._new_recording(output_path)
        argv = self._record_argv(output_path, silence=False)
        self._run_in_background(self._run_recording(recording, argv, None))
        return RecordingHandle(
            completion=recording.result,
            stop=lambda: self._request_stop(recording),
        )

    def stop_recording(self) -> None:
        """Kill every recorder and reject the pending completions. Idempotent."""
        pending = [r for r in self._recordings if not r.result.done()]
        if not len(self._recorders) and not pending:
            logger.info("No recording process running")
            return

        self._recorders.signal_all(signal.SIGINT)
        for recording in pending:
            recording.stop_requested = True
            recording.result.set_exception(RecordingCancelledError("Recording stopped"))
        logger.info("Recording stopped")

    def _new_recording(self, output_path: Path) -> _Recording:
        result = asyncio.get_running_loop().create_future()
        recording = _Recording(output_path=output_path, result=result)
        result.add_done_callback(lambda fut: self._on_recording_settled(recording, fut))
        self._recordings.append(recording)
        return recording

    def _on_recording_settled(self, recording: _Recording, fut: asyncio.Future) -> None:
        if fut.cancelled():
            # Caller gave up waiting; do not leave the recorder running
            recording.stop_requested = True
            if recording.process is not None:
                send_signal(recording.process, signal.SIGINT)
        else:
            # Mark the exception retrieved so abandoned handles stay quiet
            fut.exception()

    def _request_stop(self, recording: _Recording) -> None:
        recording.stop_requested = True
        process = recording.process
        if process is not None and process.returncode is None:
            self._run_in_background(self._stop_recorder(process))

    async def _run_recording(
        self,
        recording: _Recording,
        argv: List[str],
        max_duration: Optional[float],
    ) -> None:
        try:
            async with self._lock:
                if recording.result.done():
                    return
                if recording.stop_requested:
                    recording.result.set_exception(
                        RecordingCancelledError("Recording stopped before it started")
                    )
                    return

                self._state = DeviceState.RECORDING
                try:
                    await self._capture(recording, argv, max_duration)
                    # The card needs a moment after the recorder exits before reuse
                    await asyncio.sleep(self.record_settle_seconds)
                finally:
                    self._state = DeviceState.IDLE

                if not recording.result.done():
                    recording.result.set_result(recording.output_path)
        except asyncio.CancelledError:
            if not recording.result.done():
                recording.result.cancel()
            raise
        finally:
            if recording in self._recordings:
                self._recordings.remove(recording)

    async def _capture(
        self,
        recording: _Recording,
        argv: List[str],
        max_duration: Optional[float],
    ) -> None:
        try:
            process = await self._start(argv, self._recorders, "recorder")
        except AudioDeviceError as e:
            self._recorders.signal_all(signal.SIGINT)
            if not recording.result.done():
                recording.result.set_exception(e)
            return

        recording.process = process
        try:
            if recording.stop_requested:
                await self._stop_recorder(process)
            elif max_duration is None:
                await process.wait()
            else:
                try:
                    await asyncio.wait_for(process.wait(), max_duration)
                except asyncio.TimeoutError:
                    logger.info(f"Maximum recording duration ({max_duration}s) reached")
                    await self._stop_recorder(process)
        finally:
            self._recorders.release(process, signal.SIGINT)

        logger.info(f"Recording process exited with code {process.returncode}")

    async def _stop_recorder(self, process: asyncio.subprocess.Process) -> None:
        # EOF first so sox can finish writing, then interrupt it
        close_stdin(process)
        await asyncio.sleep(self.record_stop_grace_seconds)
        send_signal(process, signal.SIGINT)
        try:
            await asyncio.wait_for(process.wait(), _RECORDER_EXIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Recorder {process.pid} ignored SIGINT, killing it")
            send_signal(process, signal.SIGKILL)
            await process.wait()

    def _record_argv(self, output_path: Path, *, silence: bool) -> List[str]:
        argv = [
            self.record_command,
            "-t",
            "alsa",
            f"plughw:{self.sound_card_index},0",
            "-t",
            self.record_file_format,
            "-c",
            "1",
            "-r",
            str(self.record_sample_rate),
            "-b",
            "16",
            "-e",
            "signed-integer",
            str(output_path),
        ]
        if silence:
            argv.extend(SILENCE_EFFECT)
        return argv

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _start(
        self,
        argv: List[str],
        registry: ProcessRegistry,
        label: str,
    ) -> asyncio.subprocess.Process:
        try:
            process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AudioDeviceError(f"Could not start {label} '{argv[0]}': {e}") from e

        registry.add(process)
        logger.debug(f"Started {label} process {process.pid}: {' '.join(argv)}")
        if process.stderr is not None:
            self._run_in_background(self._log_stderr(process, label))
        return process

    async def _log_stderr(self, process: asyncio.subprocess.Process, label: str) -> None:
        stream = process.stderr
        if stream is None:
            return
        async for line in stream:
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.debug(f"[{label} {process.pid}] {text}")

    def _run_in_background(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def close(self) -> None:
        """Signal every tracked process. Safe to call from an exit handler."""
        self._play_generation += 1
        self._players.signal_all(signal.SIGTERM)
        self._recorders.signal_all(signal.SIGINT)
        self._decoder = None
        self._decoder_format = None


__all__ = ["AudioDevice", "DeviceState", "RecordingHandle", "SILENCE_EFFECT", "Spawner"]
