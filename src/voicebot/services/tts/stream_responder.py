"""
Stream Responder: streaming LLM text to ordered speech playback.

This module turns incrementally arriving LLM text into audio played on the
shared sound card.

Architecture:
    on_partial_text() → split_sentences() → synthesis tasks → ordered artifacts
                                                                  │
                                                                  ▼
                          wait_for_playback_end() ◀── _play_in_order() → AudioDevice.play()

Two dispatch policies are supported:

- ``TtsMode.SINGLE_SHOT``: nothing is synthesized until ``on_turn_end``; the
  whole utterance is purified and sent in one request and played once.
- ``TtsMode.INCREMENTAL``: every sentence is sent for synthesis as soon as it
  is recognized. At turn end the tasks are awaited in sentence order (never
  completion order) and reduced to one artifact: mp3 or pcm bytes are joined
  in memory, anything else is merged into one file. The turn is then played
  in a single device call, so nothing else can take the sound card
  mid-utterance. Audio files are deleted once played unless
  ``delete_played_files`` is off.

Usage:
    responder = StreamResponder(synthesize, device, on_sentences=show)

    for chunk in llm_stream:
        responder.on_partial_text(chunk)
    responder.on_turn_end()
    await responder.wait_for_playback_end()

``on_partial_text`` and ``on_turn_end`` never block; they must be called from
inside a running event loop because they schedule background tasks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Deque, List, Optional, Sequence

from voicebot.config import SynthesisFailurePolicy, TtsMode
from voicebot.errors import AudioDeviceError, AudioMergeError
from voicebot.services.tts.artifact import (
    JOINABLE_FORMATS,
    SpeechArtifact,
    merge_audio_files,
    probe_duration_ms,
)
from voicebot.services.tts.playback_state import PlaybackEndSignal, PlaybackSession, PlaybackState
from voicebot.services.tts.text_purifier import purify_text_for_tts
from voicebot.services.tts.text_segmenter import normalize_partial_text, split_sentences

if TYPE_CHECKING:
    from voicebot.config import Settings
    from voicebot.services.audio_device import AudioDevice

logger = logging.getLogger(__name__)

Synthesizer = Callable[[str], Awaitable[SpeechArtifact]]
SentencesCallback = Callable[[List[str]], None]
TextCallback = Callable[[str], None]
Merger = Callable[[Sequence[Path], Path], Awaitable[Path]]

DEFAULT_SAFETY_MARGIN_MS = {
    TtsMode.SINGLE_SHOT: 15000,
    TtsMode.INCREMENTAL: 5000,
}


@dataclass
class _Turn:
    """Sentences and synthesis tasks of one request/response cycle."""

    turn_id: int
    sentences: List[str] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        for task in self.tasks:
            if not task.done():
                task.cancel()


class StreamResponder:
    """
    Buffers streaming text, dispatches synthesis, and plays the results in order.

    Attributes:
        mode: Dispatch policy (single-shot or incremental)
        safety_margin_ms: Added to the artifact duration to form the device.s
            fallback budget, so the fallback timer never fires before the
            audio finishes. The artifact itself keeps its real duration.
        failure_policy: Whether a failed synthesis is skipped or retried once
        delete_played_files: Remove synthesized, part and merged files after
            the turn has played
    """

    def __init__(
        self,
        synthesize: Synthesizer,
        device: "AudioDevice",
        *,
        mode: TtsMode = TtsMode.SINGLE_SHOT,
        on_sentences: Optional[SentencesCallback] = None,
        on_text: Optional[TextCallback] = None,
        purify: Callable[[str], str] = purify_text_for_tts,
        safety_margin_ms: Optional[int] = None,
        failure_policy: SynthesisFailurePolicy = SynthesisFailurePolicy.SKIP,
        merge: Optional[Merger] = None,
        merge_command: str = "sox",
        merge_output_dir: Path = Path("data/tts"),
        delete_played_files: bool = True,
    ) -> None:
        self._synthesize = synthesize
        self._device = device
        self.mode = mode
        self.on_sentences = on_sentences
        self.on_text = on_text
        self._purify = purify
        self.safety_margin_ms = (
            DEFAULT_SAFETY_MARGIN_MS[mode] if safety_margin_ms is None else safety_margin_ms
        )
        self.failure_policy = failure_policy
        self._merge: Merger = merge or partial(merge_audio_files, command=merge_command)
        self._merge_output_dir = merge_output_dir
        self.delete_played_files = delete_played_files

        self._buffer = ""
        self._turn: Optional[_Turn] = None
        self._queue: Deque[_Turn] = deque()
        self._playing_turn: Optional[_Turn] = None
        self._turn_counter = 0
        self._session = PlaybackSession()
        self._end_signal = PlaybackEndSignal()
        self._playback_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        synthesize: Synthesizer,
        device: "AudioDevice",
        **kwargs,
    ) -> "StreamResponder":
        kwargs.setdefault("mode", settings.tts_mode)
        kwargs.setdefault("safety_margin_ms", settings.safety_margin_ms)
        kwargs.setdefault("failure_policy", settings.synthesis_failure_policy)
        kwargs.setdefault("merge_command", settings.merge_command)
        kwargs.setdefault("merge_output_dir", settings.tts_output_dir)
        kwargs.setdefault("delete_played_files", not settings.keep_tts_files)
        return cls(synthesize, device, **kwargs)

    @property
    def state(self) -> PlaybackState:
        return self._session.state

    @property
    def pending_turns(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    def on_partial_text(self, text: str) -> None:
        """Append streamed text; report and (incrementally) dispatch new sentences."""
        if not text:
            return

        turn = self._turn or self._start_turn()
        self._buffer = normalize_partial_text(self._buffer + text)
        sentences, self._buffer = split_sentences(self._buffer)
        if sentences:
            self._accept_sentences(turn, sentences)

    def on_turn_end(self) -> None:
        """Flush the remainder, report the full text, and start playback."""
        turn = self._turn
        self._turn = None
        remainder = self._buffer.strip()
        self._buffer = ""

        if turn is None and not remainder:
            logger.info("Turn ended with no text")
            self._notify(self.on_text, "")
            self._release_if_idle()
            return

        if turn is None:
            turn = self._new_turn()
        if remainder:
            self._accept_sentences(turn, [remainder])

        full_text = " ".join(turn.sentences)
        self._notify(self.on_text, full_text)

        if self.mode is TtsMode.SINGLE_SHOT and full_text.strip():
            self._dispatch(turn, full_text)

        if not turn.tasks:
            logger.info("No text to synthesize for this turn")
            self._release_if_idle()
            return

        logger.info(f"Turn {turn.turn_id} ended with {len(turn.tasks)} synthesis task(s)")
        self._queue.append(turn)
        self._schedule_playback()

    def wait_for_playback_end(self) -> asyncio.Future:
        """
        Return a future resolved when the current turn's playback ends.

        Resolves immediately when nothing is buffered, synthesizing, or
        playing. Any number of callers may wait; all are released together.
        Cancelling the returned future only withdraws that waiter.
        """
        if self._turn is None and not self._busy():
            return self._end_signal.resolved()
        return self._end_signal.wait()

    def stop(self) -> None:
        """Cancel the turn, drop queued audio, stop the device, release waiters."""
        logger.info("Stopping stream responder")

        if self._turn is not None:
            self._turn.cancel()
            self._turn = None
        self._buffer = ""

        while self._queue:
            self._queue.popleft().cancel()
        if self._playing_turn is not None:
            self._playing_turn.cancel()
            self._playing_turn = None

        task, self._playback_task = self._playback_task, None
        if task is not None and not task.done():
            task.cancel()

        self._session.reset()
        self._device.stop_playing()
        released = self._end_signal.fire()
        if released:
            logger.info(f"Released {released} playback waiter(s)")

    # ------------------------------------------------------------------
    # Text handling and dispatch
    # ------------------------------------------------------------------

    def _new_turn(self) -> _Turn:
        self._turn_counter += 1
        return _Turn(turn_id=self._turn_counter)

    def _start_turn(self) -> _Turn:
        self._turn = self._new_turn()
        self._buffer = ""
        return self._turn

    def _accept_sentences(self, turn: _Turn, sentences: List[str]) -> None:
        turn.sentences.extend(sentences)
        self._notify(self.on_sentences, list(sentences))
        if self.mode is TtsMode.INCREMENTAL:
            for sentence in sentences:
                self._dispatch(turn, sentence)

    def _dispatch(self, turn: _Turn, text: str) -> None:
        purified = self._purify(text)
        if not purified.strip():
            logger.debug(f"Nothing to speak after purification: {text[:50]!r}")
            return
        logger.info(f"Sending text to TTS ({len(purified)} characters): {purified[:50]}...")
        task = asyncio.get_running_loop().create_task(self._synthesize_safely(purified))
        turn.tasks.append(task)

    async def _synthesize_safely(self, text: str) -> SpeechArtifact:
        """Run the synthesizer; failures become an empty artifact."""
        attempts = 2 if self.failure_policy is SynthesisFailurePolicy.RETRY_ONCE else 1
        for attempt in range(1, attempts + 1):
            try:
                artifact = await self._synthesize(text)
            except Exception as e:
                logger.error(f"TTS synthesis error (attempt {attempt}/{attempts}): {e}")
                continue
            if artifact is not None and artifact.has_audio:
                return artifact
            logger.warning(f"TTS returned no audio (attempt {attempt}/{attempts}): {text[:50]}...")
        return SpeechArtifact.empty()

    def _notify(self, callback: Optional[Callable], value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error(f"Observer callback failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Playback sequencing
    # ------------------------------------------------------------------

    def _busy(self) -> bool:
        return self._session.is_playing or bool(self._queue)

    def _release_if_idle(self) -> None:
        if not self._busy():
            self._end_signal.fire()

    def _schedule_playback(self) -> None:
        token = self._session.begin()
        if token is None:
            logger.info("Audio playback already in progress, turn queued")
            return
        self._playback_task = asyncio.get_running_loop().create_task(self._play_in_order(token))

    async def _play_in_order(self, token: int) -> None:
        """Play queued turns one at a time until the queue is empty."""
        try:
            while self._queue:
                turn = self._queue.popleft()
                self._playing_turn = turn
                try:
                    await self._play_turn(turn)
                except Exception as e:
                    logger.error(f"Audio playback error: {e}", exc_info=True)
        finally:
            if self._session.finish(token):
                self._playing_turn = None
                self._playback_task = None
                logger.info("Play completed")
                self._end_signal.fire()

    async def _play_turn(self, turn: _Turn) -> None:
        """Combine the turn's audio into one artifact and play it in one device call."""
        artifacts = await self._collect_artifacts(turn)
        if turn.cancelled:
            return
        if not artifacts:
            logger.info("No audio generated for this turn")
            return

        played_files: List[Path] = [a.file_path for a in artifacts if a.is_file]
        try:
            artifact = await self._combine(artifacts, played_files)
            if artifact is None or turn.cancelled:
                return

            duration = artifact.duration_ms
            if duration <= 0:
                duration = await asyncio.to_thread(probe_duration_ms, artifact)
                artifact = artifact.with_duration(duration)
            budget = duration + self.safety_margin_ms
            logger.info(
                f"Playing audio (actual: {duration:.0f}ms + "
                f"{self.safety_margin_ms}ms buffer = {budget:.0f}ms)"
            )
            try:
                await self._device.play(artifact, timeout_ms=budget)
            except AudioDeviceError as e:
                logger.error(f"Audio playback error: {e}")
        finally:
            if self.delete_played_files:
                _remove_files(played_files)


    async def _collect_artifacts(self, turn: _Turn) -> List[SpeechArtifact]:
        """Await the turn's tasks in sentence order and keep the audible results."""
        artifacts: List[SpeechArtifact] = []
        for index, task in enumerate(turn.tasks):
            await asyncio.wait([task])
            if turn.cancelled:
                return []
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.error(f"Synthesis task {index} failed: {error}")
                continue
            artifact: SpeechArtifact = task.result()
            if artifact.has_audio:
                artifacts.append(artifact)
            else:
                logger.info(f"Segment {index} produced no audio, skipping")
        return artifacts


    async def _combine(
        self,
        artifacts: List[SpeechArtifact],
        created: List[Path],
    ) -> Optional[SpeechArtifact]:
        """
        Reduce a turn's artifacts to a single playable one.

        Byte payloads in a concatenable format (mp3 frames, raw pcm) are
        joined in memory. Anything else is written to part files if needed and
        merged on disk. Every file written here is appended to ``created``.
        """
        if len(artifacts) == 1:
            return artifacts[0]

        formats = {_format_of(a) for a in artifacts}
        if not any(a.is_file for a in artifacts) and len(formats) == 1:
            audio_format = formats.pop()
            if audio_format in JOINABLE_FORMATS:
                logger.info(f"Joining {len(artifacts)} {audio_format} segments")
                return SpeechArtifact(
                    data=b"".join(a.audio_bytes() for a in artifacts),
                    duration_ms=_total_duration(artifacts),
                    audio_format=audio_format,
                )

        try:
            parts = await asyncio.to_thread(self._write_parts, artifacts, created)
        except OSError as e:
            logger.error(f"Failed to write audio parts, skipping playback: {e}")
            return None
        return await self._merge_files(parts, created)

    def _write_parts(self, artifacts: List[SpeechArtifact], created: List[Path]) -> List[SpeechArtifact]:
        parts: List[SpeechArtifact] = []
        for artifact in artifacts:
            if artifact.is_file:
                parts.append(artifact)
                continue
            audio_format = _format_of(artifact)
            self._merge_output_dir.mkdir(parents=True, exist_ok=True)
            path = self._merge_output_dir / f"part_{uuid.uuid4().hex}.{audio_format}"
            created.append(path)
            path.write_bytes(artifact.audio_bytes())
            parts.append(
                SpeechArtifact(file_path=path, duration_ms=artifact.duration_ms, audio_format=audio_format)
            )
        return parts

    async def _merge_files(
        self,
        artifacts: List[SpeechArtifact],
        created: List[Path],
    ) -> Optional[SpeechArtifact]:
        suffix = _format_of(artifacts[0], default="wav")
        output_path = self._merge_output_dir / f"merged_{uuid.uuid4().hex}.{suffix}"
        created.append(output_path)
        try:
            merged_path = await self._merge([a.file_path for a in artifacts], output_path)
        except (AudioMergeError, OSError) as e:
            logger.error(f"Failed to merge audio files, skipping playback: {e}")
            return None
        created.append(Path(merged_path))

        return SpeechArtifact(
            file_path=Path(merged_path),
            duration_ms=_total_duration(artifacts),
            audio_format=suffix,
        )


def _format_of(artifact: SpeechArtifact, default: str = "mp3") -> str:
    return artifact.format or default


def _total_duration(artifacts: List[SpeechArtifact]) -> float:
    # Trust the reported durations only if every part had one
    if all(a.duration_ms > 0 for a in artifacts):
        return sum(a.duration_ms for a in artifacts)
    return 0.0


def _remove_files(paths: List[Path]) -> None:
    for path in dict.fromkeys(paths):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete audio file {path}: {e}")


__all__ = ["DEFAULT_SAFETY_MARGIN_MS", "StreamResponder", "Synthesizer"]
