"""
TTS (Text-to-Speech) Streaming Package.

This package turns streamed LLM text into audio on the device's speaker:

- text_segmenter: Splits streaming text into sentences plus a remainder
- text_purifier: Cleans text before it reaches a synthesizer
- artifact: Synthesized audio values, duration probing, and file merging
- playback_state: Idle/Playing state machine and the playback-end broadcast
- stream_responder: Orchestrates dispatch, ordering, and playback

Architecture Overview:

    ┌─────────────┐     ┌────────────────┐     ┌────────────────┐
    │ LLM Stream  │────▶│ split_sentences│────▶│ synthesis tasks│
    └─────────────┘     └────────────────┘     └────────────────┘
                                                       │ (sentence order)
                                                       ▼
    ┌─────────────────────┐     ┌─────────────┐  ┌──────────────┐
    │wait_for_playback_end│◀────│ AudioDevice │◀─│ merge / pad  │
    └─────────────────────┘     └─────────────┘  └──────────────┘
"""

from .artifact import SpeechArtifact, merge_audio_files, probe_duration_ms, wav_duration_ms
from .playback_state import PlaybackEndSignal, PlaybackSession, PlaybackState
from .stream_responder import StreamResponder
from .text_purifier import purify_text_for_tts
from .text_segmenter import split_sentences

__all__ = [
    "PlaybackEndSignal",
    "PlaybackSession",
    "PlaybackState",
    "SpeechArtifact",
    "StreamResponder",
    "merge_audio_files",
    "probe_duration_ms",
    "purify_text_for_tts",
    "split_sentences",
    "wav_duration_ms",
]
