"""CLI entrypoint: speak text through the streaming pipeline, or record speech."""

from __future__ import annotations

import argparse
import asyncio
import atexit
import logging
import signal
import sys
from dataclasses import replace
from typing import List, Optional

from dotenv import load_dotenv

from voicebot.config import Settings, TtsMode, get_settings
from voicebot.errors import RecordingCancelledError, VoicebotError
from voicebot.logging_settings import configure_logging, parse_logging_settings
from voicebot.services.audio_device import AudioDevice
from voicebot.services.recording import RecordingSession
from voicebot.services.stt_service import WhisperServerRecognizer
from voicebot.services.tts import StreamResponder
from voicebot.services.tts_service import FastKokoroSynthesizer

logger = logging.getLogger(__name__)


def _chunks(text: str, size: int) -> List[str]:
    """Cut text into fixed-size pieces, the way an LLM stream arrives."""
    return [text[i:i + size] for i in range(0, len(text), size)]


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def _print_sentences(sentences: List[str]) -> None:
    for sentence in sentences:
        print(f"> {sentence}")


def _install_shutdown(device: AudioDevice, on_interrupt) -> None:
    atexit.register(device.close)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_interrupt)
        except (NotImplementedError, RuntimeError):
            pass  # add_signal_handler is unavailable on some platforms


async def cmd_speak(args: argparse.Namespace, settings: Settings) -> int:
    device = AudioDevice.from_settings(settings)
    synthesizer = FastKokoroSynthesizer(settings)
    mode = TtsMode(args.mode) if args.mode else settings.tts_mode

    responder = StreamResponder.from_settings(
        settings,
        synthesizer,
        device,
        mode=mode,
        safety_margin_ms=(
            settings.incremental_safety_margin_ms
            if mode is TtsMode.INCREMENTAL
            else settings.single_shot_safety_margin_ms
        ),
        on_sentences=_print_sentences,
    )
    _install_shutdown(device, responder.stop)

    text = " ".join(args.text) if args.text else sys.stdin.read()
    try:
        for chunk in _chunks(text, args.chunk_size):
            responder.on_partial_text(chunk)
            await asyncio.sleep(0)
        responder.on_turn_end()
        await responder.wait_for_playback_end()
    finally:
        await FastKokoroSynthesizer.close_http_client()
    return 0


async def cmd_record(args: argparse.Namespace, settings: Settings) -> int:
    device = AudioDevice.from_settings(settings)
    session = RecordingSession.from_settings(settings, device)
    _install_shutdown(device, session.cancel)

    try:
        path = await session.capture(args.seconds)
    except RecordingCancelledError:
        logger.info("Recording cancelled")
        return 1
    except VoicebotError as e:
        logger.error(f"Recording failed: {e}")
        return 1

    print(path)
    if args.transcribe:
        text = await WhisperServerRecognizer(settings).recognize(path)
        print(text)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="voicebot",
        description="Streaming speech output and recording for the voice assistant",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    speak_parser = subparsers.add_parser("speak", help="Speak text (argument or stdin)")
    speak_parser.add_argument("text", nargs="*", help="Text to speak")
    speak_parser.add_argument(
        "--mode",
        choices=[m.value for m in TtsMode],
        help="Override TTS_MODE",
    )
    speak_parser.add_argument(
        "--chunk-size",
        type=_positive_int,
        default=12,
        help="Characters per simulated stream chunk",
    )

    record_parser = subparsers.add_parser("record", help="Record one utterance")
    record_parser.add_argument(
        "--seconds",
        type=float,
        default=None,
        help="Maximum duration (default RECORD_MAX_DURATION_SECONDS)",
    )
    record_parser.add_argument(
        "--transcribe",
        action="store_true",
        help="Send the recording to the whisper server",
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    logging_settings = parse_logging_settings(settings.logging_settings_path)
    if settings.logging_settings_path is None:
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
        logging_settings = replace(logging_settings, terminal_level=level, file_level=level)
    configure_logging(logging_settings, settings.log_dir)

    commands = {
        "speak": cmd_speak,
        "record": cmd_record,
    }
    return asyncio.run(commands[args.command](args, settings))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
