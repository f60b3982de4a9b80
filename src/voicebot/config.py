"""Application configuration using environment variables."""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class TtsMode(str, Enum):
    """How the stream responder batches text into synthesis requests."""

    SINGLE_SHOT = "single_shot"
    INCREMENTAL = "incremental"


class SynthesisFailurePolicy(str, Enum):
    """What to do when a single synthesis call fails or returns no audio."""

    SKIP = "skip"
    RETRY_ONCE = "retry_once"


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sound card used for both playback (hw:N,0) and capture (plughw:N,0)
    sound_card_index: str = Field(
        default="1",
        validation_alias=AliasChoices("SOUND_CARD_INDEX", "sound_card_index"),
    )

    # Stream responder
    tts_mode: TtsMode = Field(
        default=TtsMode.SINGLE_SHOT,
        validation_alias=AliasChoices("TTS_MODE", "tts_mode"),
    )
    single_shot_safety_margin_ms: int = Field(
        default=15000,
        ge=0,
        validation_alias=AliasChoices(
            "SINGLE_SHOT_SAFETY_MARGIN_MS", "single_shot_safety_margin_ms"
        ),
    )
    incremental_safety_margin_ms: int = Field(
        default=5000,
        ge=0,
        validation_alias=AliasChoices(
            "INCREMENTAL_SAFETY_MARGIN_MS", "incremental_safety_margin_ms"
        ),
    )
    synthesis_failure_policy: SynthesisFailurePolicy = Field(
        default=SynthesisFailurePolicy.SKIP,
        validation_alias=AliasChoices(
            "SYNTHESIS_FAILURE_POLICY", "synthesis_failure_policy"
        ),
    )

    # Playback
    player_grace_ms: int = Field(
        default=2000,
        ge=0,
        validation_alias=AliasChoices("PLAYER_GRACE_MS", "player_grace_ms"),
    )
    wav_player_command: str = Field(
        default="play",
        validation_alias=AliasChoices("WAV_PLAYER_COMMAND", "wav_player_command"),
    )
    mp3_decoder_command: str = Field(
        default="mpg123",
        validation_alias=AliasChoices("MP3_DECODER_COMMAND", "mp3_decoder_command"),
    )
    mp3_decoder_scale: int = Field(
        default=2,
        ge=0,
        validation_alias=AliasChoices("MP3_DECODER_SCALE", "mp3_decoder_scale"),
    )
    wav_decoder_command: str = Field(
        default="aplay",
        validation_alias=AliasChoices("WAV_DECODER_COMMAND", "wav_decoder_command"),
    )
    persistent_decoder: bool = Field(
        default=False,
        validation_alias=AliasChoices("PERSISTENT_DECODER", "persistent_decoder"),
    )
    merge_command: str = Field(
        default="sox",
        validation_alias=AliasChoices("MERGE_COMMAND", "merge_command"),
    )
    tts_output_dir: Path = Field(
        default_factory=lambda: Path("data/tts"),
        validation_alias=AliasChoices("TTS_OUTPUT_DIR", "tts_output_dir"),
    )
    # Keep synthesized and merged audio files after playback (debugging)
    keep_tts_files: bool = Field(
        default=False,
        validation_alias=AliasChoices("KEEP_TTS_FILES", "keep_tts_files"),
    )

    # Recording
    record_command: str = Field(
        default="sox",
        validation_alias=AliasChoices("RECORD_COMMAND", "record_command"),
    )
    record_file_format: Literal["wav", "mp3"] = Field(
        default="wav",
        validation_alias=AliasChoices("RECORD_FILE_FORMAT", "record_file_format"),
    )
    record_sample_rate: int = Field(
        default=16000,
        ge=8000,
        validation_alias=AliasChoices("RECORD_SAMPLE_RATE", "record_sample_rate"),
    )
    record_max_duration_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices(
            "RECORD_MAX_DURATION_SECONDS", "record_max_duration_seconds"
        ),
    )
    record_settle_seconds: float = Field(
        default=0.5,
        ge=0,
        validation_alias=AliasChoices("RECORD_SETTLE_SECONDS", "record_settle_seconds"),
    )
    record_stop_grace_seconds: float = Field(
        default=0.2,
        ge=0,
        validation_alias=AliasChoices(
            "RECORD_STOP_GRACE_SECONDS", "record_stop_grace_seconds"
        ),
    )
    recordings_dir: Path = Field(
        default_factory=lambda: Path("data/recordings"),
        validation_alias=AliasChoices("RECORDINGS_DIR", "recordings_dir"),
    )

    # FastKokoro speech synthesis server
    fastkokoro_server_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:8880"),
        validation_alias=AliasChoices("FASTKOKORO_SERVER_URL", "fastkokoro_server_url"),
    )
    fastkokoro_model: str = Field(
        default="kokoro",
        validation_alias=AliasChoices("FASTKOKORO_MODEL", "fastkokoro_model"),
    )
    fastkokoro_voice: str = Field(
        default="af_heart",
        validation_alias=AliasChoices("FASTKOKORO_VOICE", "fastkokoro_voice"),
    )
    fastkokoro_response_format: Literal["mp3", "wav", "opus", "aac", "flac", "pcm"] = Field(
        default="mp3",
        validation_alias=AliasChoices(
            "FASTKOKORO_RESPONSE_FORMAT", "fastkokoro_response_format"
        ),
    )
    fastkokoro_speed: float = Field(
        default=1.0,
        gt=0,
        validation_alias=AliasChoices("FASTKOKORO_SPEED", "fastkokoro_speed"),
    )
    fastkokoro_save_to_file: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "FASTKOKORO_SAVE_TO_FILE", "fastkokoro_save_to_file"
        ),
    )
    tts_request_timeout: float = Field(
        default=60.0,
        ge=1,
        validation_alias=AliasChoices("TTS_REQUEST_TIMEOUT", "tts_request_timeout"),
    )

    # Whisper recognition server
    whisper_server_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:9000"),
        validation_alias=AliasChoices("WHISPER_SERVER_URL", "whisper_server_url"),
    )
    asr_request_timeout: float = Field(
        default=60.0,
        ge=1,
        validation_alias=AliasChoices("ASR_REQUEST_TIMEOUT", "asr_request_timeout"),
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "log_level"),
    )
    log_dir: Path = Field(
        default_factory=lambda: Path("logs/app"),
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )
    logging_settings_path: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("LOGGING_SETTINGS_PATH", "logging_settings_path"),
    )

    @property
    def safety_margin_ms(self) -> int:
        """Safety margin that matches the configured dispatch mode."""
        if self.tts_mode is TtsMode.INCREMENTAL:
            return self.incremental_safety_margin_ms
        return self.single_shot_safety_margin_ms


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = [
    "Settings",
    "SynthesisFailurePolicy",
    "TtsMode",
    "get_settings",
]
