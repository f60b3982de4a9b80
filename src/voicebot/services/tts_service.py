import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

import httpx

from voicebot.config import Settings, get_settings
from voicebot.services.tts.artifact import (
    COMPRESSED_FORMATS,
    SpeechArtifact,
    compressed_duration_ms,
    pcm_duration_ms,
    wav_duration_ms,
)

logger = logging.getLogger(__name__)


class FastKokoroSynthesizer:
    """
    Speech synthesis through a local FastKokoro (OpenAI-compatible) server.

    The server is asked for the complete file rather than a stream, because
    the playback pipeline needs the duration up front. When it answers with
    an ``x-download-path`` header the full file is fetched from that link.

    Uses a shared httpx.AsyncClient for connection pooling across requests.
    Every failure is logged and turned into an empty artifact.
    """

    _http_client: Optional[httpx.AsyncClient] = None

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.base_url = str(settings.fastkokoro_server_url).rstrip("/")
        self.model = settings.fastkokoro_model
        self.voice = settings.fastkokoro_voice
        self.response_format = settings.fastkokoro_response_format
        self.speed = settings.fastkokoro_speed
        self.timeout = settings.tts_request_timeout
        self.save_to_file = settings.fastkokoro_save_to_file
        self.output_dir = settings.tts_output_dir
        self._client = client

    @classmethod
    def get_http_client(cls) -> httpx.AsyncClient:
        """Get shared HTTP client for connection pooling."""
        if cls._http_client is None:
            cls._http_client = httpx.AsyncClient(timeout=60.0)
            logger.info("Created shared httpx.AsyncClient for TTS")
        return cls._http_client

    @classmethod
    async def close_http_client(cls) -> None:
        """Close the shared HTTP client. Call on shutdown."""
        if cls._http_client is not None:
            await cls._http_client.aclose()
            cls._http_client = None
            logger.info("Closed TTS HTTP client")

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or self.get_http_client()

    async def synthesize(self, text: str) -> SpeechArtifact:
        """Synthesize text; returns an empty artifact if anything goes wrong."""
        if not text.strip():
            return SpeechArtifact.empty()

        try:
            audio = await self._fetch_audio(text)
        except httpx.HTTPError as e:
            logger.error(f"FastKokoro TTS failed: {e}")
            return SpeechArtifact.empty()

        if not audio:
            logger.warning("FastKokoro TTS returned an empty body")
            return SpeechArtifact.empty()

        duration = await asyncio.to_thread(self._measure, audio)
        logger.info(
            f"FastKokoro TTS synthesized {len(audio)} bytes "
            f"({duration:.0f}ms) for text: {text[:50]}..."
        )

        if self.save_to_file:
            try:
                path = await asyncio.to_thread(self._save, audio)
            except OSError as e:
                logger.error(f"Failed to save TTS audio: {e}")
            else:
                return SpeechArtifact(
                    file_path=path, duration_ms=duration, audio_format=self.response_format
                )

        return SpeechArtifact(data=audio, duration_ms=duration, audio_format=self.response_format)

    async def __call__(self, text: str) -> SpeechArtifact:
        return await self.synthesize(text)

    async def _fetch_audio(self, text: str) -> bytes:
        payload = {
            "model": self.model,
            "input": text,
            "voice": self.voice,
            "response_format": self.response_format,
            "speed": self.speed,
            "stream": False,
            "return_download_link": True,
        }
        response = await self.client.post(
            f"{self.base_url}/v1/audio/speech",
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()

        download_path = response.headers.get("x-download-path")
        if not download_path:
            return response.content

        download_url = (
            download_path if download_path.startswith("http") else f"{self.base_url}{download_path}"
        )
        logger.info(f"Downloading full audio from: {download_url}")
        download = await self.client.get(download_url, timeout=self.timeout)
        download.raise_for_status()
        return download.content

    def _measure(self, audio: bytes) -> float:
        if self.response_format == "wav":
            return wav_duration_ms(audio)
        if self.response_format == "pcm":
            return pcm_duration_ms(audio)
        if self.response_format in COMPRESSED_FORMATS:
            return compressed_duration_ms(audio, self.response_format)
        return 0.0

    def _save(self, audio: bytes) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"tts_{uuid.uuid4().hex}.{self.response_format}"
        path.write_bytes(audio)
        return path


__all__ = ["FastKokoroSynthesizer"]
