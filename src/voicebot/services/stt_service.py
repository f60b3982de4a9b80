"""Speech recognition through a local whisper server."""

import asyncio
import base64
import logging
from pathlib import Path
from typing import Optional

import httpx

from voicebot.config import Settings, get_settings

logger = logging.getLogger(__name__)


class WhisperServerRecognizer:
    """Posts a recorded file to ``/recognize`` and returns the transcript."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.base_url = str(settings.whisper_server_url).rstrip("/")
        self.timeout = settings.asr_request_timeout
        self._client = client

    async def recognize(self, audio_path: Path | str) -> str:
        """Return the recognized text, or an empty string on any failure."""
        audio_path = Path(audio_path)
        if not audio_path.exists():
            logger.error(f"Audio file does not exist: {audio_path}")
            return ""

        audio = await asyncio.to_thread(audio_path.read_bytes)
        if not audio:
            logger.error(f"Audio file is empty: {audio_path}")
            return ""

        payload = {"audio": base64.b64encode(audio).decode("ascii")}
        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/recognize", json=payload, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self.base_url}/recognize", json=payload, timeout=self.timeout
                    )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error calling whisper server at {self.base_url}: {e}")
            return ""

        recognition = data.get("recognition") if isinstance(data, dict) else None
        if not recognition:
            logger.error(f"Unexpected response format from whisper server: {data}")
            return ""

        logger.info(f"Recognized: {recognition[:80]}")
        return recognition


__all__ = ["WhisperServerRecognizer"]
