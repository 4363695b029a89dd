"""
OpenAI text-to-speech client.

Synthesizes a whole answer into one audio file for the client to play.
Failures fall back to text-only (None).
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from voicechat.config import settings

logger = logging.getLogger(__name__)


class OpenAISpeechClient:
    """
    Speech synthesizer backed by the OpenAI audio/speech endpoint.

    Features:
    - Persistent HTTP session with connection pooling
    - Fallback to text-only on any failure
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = settings.tts_model
        self.voice = settings.tts_voice
        self.response_format = settings.tts_format
        self.url = "https://api.openai.com/v1/audio/speech"

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=5,
                ttl_dns_cache=300,
                keepalive_timeout=120,
            )
            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=20,
            )
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            logger.info("Created persistent OpenAI TTS session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed OpenAI TTS session")

    async def synthesize(self, text: str) -> Optional[bytes]:
        """
        Convert text to speech.

        Args:
            text: Text to speak

        Returns:
            Encoded audio (tts_format) or None if synthesis is unavailable
        """
        if not text or not text.strip():
            return None
        if not self.api_key:
            logger.warning("OpenAI API key not configured - skipping speech synthesis")
            return None

        payload = {
            "model": self.model,
            "input": text,
            "voice": self.voice,
            "response_format": self.response_format,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            session = await self._get_session()
            async with session.post(self.url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"TTS API error {response.status}: {error_text[:200]}")
                    return None
                audio = await response.read()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"TTS request failed: {e}")
            return None

        logger.info(f"TTS complete: {len(audio)} bytes for {len(text)} chars")
        return audio or None
