"""
OpenAI Client wrapper

Handles interactions with OpenAI API for insight generation and voice transcription.
"""

from typing import List, Optional

from openai import AsyncOpenAI

from kindred.core.config import settings
from kindred.core.logging import get_logger

logger = get_logger(__name__)


class OpenAIClient:
    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.client = client or (AsyncOpenAI(api_key=self.api_key) if self.api_key else None)

    @property
    def available(self) -> bool:
        return self.client is not None

    async def chat_completion(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> str:
        """Standard chat completion"""
        if not self.client:
            raise ValueError("OpenAI API key not provided")

        try:
            kwargs = {
                "model": model or settings.openai_model,
                "messages": messages,
                "temperature": temperature,
            }

            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}

            response = await self.client.chat.completions.create(**kwargs)
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"OpenAI Chat Error: {e}")
            raise

    async def transcribe(self, audio: bytes, filename: str, model: Optional[str] = None) -> str:
        """Speech to text for voice notes and voice answers"""
        if not self.client:
            raise ValueError("OpenAI API key not provided")

        try:
            response = await self.client.audio.transcriptions.create(
                model=model or settings.openai_transcription_model,
                file=(filename, audio),
            )
            return response.text
        except Exception as e:
            logger.error(f"OpenAI Transcription Error: {e}")
            raise


class Transcriber:
    """Best-effort transcription: failures return None and never fail a send"""

    def __init__(self, client: Optional[OpenAIClient] = None):
        self.client = client

    async def transcribe(self, audio: bytes, filename: str) -> Optional[str]:
        if self.client is None or not self.client.available:
            return None
        try:
            text = await self.client.transcribe(audio, filename)
        except Exception as e:
            logger.warning(f"Transcription unavailable for {filename}: {e}")
            return None
        return text.strip() or None
