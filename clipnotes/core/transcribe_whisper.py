"""
Speech-to-text via the OpenAI transcription endpoint (whisper-1).
Includes exponential backoff for rate-limit (429) responses.
"""

import logging
import random
import time
from typing import Callable

import openai
from openai import OpenAI

from clipnotes.core.constants import ErrorCode, TRANSCRIPTION_MODEL
from clipnotes.core.error_codes import ExternalUnavailable

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 3
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter


class WhisperTranscriber:
    """(audio bytes, ISO language) -> transcript text."""

    def __init__(self, client: OpenAI, model: str = TRANSCRIPTION_MODEL,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.model = model
        self._sleep = sleep

    def transcribe(self, audio: bytes, iso_language: str, filename: str = "audio.mp3") -> str:
        if not audio:
            raise ExternalUnavailable("Audio stream is empty", code=ErrorCode.TRANSCRIPTION_EMPTY)

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                result = self.client.audio.transcriptions.create(
                    file=(filename, audio),
                    model=self.model,
                    language=iso_language,
                )
            except openai.RateLimitError:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Transcription rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    self._sleep(delay)
                    continue
                raise ExternalUnavailable(
                    f"Transcription rate limited after {_MAX_RATE_LIMIT_RETRIES} retries")
            except openai.APIError as e:
                raise ExternalUnavailable(f"Audio transcription failed: {type(e).__name__}") from e

            text = (getattr(result, 'text', None) or "").strip()
            if not text:
                raise ExternalUnavailable("Transcription failed: No captions generated.",
                                          code=ErrorCode.TRANSCRIPTION_EMPTY)
            logger.info("Transcription completed (%d chars)", len(text))
            return text

        # Should never reach here
        raise ExternalUnavailable("Transcription exhausted retries")
