"""
Text-generation provider (OpenAI chat completions).
Provider errors are translated into the JobError taxonomy here so the
rest of the pipeline never inspects OpenAI exception types.
"""

import logging
from typing import Protocol

import openai
from openai import OpenAI

from clipnotes.core.constants import ErrorCode
from clipnotes.core.error_codes import ExternalUnavailable, ModelError, RateLimited
from clipnotes.core.rate_limit import RateLimitSignal, parse_rate_limit_signal
from clipnotes.core.security_utils import get_secret

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    def complete(self, system_prompt: str, user_content: str, max_tokens: int) -> str:
        ...


def build_openai_client(api_key: str | None = None) -> OpenAI:
    """Create an OpenAI client from an explicit key or OPENAI_API_KEY."""
    key = api_key or get_secret("OPENAI_API_KEY")
    if not key:
        raise ExternalUnavailable("OpenAI API key not configured",
                                  code=ErrorCode.EXTERNAL_UNAVAILABLE)
    return OpenAI(api_key=key)


def rate_limited_from(error: Exception, what: str) -> RateLimited:
    response = getattr(error, 'response', None)
    headers = getattr(response, 'headers', None)
    signal = parse_rate_limit_signal(str(error), headers)
    return RateLimited(f"{what} rate limited", signal=signal)


class OpenAITextGenerator:
    """Chat-completions backed TextGenerator."""

    def __init__(self, client: OpenAI, model: str, temperature: float = 0.3):
        self.client = client
        self.model = model
        self.temperature = temperature

    def complete(self, system_prompt: str, user_content: str, max_tokens: int) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                max_tokens=max_tokens,
                temperature=self.temperature,
            )
        except openai.RateLimitError as e:
            raise rate_limited_from(e, "Text generation") from e
        except openai.BadRequestError as e:
            signal = parse_rate_limit_signal(str(e))
            if signal.request_too_large:
                # context overflow: no need to wait, only to split
                raise RateLimited("Text generation request too large",
                                  signal=RateLimitSignal(retry_after=0.0,
                                                         request_too_large=True)) from e
            logger.warning("Text generation rejected (%s): %s", self.model, type(e).__name__)
            raise ModelError(f"Text generation failed: {type(e).__name__}") from e
        except openai.APIError as e:
            logger.warning("Text generation failed (%s): %s", self.model, type(e).__name__)
            raise ModelError(f"Text generation failed: {type(e).__name__}") from e

        u = getattr(resp, "usage", None)
        if u is not None:
            logger.debug("Model %s usage: prompt=%s completion=%s", self.model,
                         getattr(u, "prompt_tokens", 0), getattr(u, "completion_tokens", 0))

        return resp.choices[0].message.content or ""
