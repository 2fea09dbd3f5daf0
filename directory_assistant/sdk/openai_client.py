"""
Model invoker over an OpenAI-compatible chat completions API.

Measures tokens and latency for every call. Any provider failure surfaces
as ProviderError; callers decide what the user sees.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from ..config.loader import ProviderConfig
from ..core.prompt import Prompt
from ..core.token_counter import estimate_tokens

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised on network error, timeout, non-2xx status or empty output."""


@dataclass(frozen=True)
class Generation:
    """Result of one successful generation call."""
    text: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    request_id: Optional[str] = None


class ModelInvoker:
    """Calls the language-model provider with a bounded timeout.

    The client is created on first use, so a missing API key only fails
    questions that actually reach the model.
    """

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        """Initialize the invoker.

        Args:
            config: Provider model, endpoint, key variable and timeout
            client: Pre-built client (tests, custom transports)
        """
        self.config = config
        self.model = config.model
        self.timeout_seconds = config.timeout_seconds
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = os.getenv(self.config.api_key_env)
            if not api_key:
                raise ProviderError(f"{self.config.api_key_env} is not set")
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.config.base_url,
                timeout=self.timeout_seconds,
                max_retries=0
            )
        return self._client

    async def generate(self, prompt: Prompt, max_tokens: int) -> Generation:
        """Generate an answer for ``prompt``.

        Args:
            prompt: Messages to send
            max_tokens: Output token cap

        Returns:
            Generation with text, token counts and latency

        Raises:
            ProviderError: On any provider-side failure or timeout
        """
        client = self._get_client()
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=prompt.messages,
                    max_tokens=max_tokens,
                    temperature=self.config.temperature
                ),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"provider timed out after {self.timeout_seconds:g}s") from exc
        except OpenAIError as exc:
            raise ProviderError(f"provider error: {exc}") from exc
        latency_ms = int((time.monotonic() - started) * 1000)

        choices = getattr(response, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text or not text.strip():
            raise ProviderError("provider returned no text")

        # Some OpenAI-compatible endpoints omit usage; fall back to the char ratio
        usage = getattr(response, "usage", None)
        if usage is not None and usage.prompt_tokens is not None and usage.completion_tokens is not None:
            input_tokens, output_tokens = usage.prompt_tokens, usage.completion_tokens
        else:
            input_tokens, output_tokens = estimate_tokens(prompt.text), estimate_tokens(text)

        return Generation(
            text=text.strip(),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            request_id=getattr(response, "id", None)
        )
