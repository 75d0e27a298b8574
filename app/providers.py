"""
PROVIDERS - Interchangeable generation back-ends under a shared turn budget

Every back-end is consumed as one capability:
    given a system instruction, a user context and a deadline -> text or None

A back-end without an API key is unavailable and silently skipped.
Timeouts and SDK errors are logged and turned into None; nothing here
raises into the pipeline.

BUDGET:
    per-call timeout = min(call ceiling, remaining turn budget - safety margin)
Once that is <= 0 the call is skipped instead of being started with a
near-zero deadline.
"""

import asyncio
import json
import logging
import re
import time
from typing import Callable, List, Optional

import google.generativeai as genai
import openai
from groq import AsyncGroq

from .config import ProviderConfig, Settings

logger = logging.getLogger(__name__)


class Budget:
    """Wall-clock allowance for one turn's external calls."""

    def __init__(self, total_ms: int, safety_margin_ms: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.total_ms = total_ms
        self.safety_margin_ms = safety_margin_ms
        self._clock = clock
        self._started = clock()

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000.0

    def remaining_ms(self) -> float:
        return max(0.0, self.total_ms - self.elapsed_ms())

    def exhausted(self) -> bool:
        return self.call_timeout(self.total_ms) is None

    def call_timeout(self, ceiling_ms: int) -> Optional[float]:
        """Seconds to allow the next call, or None when it should be skipped."""
        if self.elapsed_ms() >= self.total_ms:
            return None
        allowed = min(ceiling_ms, self.remaining_ms() - self.safety_margin_ms)
        if allowed <= 0:
            return None
        return allowed / 1000.0


def parse_json_payload(text: Optional[str]) -> Optional[dict]:
    """Pull the JSON object out of model output; None when there is none."""
    if not text:
        return None
    content = text.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*", "", content)
        content = re.sub(r"\s*```$", "", content)
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(content[start:end + 1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class Provider:
    """Base back-end. Subclasses implement _complete()."""

    name = "provider"

    def __init__(self, config: ProviderConfig, temperature: float = 0.6, max_tokens: int = 300):
        self.config = config
        self.model = config.model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def available(self) -> bool:
        return self.config.enabled

    async def _complete(self, system: str, user: str) -> str:
        raise NotImplementedError

    async def complete(self, system: str, user: str, budget: Budget, ceiling_ms: int) -> Optional[str]:
        if not self.available:
            logger.debug(f"{self.name}: no credential, skipped")
            return None
        timeout = budget.call_timeout(ceiling_ms)
        if timeout is None:
            logger.info(f"{self.name}: turn budget exhausted, skipped")
            return None
        try:
            return await asyncio.wait_for(self._complete(system, user), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: no reply within {timeout:.2f}s, dropped")
        except Exception as e:
            logger.warning(f"{self.name}: call failed: {e}")
        return None


class GroqProvider(Provider):
    name = "groq"

    def __init__(self, config: ProviderConfig, **kwargs):
        super().__init__(config, **kwargs)
        self.client = AsyncGroq(api_key=config.api_key) if config.api_key else None

    async def _complete(self, system: str, user: str) -> str:
        response = await self.client.chat.completions.create(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return response.choices[0].message.content.strip()


class OpenAIProvider(Provider):
    name = "openai"

    def __init__(self, config: ProviderConfig, **kwargs):
        super().__init__(config, **kwargs)
        self.client = openai.AsyncOpenAI(api_key=config.api_key) if config.api_key else None

    async def _complete(self, system: str, user: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return response.choices[0].message.content.strip()


class GeminiProvider(Provider):
    name = "gemini"

    def __init__(self, config: ProviderConfig, **kwargs):
        super().__init__(config, **kwargs)
        if config.api_key:
            genai.configure(api_key=config.api_key)

    async def _complete(self, system: str, user: str) -> str:
        model = genai.GenerativeModel(
            self.model,
            system_instruction=system,
            generation_config={
                "response_mime_type": "application/json",
                "temperature": self.temperature,
                "max_output_tokens": self.max_tokens,
            },
        )
        response = await model.generate_content_async(user)
        return response.text


def build_providers(settings: Settings) -> List[Provider]:
    """All configured back-ends in preference order; unavailable ones included."""
    return [
        GroqProvider(settings.groq),
        OpenAIProvider(settings.openai),
        GeminiProvider(settings.gemini, temperature=0.2),
    ]
