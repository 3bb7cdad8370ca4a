"""
CRM AI LLM Client
=================

Async generation clients. Supports OpenAI (default) and Claude (Anthropic).

Every call runs under the generation timeout with at most one retry on
timeout; provider failures surface as UpstreamServiceError("generation").
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config import Settings
from ..upstream import call_with_timeout

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Supported LLM providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class LLMResponse:
    """A generated completion."""
    content: str
    model: str
    provider: LLMProvider
    tokens_input: int
    tokens_output: int
    cost_usd: float

    @property
    def total_tokens(self) -> int:
        return self.tokens_input + self.tokens_output


class LLMClient(ABC):
    """Abstract async generation client."""

    PRICING = {}
    DEFAULT_PRICING = {"input": 2.5, "output": 10.0}

    def __init__(self, model: str, timeout: float = 15.0, max_retries: int = 1):
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.calls = 0

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD."""
        pricing = self.PRICING.get(self.model, self.DEFAULT_PRICING)
        cost = (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000
        return round(cost, 6)

    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Generate a completion.

        Raises:
            UpstreamServiceError: provider error or timeout (dependency "generation")
        """
        self.calls += 1
        response = await call_with_timeout(
            "generation",
            lambda: self._generate(prompt, system, max_tokens, temperature),
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        logger.info(
            f"LLM completion: {response.model} {response.total_tokens} tokens (${response.cost_usd:.6f})"
        )
        return response

    @abstractmethod
    async def _generate(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        """One provider call, no timeout handling."""


class AnthropicClient(LLMClient):
    """
    Client for Claude (Anthropic).
    """

    # Pricing per 1M tokens (USD)
    PRICING = {
        "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
        "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
    }
    DEFAULT_PRICING = {"input": 3.0, "output": 15.0}

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        timeout: float = 15.0,
        max_retries: int = 1,
    ):
        super().__init__(model, timeout, max_retries)
        self.api_key = api_key
        self._client = None

        if not self.api_key:
            logger.warning("ANTHROPIC_API_KEY not set - generation will fail")

    def _get_client(self):
        """Lazy init of the Anthropic client."""
        if self._client is None:
            import anthropic
            # Retries are handled by call_with_timeout
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, max_retries=0)
        return self._client

    async def _generate(self, prompt, system, max_tokens, temperature) -> LLMResponse:
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY required")

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._get_client().messages.create(**kwargs)

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        return LLMResponse(
            content=response.content[0].text,
            model=self.model,
            provider=LLMProvider.ANTHROPIC,
            tokens_input=input_tokens,
            tokens_output=output_tokens,
            cost_usd=self._calculate_cost(input_tokens, output_tokens),
        )


class OpenAIClient(LLMClient):
    """
    Client for OpenAI chat completions.
    """

    PRICING = {
        "gpt-4o": {"input": 2.5, "output": 10.0},
        "gpt-4o-mini": {"input": 0.15, "output": 0.6},
        "gpt-4": {"input": 30.0, "output": 60.0},
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 15.0,
        max_retries: int = 1,
        client=None,
    ):
        super().__init__(model, timeout, max_retries)
        self.api_key = api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def _generate(self, prompt, system, max_tokens, temperature) -> LLMResponse:
        if not self.api_key and self._client is None:
            raise ValueError("OPENAI_API_KEY required")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        input_tokens = response.usage.prompt_tokens
        output_tokens = response.usage.completion_tokens
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=self.model,
            provider=LLMProvider.OPENAI,
            tokens_input=input_tokens,
            tokens_output=output_tokens,
            cost_usd=self._calculate_cost(input_tokens, output_tokens),
        )


def get_llm_client(settings: Settings, openai_client=None) -> LLMClient:
    """
    Factory for the generation client.

    Priority:
    1. Explicit LLM_PROVIDER
    2. OPENAI_API_KEY present -> GPT
    3. ANTHROPIC_API_KEY present -> Claude
    4. Error
    """
    provider = (settings.llm_provider or "").lower() or None
    timeout = settings.timeouts.generation
    retries = settings.timeouts.max_retries

    if provider == "anthropic" or (not provider and not settings.openai.api_key and settings.anthropic.api_key):
        return AnthropicClient(
            api_key=settings.anthropic.api_key,
            model=settings.anthropic.model,
            timeout=timeout,
            max_retries=retries,
        )

    if provider in (None, "openai") and (settings.openai.api_key or openai_client is not None):
        return OpenAIClient(
            api_key=settings.openai.api_key,
            model=settings.openai.chat_model,
            timeout=timeout,
            max_retries=retries,
            client=openai_client,
        )

    raise ValueError(
        "No LLM API key found. Set OPENAI_API_KEY, GPT_API_KEY or ANTHROPIC_API_KEY"
    )
