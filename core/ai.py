"""
AI Completion Service — used by ``ai-query`` nodes.

Contract: complete(prompt, system_message?) -> text
Raises AICompletionError on any provider failure or an empty completion.

Supports Anthropic and OpenAI (clients imported lazily so neither SDK is
required unless configured) plus a mock provider for development.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()


class AICompletionError(Exception):
    """The completion provider failed or returned nothing."""

    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class AICompletionService:
    """
    Single-turn completion over Claude or OpenAI.
    The system message falls back to ``llm.default_system_message``.
    """

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def is_openai(self) -> bool:
        return self.provider == "openai"

    @property
    def has_api_key(self) -> bool:
        key = self.config.api_key or ""
        return bool(key) and not key.startswith("${")

    async def _get_client(self):
        if self._client is None:
            if self.provider not in ("anthropic", "openai"):
                raise AICompletionError(f"Unknown llm provider '{self.provider}'", self.provider)
            if not self.has_api_key:
                logger.error("llm_api_key_missing", provider=self.provider)
                raise AICompletionError(f"No api_key configured for {self.provider}", self.provider)
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self.provider, model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self.provider, error=str(e))
                raise AICompletionError(f"Cannot initialise {self.provider} client: {e}", self.provider) from e
        return self._client

    async def complete(self, prompt: str, system_message: Optional[str] = None) -> str:
        system = system_message or self.config.default_system_message
        client = await self._get_client()
        try:
            if self.is_openai:
                messages = [{"role": "user", "content": prompt}]
                if system:
                    messages.insert(0, {"role": "system", "content": system})
                response = await client.chat.completions.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    messages=messages,
                )
                text = response.choices[0].message.content
            else:
                kwargs = {
                    "model": self.config.model,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                    "messages": [{"role": "user", "content": prompt}],
                }
                if system:
                    kwargs["system"] = system
                response = await client.messages.create(**kwargs)
                text = "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
        except Exception as e:
            logger.error("llm_completion_failed", provider=self.provider, error=str(e))
            raise AICompletionError(str(e), self.provider) from e

        if not text:
            raise AICompletionError("Empty completion", self.provider)
        return text


class MockAICompletionService:
    """Deterministic stand-in used when no LLM provider is configured."""

    provider = "mock"

    def __init__(self, reply: str = ""):
        self.reply = reply
        self.calls: list[dict[str, Optional[str]]] = []

    async def complete(self, prompt: str, system_message: Optional[str] = None) -> str:
        self.calls.append({"prompt": prompt, "system_message": system_message})
        logger.info("mock_llm_completion", prompt_chars=len(prompt))
        return self.reply or f"[mock completion] {prompt}"


def create_ai_service(config: LLMConfig = None):
    """
    Factory function to create the configured completion service.
    Only provider "mock" gets the mock. A real provider without a key gets
    the real service, and every complete() raises AICompletionError.
    """
    config = config or get_settings().llm
    if config.provider == "mock":
        logger.info("using_mock_llm")
        return MockAICompletionService()
    service = AICompletionService(config)
    if not service.has_api_key:
        logger.warning("llm_api_key_missing", provider=config.provider)
    return service
