"""Unified LLM client factory and manager.

Provides one interface over the supported generation providers (Gemini,
OpenRouter). The client is built once at the composition root and injected
into the pipeline stages; tenant and session context travel with each call.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union

from factcheck.core.config import LLMSettings
from factcheck.core.exceptions import APIClientError, APITimeoutError, ConfigurationError
from factcheck.core.llm_client import GeminiClient, OpenRouterClient
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    GEMINI = "gemini"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class GenerationContext:
    """Per-call context attached to every generation request."""
    tenant_id: str
    session_id: str
    stage: str

    def as_log_extra(self) -> dict:
        return {"tenant_id": self.tenant_id, "session_id": self.session_id, "stage": self.stage}


class TextGenerator(Protocol):
    """Black-box text-in/text-out generation capability."""

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        context: Optional[GenerationContext] = None,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        ...


class UnifiedLLMClient:
    """Unified LLM client that wraps different providers.

    Provides a consistent interface regardless of the underlying provider,
    with an optional Gemini fallback when OpenRouter is primary.
    """

    def __init__(
        self,
        provider: Union[str, LLMProvider],
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: int = 60,
        max_retries: int = 3,
        fallback_to_gemini: bool = False,
        gemini_api_key: Optional[str] = None,
        gemini_model: Optional[str] = None,
    ):
        """Initialize unified LLM client.

        Args:
            provider: LLM provider to use ("gemini" or "openrouter")
            api_key: API key for the primary provider
            model: Model name to use
            base_url: Optional base URL (for OpenRouter)
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts
            fallback_to_gemini: If True, fall back to Gemini on primary provider failure
            gemini_api_key: Gemini API key (required if fallback_to_gemini=True)
            gemini_model: Gemini model name (for fallback)

        Raises:
            ConfigurationError: If the provider is unknown or a required key is missing
        """
        try:
            self.provider = LLMProvider(provider)
        except ValueError as e:
            raise ConfigurationError(f"Unsupported provider: {provider}", original_error=e) from e

        if not api_key:
            raise ConfigurationError(f"API key required for provider {self.provider.value}")

        self.model = model
        self.timeout = timeout
        self.fallback_client = None

        if self.provider == LLMProvider.GEMINI:
            self.client = GeminiClient(api_key=api_key, model=model, max_retries=max_retries)
            LOGGER.info(f"Initialized unified LLM with Gemini provider (model: {model})")
            return

        self.client = OpenRouterClient(
            api_key=api_key,
            model=model,
            base_url=base_url or "https://openrouter.ai/api/v1/chat/completions",
            timeout=timeout,
            max_retries=max_retries
        )

        if fallback_to_gemini:
            if not gemini_api_key:
                raise ConfigurationError("gemini_api_key required when fallback_to_gemini=True")
            self.fallback_client = GeminiClient(
                api_key=gemini_api_key,
                model=gemini_model or "gemini-2.0-flash",
                max_retries=max_retries
            )
            LOGGER.info(
                f"Initialized unified LLM with OpenRouter provider (model: {model}) "
                f"and Gemini fallback (model: {gemini_model})"
            )
        else:
            LOGGER.info(f"Initialized unified LLM with OpenRouter provider (model: {model})")

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        context: Optional[GenerationContext] = None,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Generate text using the configured provider.

        Args:
            prompt: Input prompt
            system_instruction: Optional system instruction
            context: Tenant/session/stage the call is made for
            max_output_tokens: Optional output token cap
            timeout: Overall deadline in seconds for the call (including fallback)

        Returns:
            Generated text response

        Raises:
            APITimeoutError: If the deadline expires
            APIClientError: If generation fails on every configured provider
        """
        extra = context.as_log_extra() if context else {}
        LOGGER.debug(f"Generating with {self.provider.value}", extra=extra)

        try:
            if timeout:
                return await asyncio.wait_for(
                    self._generate_with_fallback(prompt, system_instruction, max_output_tokens, context),
                    timeout=timeout,
                )
            return await self._generate_with_fallback(prompt, system_instruction, max_output_tokens, context)
        except asyncio.TimeoutError as e:
            LOGGER.warning(f"Generation timed out after {timeout}s", extra=extra)
            raise APITimeoutError(f"Generation timed out after {timeout}s", original_error=e) from e

    async def _generate_with_fallback(
        self,
        prompt: str,
        system_instruction: Optional[str],
        max_output_tokens: Optional[int],
        context: Optional[GenerationContext],
    ) -> str:
        user = context.tenant_id if context else None
        try:
            return await self.client.generate_content(
                contents=prompt,
                system_instruction=system_instruction,
                max_output_tokens=max_output_tokens,
                user=user,
            )
        except APIClientError as e:
            if not self.fallback_client:
                raise
            LOGGER.warning(
                f"{self.provider.value} failed, falling back to Gemini: {e}",
                extra=context.as_log_extra() if context else {},
            )
            return await self.fallback_client.generate_content(
                contents=prompt,
                system_instruction=system_instruction,
                max_output_tokens=max_output_tokens,
            )


def create_llm_client(llm_settings: LLMSettings) -> UnifiedLLMClient:
    """Factory function to create a unified LLM client from settings.

    Args:
        llm_settings: LLM provider settings

    Returns:
        Configured UnifiedLLMClient instance
    """
    return UnifiedLLMClient(
        provider=llm_settings.provider,
        api_key=llm_settings.api_key,
        model=llm_settings.model,
        base_url=llm_settings.openrouter_api_url,
        timeout=llm_settings.request_timeout,
        max_retries=llm_settings.max_retries,
        fallback_to_gemini=llm_settings.enable_fallback,
        gemini_api_key=llm_settings.gemini_api_key or None,
        gemini_model=llm_settings.gemini_model,
    )
