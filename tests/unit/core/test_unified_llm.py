"""Test unified LLM client functionality."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from factcheck.core.config import LLMSettings
from factcheck.core.exceptions import APIClientError, APITimeoutError, ConfigurationError
from factcheck.core.unified_llm import GenerationContext, LLMProvider, UnifiedLLMClient, create_llm_client

CONTEXT = GenerationContext(tenant_id="tenant-1", session_id="s-1", stage="verify_llm")


def _mock_client(return_value="Generated text", side_effect=None):
    instance = AsyncMock()
    instance.generate_content = AsyncMock(return_value=return_value, side_effect=side_effect)
    return instance


@pytest.mark.asyncio
async def test_generate_with_gemini():
    """Test generation with the Gemini provider."""
    with patch("factcheck.core.unified_llm.GeminiClient") as mock_gemini:
        mock_gemini.return_value = _mock_client()

        client = UnifiedLLMClient(provider="gemini", api_key="test_key", model="gemini-2.0-flash")
        result = await client.generate("Test prompt", system_instruction="Test instruction", context=CONTEXT)

    assert client.provider == LLMProvider.GEMINI
    assert client.fallback_client is None
    assert result == "Generated text"
    call = mock_gemini.return_value.generate_content.await_args
    assert call.kwargs["contents"] == "Test prompt"
    assert call.kwargs["system_instruction"] == "Test instruction"
    assert call.kwargs["user"] == "tenant-1"


@pytest.mark.asyncio
async def test_openrouter_falls_back_to_gemini():
    """Test that a failing primary provider falls back to Gemini."""
    with patch("factcheck.core.unified_llm.OpenRouterClient") as mock_openrouter, \
            patch("factcheck.core.unified_llm.GeminiClient") as mock_gemini:
        mock_openrouter.return_value = _mock_client(side_effect=APIClientError("rate limited"))
        mock_gemini.return_value = _mock_client(return_value="From fallback")

        client = UnifiedLLMClient(
            provider="openrouter",
            api_key="test_openrouter_key",
            model="anthropic/claude-3.5-haiku",
            fallback_to_gemini=True,
            gemini_api_key="test_gemini_key",
        )
        result = await client.generate("Test prompt")

    assert result == "From fallback"
    mock_openrouter.return_value.generate_content.assert_awaited_once()


@pytest.mark.asyncio
async def test_error_without_fallback_propagates():
    with patch("factcheck.core.unified_llm.OpenRouterClient") as mock_openrouter:
        mock_openrouter.return_value = _mock_client(side_effect=APIClientError("bad gateway"))

        client = UnifiedLLMClient(provider="openrouter", api_key="test_key", model="m")

        with pytest.raises(APIClientError):
            await client.generate("Test prompt")


@pytest.mark.asyncio
async def test_deadline_raises_timeout_error():
    async def slow(**kwargs):
        await asyncio.sleep(5)
        return "too late"

    with patch("factcheck.core.unified_llm.GeminiClient") as mock_gemini:
        mock_gemini.return_value = _mock_client(side_effect=slow)

        client = UnifiedLLMClient(provider="gemini", api_key="test_key", model="gemini-2.0-flash")

        with pytest.raises(APITimeoutError):
            await client.generate("Test prompt", timeout=0.05)


def test_invalid_provider():
    """Test that invalid provider raises error."""
    with pytest.raises(ConfigurationError):
        UnifiedLLMClient(provider="invalid_provider", api_key="test_key", model="test_model")


def test_missing_api_key():
    with pytest.raises(ConfigurationError):
        UnifiedLLMClient(provider="gemini", api_key="", model="gemini-2.0-flash")


def test_fallback_requires_gemini_key():
    with patch("factcheck.core.unified_llm.OpenRouterClient"):
        with pytest.raises(ConfigurationError):
            UnifiedLLMClient(provider="openrouter", api_key="k", model="m", fallback_to_gemini=True)


def test_create_llm_client_factory():
    """Test factory function for creating unified LLM client."""
    llm_settings = LLMSettings.model_validate({"LLM_PROVIDER": "gemini", "GEMINI_API_KEY": "test_key"})

    with patch("factcheck.core.unified_llm.GeminiClient"):
        client = create_llm_client(llm_settings)

    assert isinstance(client, UnifiedLLMClient)
    assert client.provider == LLMProvider.GEMINI
    assert client.model == "gemini-2.0-flash"
