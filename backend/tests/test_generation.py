"""Tests for the OpenAI text generator.

Uses mock OpenAI client to avoid real API calls.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from app.exceptions import UpstreamGenerationError
from app.services.generation import DEFAULT_MAX_TOKENS, OpenAITextGenerator


def create_mock_chat_client(content: str | None = "Generated text.") -> AsyncMock:
    """Create a mock AsyncOpenAI client returning one chat completion."""
    mock_client = AsyncMock()
    mock_response = MagicMock()
    mock_response.choices = [MagicMock(message=MagicMock(content=content))]
    mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
    return mock_client


class TestOpenAITextGenerator:
    @pytest.mark.asyncio
    async def test_generate(self):
        mock_client = create_mock_chat_client("  Stable blood pressure.  ")
        generator = OpenAITextGenerator(client=mock_client, model="test-model")

        text = await generator.generate("system prompt", "user prompt", 0.2)

        assert text == "Stable blood pressure."
        mock_client.chat.completions.create.assert_awaited_once_with(
            model="test-model",
            messages=[
                {"role": "system", "content": "system prompt"},
                {"role": "user", "content": "user prompt"},
            ],
            temperature=0.2,
            max_tokens=DEFAULT_MAX_TOKENS,
        )

    @pytest.mark.asyncio
    async def test_api_error(self):
        mock_client = create_mock_chat_client()
        mock_client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        generator = OpenAITextGenerator(client=mock_client, model="test-model")

        with pytest.raises(UpstreamGenerationError):
            await generator.generate("system", "prompt", 0.3)

    @pytest.mark.asyncio
    async def test_empty_content(self):
        generator = OpenAITextGenerator(client=create_mock_chat_client(None), model="test-model")
        with pytest.raises(UpstreamGenerationError, match="Empty response"):
            await generator.generate("system", "prompt", 0.3)

    @pytest.mark.asyncio
    async def test_no_choices(self):
        mock_client = create_mock_chat_client()
        mock_client.chat.completions.create.return_value.choices = []
        generator = OpenAITextGenerator(client=mock_client, model="test-model")
        with pytest.raises(UpstreamGenerationError):
            await generator.generate("system", "prompt", 0.3)

    @pytest.mark.asyncio
    async def test_close(self):
        mock_client = create_mock_chat_client()
        await OpenAITextGenerator(client=mock_client).close()
        mock_client.close.assert_awaited_once()
