"""Text-generation collaborator.

The analysis orchestrator depends only on the TextGenerator protocol; the
OpenAI implementation maps every client failure to UpstreamGenerationError.
"""

import logging
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from app.config import settings
from app.exceptions import UpstreamGenerationError

logger = logging.getLogger(__name__)

# Maximum tokens per generated section
DEFAULT_MAX_TOKENS = 1500


class TextGenerator(Protocol):
    async def generate(self, system: str, prompt: str, temperature: float) -> str: ...


class OpenAITextGenerator:
    """TextGenerator backed by OpenAI chat completions."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        """Initialize the generator.

        Args:
            client: Optional pre-configured AsyncOpenAI client (for testing).
                   If not provided, creates one from settings.
            model: Chat model. Defaults to settings.generation_model.
            max_tokens: Maximum tokens in each response.
        """
        if client is not None:
            self._client = client
        else:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        self._model = model or settings.generation_model
        self._max_tokens = max_tokens

    async def close(self) -> None:
        """Close the OpenAI client connection."""
        await self._client.close()

    async def generate(self, system: str, prompt: str, temperature: float) -> str:
        """Generate text for one prompt.

        Raises:
            UpstreamGenerationError: On any API error or an empty response.
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=self._max_tokens,
            )
        except OpenAIError as e:
            logger.warning(f"Text generation failed ({self._model}): {e}")
            raise UpstreamGenerationError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamGenerationError("Empty response from text generation")
        return content.strip()
