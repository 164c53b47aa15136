"""Anthropic Claude API provider for segment translation."""

import asyncio
import logging
from typing import Any

from anthropic import Anthropic, APIError, APIStatusError, RateLimitError

from scriptshift.config import Settings, get_settings
from scriptshift.errors import ProviderError
from scriptshift.providers.base import TranslationProvider

logger = logging.getLogger(__name__)

PROVIDER_NAME = "anthropic"


class AnthropicTranslationProvider(TranslationProvider):
    """
    Anthropic Claude API provider for translation.

    Translates one transcript segment per call with:
    - Exponential backoff retry logic for rate limits and server errors
    - Token usage logging
    - A prompt tuned for short, spoken dubbing lines
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        settings: Settings | None = None,
    ):
        """
        Initialize the Anthropic provider.

        Args:
            api_key: Anthropic API key (defaults to settings.anthropic_api_key)
            model: Model to use (defaults to settings.translation_model)
            max_retries: Maximum number of retry attempts for failed requests
            initial_retry_delay: Initial delay in seconds for exponential backoff
            settings: Settings override
        """
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.anthropic_api_key
        self.model = model or self.settings.translation_model
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay

        if not self.api_key:
            raise ValueError(
                "Anthropic API key is required. Set ANTHROPIC_API_KEY environment variable."
            )

        self.client = Anthropic(api_key=self.api_key)
        logger.info(f"Initialized Anthropic provider with model: {self.model}")

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        """
        Translate a single segment using the Claude API.

        Args:
            text: The segment text to translate
            source_lang: Source language code (e.g., "en")
            target_lang: Target language code (e.g., "es")

        Returns:
            The translated text

        Raises:
            ValueError: If text is empty or languages are missing
            ProviderError: If translation fails after all retries
        """
        if not text or not text.strip():
            raise ValueError("Text to translate cannot be empty")

        if not source_lang or not target_lang:
            raise ValueError("Both source_lang and target_lang are required")

        prompt = self._build_translation_prompt(text, source_lang, target_lang)

        for attempt in range(self.max_retries):
            try:
                response = await asyncio.to_thread(
                    self.client.messages.create,
                    model=self.model,
                    max_tokens=1024,
                    temperature=0.3,
                    messages=[{"role": "user", "content": prompt}],
                )

                if not response.content:
                    raise ProviderError("Empty response from Claude API", provider=PROVIDER_NAME)

                translated_text = str(response.content[0].text).strip()
                logger.debug(
                    "Segment translated %s -> %s. Tokens - Input: %s, Output: %s",
                    source_lang,
                    target_lang,
                    response.usage.input_tokens,
                    response.usage.output_tokens,
                )
                return translated_text or text

            except RateLimitError as e:
                if attempt < self.max_retries - 1:
                    delay = self.initial_retry_delay * (2**attempt)
                    logger.warning(
                        f"Rate limit hit. Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise ProviderError(
                        f"Translation failed due to rate limiting after {self.max_retries} attempts",
                        provider=PROVIDER_NAME,
                    ) from e

            except APIStatusError as e:
                logger.error(f"API status error: {e.status_code} - {e.message}")
                if attempt < self.max_retries - 1 and e.status_code >= 500:
                    delay = self.initial_retry_delay * (2**attempt)
                    logger.warning(f"Server error. Retrying in {delay:.1f}s...")
                    await asyncio.sleep(delay)
                else:
                    raise ProviderError(
                        f"Translation failed: {e.message}", provider=PROVIDER_NAME
                    ) from e

            except APIError as e:
                logger.error(f"API error: {str(e)}")
                if attempt < self.max_retries - 1:
                    delay = self.initial_retry_delay * (2**attempt)
                    logger.warning(f"API error. Retrying in {delay:.1f}s...")
                    await asyncio.sleep(delay)
                else:
                    raise ProviderError(
                        f"Translation failed: {str(e)}", provider=PROVIDER_NAME
                    ) from e

        raise ProviderError(
            f"Translation failed after {self.max_retries} attempts", provider=PROVIDER_NAME
        )

    def _build_translation_prompt(self, text: str, source_lang: str, target_lang: str) -> str:
        """
        Build a translation prompt for a single dubbing line.

        Args:
            text: The text to translate
            source_lang: Source language code
            target_lang: Target language code

        Returns:
            The complete prompt string
        """
        return f"""Translate the following line of dialogue from {source_lang} to {target_lang}.
Preserve the tone and style; it will be spoken by a voice actor over the original video,
so keep the length close to the original.
Return only the translation, with no explanations or quotation marks.

{text}"""

    def get_model_info(self) -> dict[str, Any]:
        """
        Get information about the Claude model being used.

        Returns:
            Dictionary with model information
        """
        return {
            "name": self.model,
            "provider": PROVIDER_NAME,
            "max_tokens": 1024,
            "supports_streaming": False,
        }
