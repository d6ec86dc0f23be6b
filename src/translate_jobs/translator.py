"""
Post translator using LLM providers.

The translation collaborator of the job engine: turns one piece of post
content into the target language and reports success or failure without
raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from translate_jobs.llm import LLMProvider

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "ar": "Arabic",
    "de": "German",
    "es": "Spanish",
    "fa": "Persian",
    "fi": "Finnish",
    "fr": "French",
    "he": "Hebrew",
    "it": "Italian",
    "ja": "Japanese",
    "nl": "Dutch",
    "pt": "Portuguese",
    "ru": "Russian",
    "sv": "Swedish",
    "zh": "Chinese",
}

RTL_LANGUAGES = {"ar", "he", "fa", "ur"}


def language_name(code: str) -> str:
    """Human-readable name for a language code (the code itself if unknown)."""
    return LANGUAGE_NAMES.get(code.split("_")[0].split("-")[0].lower(), code)


@dataclass
class TranslationOutcome:
    """Result of one translation call."""

    success: bool
    translated_content: str = ""
    error: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


class PostTranslator:
    """Translates post content through an LLM provider."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ):
        self._provider = provider
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._provider.model

    @property
    def provider_name(self) -> str:
        return self._provider.name

    async def translate(
        self,
        content: str,
        source_lang: str,
        target_lang: str,
    ) -> TranslationOutcome:
        """
        Translate content from source_lang to target_lang.

        Provider errors are reported as an unsuccessful outcome, never raised.
        """
        if not content.strip():
            return TranslationOutcome(success=True, translated_content="")

        try:
            response = await self._provider.chat(
                system_prompt=self._get_system_prompt(source_lang, target_lang),
                user_prompt=self._build_prompt(content),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            logger.error(
                "Translation %s -> %s failed via %s: %s",
                source_lang,
                target_lang,
                self._provider.name,
                e,
            )
            return TranslationOutcome(success=False, error=f"{type(e).__name__}: {e}")

        if not response.content:
            return TranslationOutcome(
                success=False,
                error="Empty response from translation provider",
                usage=response.usage,
            )

        return TranslationOutcome(
            success=True,
            translated_content=response.content,
            usage=response.usage,
        )

    def _build_prompt(self, content: str) -> str:
        return f"CONTENT TO TRANSLATE:\n{content}"

    def _get_system_prompt(self, source_lang: str, target_lang: str) -> str:
        """System prompt for post translation, with a note on text direction."""
        source_name = language_name(source_lang)
        target_name = language_name(target_lang)

        direction_note = ""
        if (source_lang in RTL_LANGUAGES) != (target_lang in RTL_LANGUAGES):
            direction = "right-to-left" if target_lang in RTL_LANGUAGES else "left-to-right"
            direction_note = (
                f"\n7. {target_name} is written {direction}: keep punctuation and "
                "inline markup readable in that direction"
            )

        return f"""You are a professional translator specialized in web content.
Your task is to translate text from {source_name} to {target_name} while:

1. Preserving HTML formatting and shortcodes exactly
2. Translating only textual content, never HTML tags or attributes
3. Maintaining the style and tone of the source text
4. Adapting cultural references where necessary
5. Keeping URLs, code snippets, and file paths unchanged
6. Ensuring the translation flows naturally in {target_name}{direction_note}

Provide only the translation without any explanations or notes."""
