"""
OpenRouter LLM client and template fallback generation.

This module provides:
- OpenRouter chat-completion client with fixed decoding parameters
- Retry with increasing backoff for transient provider failures
- Response validation (empty or too-short answers are retried)
- A pure, template-based fallback answer that cannot fail
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from openai import AsyncOpenAI

from .context import candidate_origin, candidate_snippet, candidate_title
from .models import RetrievalCandidate
from .utils import get_config, Timer


class GenerationUnavailable(Exception):
    """Raised when the model produced no usable answer after all retries."""
    pass


class NonRetryableGenerationError(GenerationUnavailable):
    """Raised for request-class failures that a retry cannot fix."""
    pass


RETRYABLE_MARKERS = ("503", "overloaded", "quota", "rate limit")

MIN_RESPONSE_LENGTH = 10

GENERATION_CONFIG = {
    "temperature": 0.7,
    "top_p": 0.95,
    "max_tokens": 2048,
}

# Provider-side parameters forwarded through OpenRouter
PROVIDER_PARAMS = {
    "top_k": 40,
    "safety_settings": [
        {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
        {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
        {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
        {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    ],
}


class InvalidResponseError(Exception):
    """The model answered, but with nothing usable."""
    pass


def is_retryable_error(error: Exception) -> bool:
    """Transient provider conditions: HTTP 503, overload, quota or rate limiting."""
    if isinstance(error, InvalidResponseError):
        return True
    if getattr(error, "status_code", None) == 503:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


class GenerationClient:
    """OpenRouter client for answer generation."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        client: Optional[AsyncOpenAI] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.config = config if config is not None else get_config()
        self.model = self.config.get("GENERATION_MODEL", "google/gemini-flash-1.5")
        self.timeout = float(self.config.get("GENERATION_TIMEOUT", 30))
        self.max_retries = max_retries if max_retries is not None else int(self.config.get("GENERATION_MAX_RETRIES", 3))
        self.base_delay = base_delay if base_delay is not None else float(self.config.get("GENERATION_RETRY_DELAY", 2.0))

        self.client = client or AsyncOpenAI(
            base_url=self.config.get("GENERATION_BASE_URL", "https://openrouter.ai/api/v1"),
            api_key=self.config.get("OPENROUTER_API_KEY"),
            timeout=self.timeout,
            max_retries=0,
            default_headers={"X-Title": "News RAG Chatbot"},
        )

        logger.info("Generation client initialized", generation_model=self.model, max_retries=self.max_retries)

    async def _complete(self, prompt: str) -> str:
        """One chat-completion call; returns validated text."""
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            extra_body=PROVIDER_PARAMS,
            **GENERATION_CONFIG,
        )

        if not response.choices:
            raise InvalidResponseError("No response choices returned from LLM")

        text = (response.choices[0].message.content or "").strip()
        if len(text) <= MIN_RESPONSE_LENGTH:
            raise InvalidResponseError("Empty or invalid response from LLM")

        logger.info(
            "LLM response generated successfully",
            model=self.model,
            response_length=len(text),
            tokens_used=getattr(getattr(response, "usage", None), "total_tokens", None),
        )
        return text

    async def generate(self, prompt: str) -> str:
        """
        Generate an answer for an assembled prompt.

        Args:
            prompt: Full prompt including context

        Returns:
            str: Generated answer text

        Raises:
            NonRetryableGenerationError: On a request-class failure, without retrying
            GenerationUnavailable: If every attempt failed
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(f"Generation attempt {attempt}/{self.max_retries}", model=self.model)
                with Timer("llm_generation"):
                    return await self._complete(prompt)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Generation attempt {attempt} failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    status=getattr(e, "status_code", None),
                )

                if not is_retryable_error(e):
                    raise NonRetryableGenerationError(f"LLM generation failed: {e}") from e

                if attempt < self.max_retries:
                    delay = self.base_delay * attempt
                    logger.info(f"Retrying generation in {delay:.1f}s")
                    await asyncio.sleep(delay)

        raise GenerationUnavailable(
            f"LLM generation failed after {self.max_retries} attempts: {last_error}"
        )


# Fallback templates, checked in order; first keyword match wins
FALLBACK_TEMPLATES = [
    {
        "bucket": "recency",
        "keywords": ["yesterday", "recent", "latest", "today", "news"],
        "template": (
            "I apologize, but I'm currently experiencing high load and cannot generate a detailed response. "
            "However, based on your query about \"{query}\", here are some relevant sources I found:\n\n"
            "{sources}\n\n"
            "For the most up-to-date information, I recommend checking these news sources directly. "
            "Please try your question again in a moment when the system load is lighter."
        ),
    },
    {
        "bucket": "technology",
        "keywords": ["technology", "tech", "ai", "artificial intelligence"],
        "template": (
            "I'm currently experiencing high demand and cannot provide a full analysis. "
            "Your question about \"{query}\" relates to technology news. Here are relevant sources I found:\n\n"
            "{sources}\n\n"
            "These sources contain the latest information on your topic. "
            "Please try again shortly for a more detailed AI-generated response."
        ),
    },
    {
        "bucket": "business",
        "keywords": ["business", "market", "finance", "economic"],
        "template": (
            "Due to high system load, I cannot provide a detailed business analysis right now. "
            "However, I found relevant sources for your query \"{query}\":\n\n"
            "{sources}\n\n"
            "For current business and financial news, please check these sources directly. "
            "Try asking again in a few moments."
        ),
    },
]

DEFAULT_FALLBACK_TEMPLATE = {
    "bucket": "general",
    "keywords": [],
    "template": (
        "I apologize, but due to high system demand, I cannot generate a detailed response for \"{query}\" right now. "
        "Here are relevant sources I found:\n\n"
        "{sources}\n\n"
        "Please check these sources for information and try your question again shortly."
    ),
}

NO_SOURCES_TEXT = "No specific sources found, but you can check major news outlets for the latest information."


def select_fallback_template(query: str) -> Dict[str, Any]:
    """Pick the first template with a keyword appearing as a whole word (or its plural) in the query."""
    normalized = (query or "").lower()
    for template in FALLBACK_TEMPLATES:
        if any(re.search(rf"\b{re.escape(keyword)}s?\b", normalized) for keyword in template["keywords"]):
            return template
    return DEFAULT_FALLBACK_TEMPLATE


def format_fallback_sources(candidates: Sequence[RetrievalCandidate]) -> str:
    if not candidates:
        return NO_SOURCES_TEXT
    return "\n\n".join(
        f"{index}. {candidate_title(c)} ({candidate_origin(c)})\n   {candidate_snippet(c) or 'No preview available'}"
        for index, c in enumerate(candidates, 1)
    )


def generate_fallback(query: str, candidates: Optional[List[RetrievalCandidate]] = None) -> str:
    """
    Build a deterministic answer from a template and the retrieved candidates.

    Pure and side-effect free; used when the model is unavailable.
    """
    template = select_fallback_template(query)
    return (
        template["template"]
        .replace("{query}", query or "")
        .replace("{sources}", format_fallback_sources(candidates or []))
    )
