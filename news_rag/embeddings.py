"""
Jina AI embedding client.

Turns text into fixed-dimension vectors for similarity search. The single-text
path retries with a linearly increasing delay and fails with
``EmbeddingUnavailable``; the batch path used by ingestion never fails and
substitutes a zero vector for any text that cannot be embedded.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from .utils import get_config, Timer


JINA_API_URL = "https://api.jina.ai/v1/embeddings"


class EmbeddingUnavailable(Exception):
    """Raised when the embedding provider cannot produce a vector after all retries."""
    pass


class EmbeddingClient:
    """Async client for the Jina embeddings endpoint."""

    MAX_TEXT_LENGTH = 8000
    MAX_RETRIES = 3

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_delay: float = 1.0,
        batch_delay: float = 0.5,
    ):
        """Initialize the embedding client.

        Args:
            config: Configuration dictionary (defaults to the global config)
            http_client: Pre-built HTTP client, mainly for tests
            retry_delay: Base delay in seconds, multiplied by the attempt number
            batch_delay: Pause between batch groups to stay under rate limits
        """
        self.config = config if config is not None else get_config()
        self.api_url = self.config.get("EMBEDDING_API_URL", JINA_API_URL)
        self.model = self.config.get("EMBEDDING_MODEL", "jina-embeddings-v2-base-en")
        self.dimension = int(self.config.get("EMBEDDING_DIMENSION", 768))
        self.timeout = float(self.config.get("EMBEDDING_TIMEOUT", 15))
        self.retry_delay = retry_delay
        self.batch_delay = batch_delay

        self._headers = {
            "Authorization": f"Bearer {self.config.get('JINA_API_KEY', '')}",
            "Content-Type": "application/json",
        }
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.timeout)

        logger.info("Embedding client initialized", model=self.model, dimension=self.dimension)

    @classmethod
    def clean_text(cls, text: Any) -> str:
        """Trim and cap text to the provider's input limit."""
        if not isinstance(text, str):
            text = str(text)
        return text.strip()[:cls.MAX_TEXT_LENGTH]

    def zero_vector(self) -> List[float]:
        """Placeholder vector for items the batch path could not embed."""
        return [0.0] * self.dimension

    async def _request_embeddings(self, inputs: List[str]) -> List[List[float]]:
        """
        Submit one embeddings request.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status
            ValueError: If the response body is malformed
        """
        response = await self.http_client.post(
            self.api_url,
            json={"model": self.model, "input": inputs},
            headers=self._headers,
            timeout=self.timeout,
        )
        response.raise_for_status()

        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list) or len(data) != len(inputs):
            raise ValueError("Invalid response format from embedding provider")

        embeddings = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or len(embedding) != self.dimension:
                raise ValueError("Embedding missing or of unexpected dimension")
            embeddings.append([float(x) for x in embedding])

        logger.debug(
            "Embeddings received",
            count=len(embeddings),
            tokens_used=(body.get("usage") or {}).get("total_tokens"),
        )
        return embeddings

    async def embed(self, text: str) -> List[float]:
        """
        Generate the embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            List[float]: Embedding vector

        Raises:
            ValueError: If text is empty
            EmbeddingUnavailable: If every attempt failed
        """
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Text must be a non-empty string")

        clean_text = self.clean_text(text)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                with Timer("embedding_generation"):
                    embeddings = await self._request_embeddings([clean_text])
                logger.info("Embedding generated", attempt=attempt, text_length=len(clean_text))
                return embeddings[0]

            except (httpx.HTTPError, ValueError, TypeError) as e:
                last_error = e
                logger.warning(
                    f"Embedding attempt {attempt}/{self.MAX_RETRIES} failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < self.MAX_RETRIES:
                    await asyncio.sleep(self.retry_delay * attempt)

        logger.error("Embedding generation failed", attempts=self.MAX_RETRIES, error=str(last_error))
        raise EmbeddingUnavailable(
            f"Failed to generate embedding after {self.MAX_RETRIES} attempts: {last_error}"
        )

    async def embed_batch(self, texts: List[str], batch_size: int = 10) -> List[List[float]]:
        """
        Generate embeddings for many texts, one request per group.

        A failed group is retried item by item through ``embed``; items that
        still fail get a zero vector so the result always lines up with the input.

        Args:
            texts: Texts to embed
            batch_size: Number of texts per request

        Returns:
            List[List[float]]: One vector per input text, in input order
        """
        if not texts:
            return []
        batch_size = max(1, batch_size)

        total_batches = (len(texts) + batch_size - 1) // batch_size
        embeddings: List[List[float]] = []
        placeholders = 0

        logger.info("Starting batch embedding generation", total_texts=len(texts), batch_size=batch_size)

        for batch_idx in range(0, len(texts), batch_size):
            batch = texts[batch_idx:batch_idx + batch_size]
            batch_num = (batch_idx // batch_size) + 1

            try:
                with Timer(f"batch_embedding_{batch_num}"):
                    embeddings.extend(await self._request_embeddings([self.clean_text(t) for t in batch]))
                logger.debug(f"Processed batch {batch_num}/{total_batches}")

            except Exception as e:
                logger.warning(
                    f"Batch {batch_num}/{total_batches} failed, embedding items individually",
                    error=str(e),
                    batch_size=len(batch),
                )
                for text in batch:
                    try:
                        embeddings.append(await self.embed(text))
                    except Exception as item_error:
                        logger.error("Individual embedding failed, using zero vector", error=str(item_error))
                        embeddings.append(self.zero_vector())
                        placeholders += 1

            if batch_idx + batch_size < len(texts) and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        logger.info(
            "Batch embedding generation completed",
            total_processed=len(embeddings),
            zero_vector_placeholders=placeholders,
        )
        return embeddings

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
