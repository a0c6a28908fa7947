"""
Shared test fixtures for the news RAG test suite.

Provides: test configuration, an in-memory Redis double with a controllable
clock, retrieval candidate factories and mocked pipeline clients.
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from news_rag.models import RAGMetadata, RAGResult, RetrievalCandidate, Source
from news_rag.store import SessionStore


TEST_MODEL = "test-provider/test-model"


class FakeRedis:
    """
    In-memory stand-in for ``redis.asyncio.Redis``.

    Expiry is evaluated against ``now``, which tests move with ``advance``.
    Setting ``fail`` makes every command raise a connection error.
    """

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expires_at: Dict[str, Optional[float]] = {}
        self.now = 0.0
        self.fail = False
        self.write_delay = 0.0
        self.read_delay = 0.0
        self.set_calls = 0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _alive(self, key: str) -> bool:
        if key not in self.data:
            return False
        deadline = self.expires_at.get(key)
        if deadline is not None and self.now >= deadline:
            del self.data[key]
            del self.expires_at[key]
            return False
        return True

    async def get(self, key: str):
        self._check()
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        return self.data[key] if self._alive(key) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self._check()
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.data[key] = value
        self.expires_at[key] = self.now + ex if ex else None
        self.set_calls += 1
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                del self.data[key]
                del self.expires_at[key]
                removed += 1
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self.expires_at[key] = self.now + seconds
        return True

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def config() -> Dict[str, Any]:
    """Configuration dictionary as produced by ``load_and_validate_env``."""
    return {
        "JINA_API_KEY": "jina_test_key",
        "OPENROUTER_API_KEY": "sk-or-test-key",
        "PINECONE_API_KEY": "pc-test-key",
        "PINECONE_INDEX_NAME": "news-articles",
        "REDIS_URL": "redis://localhost:6379/0",
        "EMBEDDING_MODEL": "jina-embeddings-v2-base-en",
        "EMBEDDING_DIMENSION": 768,
        "EMBEDDING_TIMEOUT": 15,
        "GENERATION_MODEL": TEST_MODEL,
        "GENERATION_BASE_URL": "https://openrouter.ai/api/v1",
        "GENERATION_TIMEOUT": 30,
        "GENERATION_MAX_RETRIES": 3,
        "GENERATION_RETRY_DELAY": 0.0,
        "RETRIEVAL_TOP_K": 5,
        "RELEVANCE_THRESHOLD": 0.7,
        "VECTOR_SEARCH_TIMEOUT": 10,
        "SESSION_TTL_SECONDS": 3600,
        "CACHE_TIMEOUT": 5,
        "ENVIRONMENT": "test",
        "CORS_ORIGINS": "http://localhost:3000",
        "LOG_LEVEL": "DEBUG",
    }


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def session_store(fake_redis: FakeRedis, config: Dict[str, Any]) -> SessionStore:
    return SessionStore(fake_redis, config=config)


@pytest.fixture
def make_candidate():
    """Factory for retrieval candidates with a news payload."""

    def _make(doc_id: str, score: float, **payload: Any) -> RetrievalCandidate:
        defaults = {
            "title": f"Article {doc_id}",
            "content": f"Full text of article {doc_id}.",
            "url": f"https://news.example.com/{doc_id}",
            "source": "BBC News",
            "publishedDate": "2025-09-17T12:15:00Z",
        }
        defaults.update(payload)
        return RetrievalCandidate(id=doc_id, score=score, payload=defaults)

    return _make


@pytest.fixture
def make_match():
    """Factory for Pinecone query matches."""

    def _make(doc_id: str, score: float, **metadata: Any) -> SimpleNamespace:
        defaults = {
            "title": f"Article {doc_id}",
            "content": f"Full text of article {doc_id}.",
            "url": f"https://news.example.com/{doc_id}",
            "source": "BBC News",
            "publishedDate": "2025-09-17T12:15:00Z",
        }
        defaults.update(metadata)
        return SimpleNamespace(id=doc_id, score=score, metadata=defaults)

    return _make


@pytest.fixture
def mock_index():
    """Pinecone index handle returning no matches by default."""
    index = MagicMock()
    index.query.return_value = SimpleNamespace(matches=[])
    return index


@pytest.fixture
def mock_embedding_client():
    client = MagicMock()
    client.model = "jina-embeddings-v2-base-en"
    client.dimension = 768
    client.embed = AsyncMock(return_value=[0.1] * 768)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_generator():
    generator = MagicMock()
    generator.model = TEST_MODEL
    generator.generate = AsyncMock(return_value="Here is a summary of today's technology news.")
    return generator


def chat_completion(content: Optional[str]) -> SimpleNamespace:
    """Chat-completion response shaped like the OpenAI SDK's."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=42),
    )


@pytest.fixture
def completion():
    return chat_completion


@pytest.fixture
def rag_result():
    """Factory for orchestrator results."""

    def _make(answer: str = "Markets rallied after the central bank decision.",
              sources: Optional[List[Source]] = None,
              model_used: str = TEST_MODEL) -> RAGResult:
        sources = sources if sources is not None else [
            Source(
                title="Markets rally",
                source="Reuters",
                url="https://news.example.com/markets",
                snippet="Stocks rose sharply...",
                relevance_score=0.82,
            )
        ]
        return RAGResult(
            answer=answer,
            sources=sources,
            metadata=RAGMetadata(
                processing_time_ms=120,
                documents_found=len(sources),
                sources_used=len(sources),
                query_length=20,
                model_used=model_used,
            ),
        )

    return _make
