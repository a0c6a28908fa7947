"""
Pinecone vector index integration for news article retrieval.

This module provides:
- Similarity search by query vector with payload (metadata) included
- Relevance filtering applied client-side, independent of the backend
- Fail-open behaviour: any index failure yields an empty result set
- Index bootstrap (768-dimension, cosine) at startup

ENVIRONMENT VARIABLES USED:
- PINECONE_API_KEY: Pinecone API key
- PINECONE_INDEX_NAME: Name of the Pinecone index
- EMBEDDING_DIMENSION: Vector dimension of the index
- RETRIEVAL_TOP_K: Default number of neighbours to request
- RELEVANCE_THRESHOLD: Default minimum score kept after search
- VECTOR_SEARCH_TIMEOUT: Search timeout in seconds
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from loguru import logger
from pinecone import Pinecone, ServerlessSpec

from .models import RetrievalCandidate
from .utils import get_config, Timer


class RetrievalDegraded(Exception):
    """Raised internally when the index cannot be queried; never leaves this module."""
    pass


class PineconeRetriever:
    """
    Vector retriever over a Pinecone index.

    The index client is synchronous, so queries run on a small thread pool and
    are bounded with ``asyncio.wait_for``.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        index: Optional[Any] = None,
        pinecone_client: Optional[Pinecone] = None,
    ):
        """Initialize the retriever.

        Args:
            config: Configuration dictionary (defaults to the global config)
            index: Pre-built index handle, mainly for tests
            pinecone_client: Pre-built Pinecone client
        """
        self.config = config if config is not None else get_config()
        self.index_name = self.config.get("PINECONE_INDEX_NAME", "news-articles")
        self.dimension = int(self.config.get("EMBEDDING_DIMENSION", 768))
        self.default_top_k = int(self.config.get("RETRIEVAL_TOP_K", 5))
        self.default_threshold = float(self.config.get("RELEVANCE_THRESHOLD", 0.7))
        self.search_timeout = float(self.config.get("VECTOR_SEARCH_TIMEOUT", 10))

        self.pc_client = pinecone_client
        self.index = index
        self.thread_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="vector-ops")

    def _get_index(self) -> Any:
        """Connect lazily so an unreachable index never blocks startup."""
        if self.index is None:
            if self.pc_client is None:
                self.pc_client = Pinecone(api_key=self.config["PINECONE_API_KEY"], pool_threads=4)
            self.index = self.pc_client.Index(self.index_name)
            logger.info("Connected to Pinecone index", index_name=self.index_name)
        return self.index

    def ensure_index_exists(self, cloud: str = "aws", region: str = "us-east-1") -> bool:
        """
        Create the index if it doesn't exist.

        Returns:
            bool: True if the index was created, False if it already existed
        """
        if self.pc_client is None:
            self.pc_client = Pinecone(api_key=self.config["PINECONE_API_KEY"], pool_threads=4)

        existing_indexes = self.pc_client.list_indexes().names()
        if self.index_name in existing_indexes:
            logger.info("Pinecone index already exists", index_name=self.index_name)
            return False

        logger.info("Creating Pinecone index", index_name=self.index_name, dimension=self.dimension)
        self.pc_client.create_index(
            name=self.index_name,
            dimension=self.dimension,
            metric="cosine",
            spec=ServerlessSpec(cloud=cloud, region=region),
        )

        max_wait_attempts = 60
        for attempt in range(max_wait_attempts):
            if self.pc_client.describe_index(self.index_name).status["ready"]:
                self.index = self.pc_client.Index(self.index_name)
                logger.info("Pinecone index is ready", index_name=self.index_name)
                return True
            logger.debug(f"Index not ready yet (attempt {attempt + 1}), waiting...")
            time.sleep(5)

        raise RuntimeError(f"Index creation timeout after {max_wait_attempts * 5} seconds")

    def _query(self, query_vector: List[float], top_k: int) -> List[RetrievalCandidate]:
        """Run one similarity query and convert matches to candidates."""
        response = self._get_index().query(
            vector=query_vector,
            top_k=top_k,
            include_metadata=True,
            include_values=False,
        )

        candidates = []
        for match in getattr(response, "matches", None) or []:
            candidates.append(
                RetrievalCandidate(
                    id=str(match.id),
                    score=float(match.score or 0.0),
                    payload=dict(getattr(match, "metadata", None) or {}),
                )
            )
        return candidates

    async def _execute_search_with_timeout(self, query_vector: List[float], top_k: int) -> List[RetrievalCandidate]:
        """
        Execute the query on the thread pool, bounded by the search timeout.

        Raises:
            RetrievalDegraded: On timeout or any index error
        """
        loop = asyncio.get_running_loop()
        try:
            with Timer("vector_search"):
                return await asyncio.wait_for(
                    loop.run_in_executor(self.thread_pool, self._query, query_vector, top_k),
                    timeout=self.search_timeout,
                )
        except asyncio.TimeoutError:
            raise RetrievalDegraded(f"Search timed out after {self.search_timeout} seconds")
        except Exception as e:
            raise RetrievalDegraded(f"Search execution failed: {e}") from e

    async def search(
        self,
        query_vector: List[float],
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
    ) -> List[RetrievalCandidate]:
        """
        Find the nearest documents to a query vector.

        Candidates scoring strictly below ``score_threshold`` are dropped here,
        whatever the backend supports natively. Index failures are logged and
        answered with an empty list.

        Args:
            query_vector: Embedding of the query
            top_k: Number of neighbours to request
            score_threshold: Minimum score to keep

        Returns:
            List[RetrievalCandidate]: Relevant candidates in retrieval order
        """
        top_k = top_k if top_k is not None else self.default_top_k
        score_threshold = score_threshold if score_threshold is not None else self.default_threshold

        try:
            candidates = await self._execute_search_with_timeout(query_vector, top_k)
        except RetrievalDegraded as e:
            logger.warning("Vector search degraded, continuing without context", error=str(e))
            return []

        relevant = [c for c in candidates if c.score >= score_threshold]

        logger.info(
            "Vector search completed",
            requested=top_k,
            returned=len(candidates),
            relevant=len(relevant),
            score_threshold=score_threshold,
        )
        return relevant

    def get_index_stats(self) -> Dict[str, Any]:
        """Index statistics for health reporting."""
        stats = self._get_index().describe_index_stats()
        if hasattr(stats, "to_dict"):
            stats = stats.to_dict()
        return {
            "index_name": self.index_name,
            "dimension": stats.get("dimension"),
            "total_vector_count": stats.get("total_vector_count"),
        }

    def close(self) -> None:
        self.thread_pool.shutdown(wait=False)
