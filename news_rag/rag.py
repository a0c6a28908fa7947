"""
RAG (Retrieval-Augmented Generation) orchestration.

This module composes the pipeline clients into one request/response operation:

    Validating -> Embedding -> Retrieving -> Assembling -> Generating -> {Succeeded, FallenBack}

Every path past validation ends in a RAGResult. Embedding failure skips
retrieval, retrieval is fail-open, and generation failure is converted into a
template answer. Each external step is bounded by its own timeout.

ENVIRONMENT VARIABLES USED:
- EMBEDDING_TIMEOUT: Per-request embedding timeout (seconds)
- VECTOR_SEARCH_TIMEOUT: Vector search timeout (seconds)
- GENERATION_TIMEOUT, GENERATION_MAX_RETRIES, GENERATION_RETRY_DELAY: generation budget
- RETRIEVAL_TOP_K, RELEVANCE_THRESHOLD: retrieval parameters
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .context import AssembledContext, ContextAssembler, build_prompt
from .embeddings import EmbeddingClient, EmbeddingUnavailable
from .llm import GenerationClient, GenerationUnavailable, generate_fallback
from .models import Message, ModelUsed, RAGMetadata, RAGResult
from .utils import elapsed_ms, get_config, sanitize_for_logging
from .vector import PineconeRetriever


MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 1000

ERROR_FALLBACK_TEMPLATE = """I apologize, but I'm currently experiencing technical difficulties and cannot provide a detailed response to your question "{query}". This might be due to:

• High system load on AI services
• Temporary API limitations
• Network connectivity issues

Please try:
1. Asking a simpler or different question
2. Trying again in a few minutes
3. Checking major news websites directly for the latest information

Thank you for your patience!"""


class InvalidInput(ValueError):
    """Raised for a malformed query or session id."""

    def __init__(self, message: str, field: str = "message"):
        super().__init__(message)
        self.field = field


class PipelineStage(str, Enum):
    """States of one orchestration."""
    VALIDATING = "validating"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FALLEN_BACK = "fallen_back"


@dataclass(frozen=True)
class Succeeded:
    text: str


@dataclass(frozen=True)
class FellBack:
    text: str
    reason: str


GenerationOutcome = Union[Succeeded, FellBack]


def validate_query(query: Any) -> str:
    """
    Check and normalize a user query.

    Returns:
        str: The trimmed query

    Raises:
        InvalidInput: If the query is not a string or its trimmed length is outside [3, 1000]
    """
    if not isinstance(query, str) or not query.strip():
        raise InvalidInput("Query must be a non-empty string")

    clean_query = query.strip()
    if len(clean_query) < MIN_QUERY_LENGTH:
        raise InvalidInput(f"Query is too short (minimum {MIN_QUERY_LENGTH} characters)")
    if len(clean_query) > MAX_QUERY_LENGTH:
        raise InvalidInput(f"Query is too long (maximum {MAX_QUERY_LENGTH} characters)")
    return clean_query


def step_timeouts(config: Dict[str, Any]) -> Dict[PipelineStage, float]:
    """Per-step latency bounds covering each client's own retry budget."""
    embedding_timeout = float(config.get("EMBEDDING_TIMEOUT", 15))
    generation_timeout = float(config.get("GENERATION_TIMEOUT", 30))
    generation_retries = int(config.get("GENERATION_MAX_RETRIES", 3))
    generation_delay = float(config.get("GENERATION_RETRY_DELAY", 2.0))

    return {
        # 3 attempts with 1s, 2s pauses in between
        PipelineStage.EMBEDDING: embedding_timeout * EmbeddingClient.MAX_RETRIES + 3.0,
        PipelineStage.RETRIEVING: float(config.get("VECTOR_SEARCH_TIMEOUT", 10)) + 1.0,
        PipelineStage.GENERATING: (
            generation_timeout * generation_retries
            + generation_delay * sum(range(1, generation_retries))
        ),
    }


class RAGOrchestrator:
    """Runs one question through embed, retrieve, assemble and generate."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        retriever: PineconeRetriever,
        generator: GenerationClient,
        assembler: Optional[ContextAssembler] = None,
        config: Optional[Dict[str, Any]] = None,
        timeouts: Optional[Dict[PipelineStage, float]] = None,
    ):
        self.config = config if config is not None else get_config()
        self.embedding_client = embedding_client
        self.retriever = retriever
        self.generator = generator
        self.assembler = assembler or ContextAssembler()
        self.top_k = int(self.config.get("RETRIEVAL_TOP_K", 5))
        self.score_threshold = float(self.config.get("RELEVANCE_THRESHOLD", 0.7))
        self.timeouts = step_timeouts(self.config)
        if timeouts:
            self.timeouts.update(timeouts)

    @property
    def model_name(self) -> str:
        return self.generator.model

    async def _embed(self, query: str) -> Optional[List[float]]:
        """Query vector, or None when the embedding step fails."""
        try:
            return await asyncio.wait_for(
                self.embedding_client.embed(query),
                timeout=self.timeouts[PipelineStage.EMBEDDING],
            )
        except (EmbeddingUnavailable, asyncio.TimeoutError) as e:
            logger.warning("Embedding failed, skipping retrieval", error=str(e) or type(e).__name__)
            return None

    async def _retrieve(self, query_vector: List[float]):
        try:
            return await asyncio.wait_for(
                self.retriever.search(query_vector, top_k=self.top_k, score_threshold=self.score_threshold),
                timeout=self.timeouts[PipelineStage.RETRIEVING],
            )
        except asyncio.TimeoutError:
            logger.warning("Retrieval step timed out, continuing without context")
            return []

    async def _generate(
        self,
        query: str,
        context: AssembledContext,
        history: Optional[List[Message]],
    ) -> GenerationOutcome:
        """Generate with the model, or fall back to the template answer."""
        prompt = build_prompt(query, context, history)
        try:
            text = await asyncio.wait_for(
                self.generator.generate(prompt),
                timeout=self.timeouts[PipelineStage.GENERATING],
            )
            return Succeeded(text=text)
        except (GenerationUnavailable, asyncio.TimeoutError) as e:
            reason = str(e) or "Generation timed out"
            logger.warning("Generation failed, using fallback response", error=reason)
            return FellBack(text=generate_fallback(query, context.candidates), reason=reason)

    async def answer(
        self,
        query: Any,
        history: Optional[List[Message]] = None,
        session_id: Optional[str] = None,
    ) -> RAGResult:
        """
        Answer a question using retrieved news context.

        Args:
            query: User question
            history: Prior session messages, used for conversational context
            session_id: Session identifier for logging

        Returns:
            RAGResult: Answer, sources and processing metadata

        Raises:
            InvalidInput: If the query fails validation
        """
        start_time = time.perf_counter()
        stage = PipelineStage.VALIDATING
        clean_query = validate_query(query)

        logger.info(
            "Processing RAG query",
            session_id=session_id,
            query=sanitize_for_logging(clean_query, 100),
        )

        try:
            stage = PipelineStage.EMBEDDING
            query_vector = await self._embed(clean_query)

            candidates = []
            if query_vector is not None:
                stage = PipelineStage.RETRIEVING
                candidates = await self._retrieve(query_vector)

            stage = PipelineStage.ASSEMBLING
            context = self.assembler.assemble(candidates)

            stage = PipelineStage.GENERATING
            outcome = await self._generate(clean_query, context, history)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "RAG pipeline failed unexpectedly",
                stage=stage.value,
                error=str(e),
                error_type=type(e).__name__,
                session_id=session_id,
            )
            return RAGResult(
                answer=ERROR_FALLBACK_TEMPLATE.replace("{query}", clean_query),
                sources=[],
                metadata=RAGMetadata(
                    processing_time_ms=elapsed_ms(start_time),
                    query_length=len(clean_query),
                    model_used=ModelUsed.ERROR_FALLBACK.value,
                    error=str(e) or type(e).__name__,
                ),
            )

        if isinstance(outcome, Succeeded):
            stage = PipelineStage.SUCCEEDED
            model_used, error = self.model_name, None
        else:
            stage = PipelineStage.FALLEN_BACK
            model_used, error = ModelUsed.FALLBACK_TEMPLATE.value, outcome.reason

        metadata = RAGMetadata(
            processing_time_ms=elapsed_ms(start_time),
            documents_found=len(context.candidates),
            sources_used=len(context.sources),
            query_length=len(clean_query),
            model_used=model_used,
            error=error,
        )

        logger.info(
            "RAG query completed",
            session_id=session_id,
            stage=stage.value,
            model_used=model_used,
            documents_found=metadata.documents_found,
            processing_time_ms=metadata.processing_time_ms,
        )
        return RAGResult(answer=outcome.text, sources=context.sources, metadata=metadata)
