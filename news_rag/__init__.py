"""
News RAG Chatbot
Retrieval-augmented answers over a news index with session history
"""

__version__ = "1.0.0"

# Pipeline clients
from .embeddings import EmbeddingClient, EmbeddingUnavailable
from .vector import PineconeRetriever
from .context import ContextAssembler, AssembledContext, build_prompt
from .llm import GenerationClient, GenerationUnavailable, NonRetryableGenerationError, generate_fallback

# Orchestration
from .rag import (
    RAGOrchestrator,
    InvalidInput,
    PipelineStage,
    Succeeded,
    FellBack,
    validate_query
)

# Sessions
from .store import SessionStore, SessionStoreUnavailable, SessionLockRegistry
from .gateway import ConversationGateway, Channel, TurnResult

from .models import (
    Message, MessageRole, Source, RetrievalCandidate, RAGResult, RAGMetadata,
    SessionRecord, ChatRequest, ChatResponse, ErrorResponse
)
from .utils import initialize_app, ConfigurationError

__all__ = [
    # Pipeline clients
    "EmbeddingClient",
    "EmbeddingUnavailable",
    "PineconeRetriever",
    "ContextAssembler",
    "AssembledContext",
    "build_prompt",
    "GenerationClient",
    "GenerationUnavailable",
    "NonRetryableGenerationError",
    "generate_fallback",

    # Orchestration
    "RAGOrchestrator",
    "InvalidInput",
    "PipelineStage",
    "Succeeded",
    "FellBack",
    "validate_query",

    # Sessions
    "SessionStore",
    "SessionStoreUnavailable",
    "SessionLockRegistry",
    "ConversationGateway",
    "Channel",
    "TurnResult",

    # Models and Utils
    "Message",
    "MessageRole",
    "Source",
    "RetrievalCandidate",
    "RAGResult",
    "RAGMetadata",
    "SessionRecord",
    "ChatRequest",
    "ChatResponse",
    "ErrorResponse",
    "initialize_app",
    "ConfigurationError"
]
