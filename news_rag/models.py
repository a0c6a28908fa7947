"""
Pydantic data models for the news RAG chatbot.

This module defines the data structures shared by the pipeline and the
transport adapters: conversation messages and their sources, transient
retrieval/orchestration values, the session cache record and the
request/response models of the HTTP API.

Wire formats use camelCase aliases (``sessionId``, ``modelUsed`` ...); Python
code uses the snake_case field names.
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, validator
from pydantic.alias_generators import to_camel

from .utils import utc_now


UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)


def is_valid_session_id(value: Any) -> bool:
    """Session ids are UUID strings."""
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def new_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, Enum):
    """Message roles in a conversation."""
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class ModelUsed(str, Enum):
    """Which producer wrote a bot answer (the live model is recorded by name)."""
    FALLBACK_TEMPLATE = "fallback-template"
    ERROR_FALLBACK = "error-fallback"


class Source(BaseModel):
    """A retrieval hit surfaced to the end user."""
    title: str = Field(..., description="Article title")
    source: str = Field(..., description="Origin label, e.g. the publisher")
    url: str = Field(..., description="Link to the article")
    snippet: str = Field("", description="Short preview of the content")
    relevance_score: float = Field(..., ge=0.0, le=1.0, description="Similarity score clamped to [0,1]")
    published_at: Optional[str] = Field(None, description="Publication timestamp if known")

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
        json_schema_extra = {
            "example": {
                "title": "AI can forecast your future health",
                "source": "BBC News",
                "url": "https://www.bbc.com/news/technology-ai-health",
                "snippet": "Researchers have developed an AI system...",
                "relevanceScore": 0.85,
                "publishedAt": "2025-09-17T12:15:00Z"
            }
        }


class Message(BaseModel):
    """Individual message in a conversation. Immutable once created."""
    id: str = Field(default_factory=new_id, description="Unique message identifier")
    role: MessageRole = Field(..., description="Role of the message sender")
    content: str = Field(..., min_length=1, description="Message content")
    timestamp: datetime = Field(default_factory=utc_now, description="Message timestamp")
    sources: Optional[List[Source]] = Field(None, description="Sources backing a bot answer")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Processing time, model used, error flag")

    @validator('sources')
    def validate_sources(cls, v, values):
        if v is not None and values.get('role') != MessageRole.BOT:
            raise ValueError('Only bot messages carry sources')
        return v

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "role": "bot",
                "content": "Two flying cars collided during an air show rehearsal...",
                "timestamp": "2025-09-17T10:30:45.123Z",
                "sources": [],
                "metadata": {"modelUsed": "google/gemini-flash-1.5", "processingTimeMs": 1830}
            }
        }


class RetrievalCandidate(BaseModel):
    """A scored document returned by the vector index for one orchestration call."""
    id: str = Field(..., description="Document id in the index")
    score: float = Field(..., description="Cosine similarity reported by the index")
    payload: Dict[str, Any] = Field(default_factory=dict, description="title/content/url/source/publishedDate")


class RAGMetadata(BaseModel):
    """Metadata attached to every orchestrator result."""
    processing_time_ms: int = Field(0, ge=0, description="Wall time of the orchestration")
    documents_found: int = Field(0, ge=0, description="Candidates that passed the relevance filter")
    sources_used: int = Field(0, ge=0, description="Sources returned to the user")
    query_length: int = Field(0, ge=0, description="Length of the normalized query")
    model_used: str = Field(..., description="Model name, 'fallback-template' or 'error-fallback'")
    error: Optional[str] = Field(None, description="Set when the answer is a fallback")
    total_session_messages: Optional[int] = Field(None, description="Session size after the turn was saved")
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        protected_namespaces = ()


class RAGResult(BaseModel):
    """Final answer, its sources and processing metadata."""
    answer: str = Field(..., min_length=1)
    sources: List[Source] = Field(default_factory=list)
    metadata: RAGMetadata

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionRecord(BaseModel):
    """Value stored under ``session:<sessionId>`` in the cache."""
    session_id: str
    messages: List[Message] = Field(default_factory=list)
    last_updated: str = Field(default_factory=lambda: utc_now().isoformat())
    message_count: int = Field(0, ge=0)

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionStatistics(BaseModel):
    """Summary counters for a session history."""
    total_messages: int = 0
    user_messages: int = 0
    bot_messages: int = 0
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    session_age_ms: int = 0

    @classmethod
    def from_messages(cls, messages: List[Message]) -> "SessionStatistics":
        if not messages:
            return cls()

        first, last = messages[0].timestamp, messages[-1].timestamp
        return cls(
            total_messages=len(messages),
            user_messages=sum(1 for m in messages if m.role == MessageRole.USER),
            bot_messages=sum(1 for m in messages if m.role == MessageRole.BOT),
            created_at=first,
            last_activity=last,
            session_age_ms=max(0, int((utc_now() - first).total_seconds() * 1000)),
        )

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# API models

class ChatRequest(BaseModel):
    """Request model for the chat send endpoint."""
    session_id: str = Field(..., description="Session UUID")
    message: str = Field(..., min_length=1, max_length=1000, description="User message content")

    @validator('session_id')
    def validate_session_id(cls, v):
        if not is_valid_session_id(v):
            raise ValueError('sessionId must be a valid UUID')
        return v

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "sessionId": "9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d",
                "message": "What happened in tech today?"
            }
        }


class ChatResponse(BaseModel):
    """Response model for the chat send endpoint."""
    answer: str
    sources: List[Source] = Field(default_factory=list)
    metadata: RAGMetadata
    session_id: str
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ChatHistoryResponse(BaseModel):
    session_id: str
    messages: List[Message]
    message_count: int
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionCreateResponse(BaseModel):
    session_id: str
    message: str = "Session created successfully"
    expires_in: int
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionDetailResponse(BaseModel):
    session_id: str
    messages: List[Message]
    statistics: SessionStatistics
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionDeleteResponse(BaseModel):
    deleted: bool
    session_id: str
    cleared_messages: int
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Diagnostic detail outside production")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "error": "INVALID_INPUT",
                "message": "Query is too short (minimum 3 characters)",
                "details": {"field": "message"},
                "requestId": "1a2b3c4d",
                "timestamp": "2025-09-17T10:30:45.123Z"
            }
        }


class HealthResponse(BaseModel):
    """Health check response model."""
    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall system health status")
    timestamp: str = Field(..., description="Health check timestamp")
    version: str = Field(default="1.0.0", description="Application version")
    uptime_seconds: int = Field(0, ge=0)
    memory_mb: float = Field(0.0, ge=0.0, description="Resident memory of the process")
    services: Dict[str, str] = Field(default_factory=dict, description="Individual service health statuses")
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Detailed health check results")

    class Config:
        alias_generator = to_camel
        populate_by_name = True
