"""
Context assembly and prompt construction.

Orders retrieval candidates deterministically, renders them into the context
block handed to the generative model, and builds the parallel list of sources
shown to the user.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import Message, MessageRole, RetrievalCandidate, Source


SNIPPET_LENGTH = 150
MAX_HISTORY_MESSAGES = 4
MAX_HISTORY_MESSAGE_CHARS = 500

NO_CONTEXT_TEXT = "No specific recent news found for this query."

SYSTEM_PROMPT = """You are a helpful news assistant that provides accurate, up-to-date information based on reliable sources.

Instructions:
- Answer the user's question using only the provided context
- Be informative and comprehensive
- If the context doesn't fully answer the question, acknowledge this
- Maintain a professional, journalistic tone
- Focus on factual information
- Don't make up information not in the sources

Context from news sources:
{context}
{history}
User Question: {query}

Please provide a helpful response based on the available information:"""


@dataclass
class AssembledContext:
    """Prompt context block plus the sources it was built from, index-aligned."""
    context_block: str
    sources: List[Source] = field(default_factory=list)
    candidates: List[RetrievalCandidate] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.candidates


def _payload_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def candidate_title(candidate: RetrievalCandidate) -> str:
    return _payload_text(candidate.payload, "title") or "Untitled"


def candidate_origin(candidate: RetrievalCandidate) -> str:
    return _payload_text(candidate.payload, "source") or "Unknown Source"


def candidate_published(candidate: RetrievalCandidate) -> Optional[str]:
    payload = candidate.payload
    return _payload_text(payload, "publishedDate") or _payload_text(payload, "publishedAt")


def candidate_snippet(candidate: RetrievalCandidate) -> str:
    """Stored snippet, else the head of the content."""
    snippet = _payload_text(candidate.payload, "snippet")
    if snippet:
        return snippet
    content = _payload_text(candidate.payload, "content") or ""
    return content[:SNIPPET_LENGTH]


def to_source(candidate: RetrievalCandidate) -> Source:
    return Source(
        title=candidate_title(candidate),
        source=candidate_origin(candidate),
        url=_payload_text(candidate.payload, "url") or "#",
        snippet=candidate_snippet(candidate),
        relevance_score=min(1.0, max(0.0, candidate.score)),
        published_at=candidate_published(candidate),
    )


class ContextAssembler:
    """Builds the prompt context and source list from retrieval candidates."""

    def assemble(self, candidates: List[RetrievalCandidate]) -> AssembledContext:
        """
        Order candidates by descending score and render them.

        ``sorted`` is stable, so equal scores keep their retrieval order.
        Content is used as stored; nothing is truncated or re-ranked here.

        Args:
            candidates: Relevant candidates from the retriever

        Returns:
            AssembledContext: Context block and one source per candidate
        """
        ordered = sorted(candidates, key=lambda c: c.score, reverse=True)

        blocks = []
        for index, candidate in enumerate(ordered, 1):
            payload = candidate.payload
            content = (
                _payload_text(payload, "content")
                or _payload_text(payload, "snippet")
                or "No content available"
            )
            blocks.append(
                f"Source {index}: {candidate_title(candidate)}\n"
                f"Content: {content}\n"
                f"Published: {candidate_published(candidate) or 'Unknown date'}"
            )

        return AssembledContext(
            context_block="\n\n".join(blocks),
            sources=[to_source(c) for c in ordered],
            candidates=ordered,
        )


def format_history(history: Optional[List[Message]]) -> str:
    """Render the most recent turns for the prompt."""
    if not history:
        return ""

    lines = []
    for message in history[-MAX_HISTORY_MESSAGES:]:
        if message.role not in (MessageRole.USER, MessageRole.BOT):
            continue
        content = message.content
        if len(content) > MAX_HISTORY_MESSAGE_CHARS:
            content = content[:MAX_HISTORY_MESSAGE_CHARS] + "..."
        speaker = "User" if message.role == MessageRole.USER else "Assistant"
        lines.append(f"{speaker}: {content}")

    if not lines:
        return ""
    return "\nRecent conversation:\n" + "\n".join(lines) + "\n"


def build_prompt(query: str, context: AssembledContext, history: Optional[List[Message]] = None) -> str:
    """Fill the system prompt with context, recent history and the question."""
    return SYSTEM_PROMPT.format(
        context=context.context_block or NO_CONTEXT_TEXT,
        history=format_history(history),
        query=query,
    )
