"""
Conversation gateway shared by the REST and WebSocket channels.

Both transports hand turns to ``ConversationGateway.send_turn``, which runs
load -> append user message -> answer -> append bot message -> save under the
session's lock and reports progress through an optional event listener.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .models import Message, MessageRole, RAGResult, SessionStatistics, is_valid_session_id, new_id
from .rag import InvalidInput, RAGOrchestrator, validate_query
from .store import SessionLockRegistry, SessionStore, SessionStoreUnavailable
from .utils import get_current_timestamp, utc_now


ACTIVE_WINDOW = timedelta(minutes=5)
TIMELINE_LENGTH = 10

# (event name, payload)
TurnListener = Callable[[str, Any], Awaitable[None]]


class Channel(str, Enum):
    """Transport a turn arrived on."""
    REST = "rest"
    WEBSOCKET = "websocket"


@dataclass
class TurnResult:
    """Outcome of one conversation turn."""
    session_id: str
    user_message: Message
    bot_message: Message
    result: RAGResult
    total_messages: int


def require_session_id(session_id: Any) -> str:
    if not is_valid_session_id(session_id):
        raise InvalidInput("Invalid session ID format", field="sessionId")
    return session_id


def build_session_stats(session_id: str, messages: List[Message]) -> Dict[str, Any]:
    """Activity statistics for the session stats endpoint."""
    if not messages:
        return {"sessionId": session_id, "exists": False, "message": "Session not found or empty"}

    stats = SessionStatistics.from_messages(messages)
    bot_messages = [m for m in messages if m.role == MessageRole.BOT]

    return {
        "sessionId": session_id,
        "exists": True,
        "messageCount": {
            "total": stats.total_messages,
            "user": stats.user_messages,
            "bot": stats.bot_messages,
        },
        "session": {
            "createdAt": stats.created_at.isoformat(),
            "lastActivity": stats.last_activity.isoformat(),
            "durationMs": stats.session_age_ms,
            "isActive": utc_now() - stats.last_activity < ACTIVE_WINDOW,
        },
        "performance": {
            "responsesWithSources": sum(1 for m in bot_messages if m.sources),
            "totalSources": sum(len(m.sources or []) for m in bot_messages),
        },
        "timeline": [
            {
                "timestamp": m.timestamp.isoformat(),
                "role": m.role.value,
                "hasSources": bool(m.sources),
            }
            for m in messages[-TIMELINE_LENGTH:]
        ],
    }


def build_session_export(session_id: str, messages: List[Message]) -> Dict[str, Any]:
    return {
        "sessionId": session_id,
        "exportedAt": get_current_timestamp(),
        "messageCount": len(messages),
        "messages": [
            {
                "id": m.id,
                "role": m.role.value,
                "content": m.content,
                "timestamp": m.timestamp.isoformat(),
                "sources": [s.model_dump(mode="json", by_alias=True) for s in m.sources or []],
            }
            for m in messages
        ],
    }


class ConversationGateway:
    """Single load-append-save path for every inbound turn."""

    def __init__(
        self,
        store: SessionStore,
        orchestrator: RAGOrchestrator,
        locks: Optional[SessionLockRegistry] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.locks = locks or SessionLockRegistry()

    async def _emit(self, listener: Optional[TurnListener], event: str, data: Any) -> None:
        """Deliver an event; a failing listener never affects the turn."""
        if listener is None:
            return
        try:
            await listener(event, data)
        except Exception as e:
            logger.warning("Turn event delivery failed", event_name=event, error=str(e))

    async def _save(self, session_id: str, messages: List[Message]) -> None:
        """
        Persist the session even if the calling task is cancelled mid-write.

        The write runs as its own task; cancelling the caller waits for it to
        finish before the cancellation propagates.
        """
        save_task = asyncio.ensure_future(self.store.save(session_id, messages))
        try:
            await asyncio.shield(save_task)
        except asyncio.CancelledError:
            try:
                await save_task
            except Exception as e:
                logger.error("Session write failed after cancellation", session_id=session_id, error=str(e))
            raise

    async def send_turn(
        self,
        session_id: Any,
        message: Any,
        channel: Channel = Channel.REST,
        listener: Optional[TurnListener] = None,
    ) -> TurnResult:
        """
        Process one user turn end to end.

        Concurrent turns for the same session run one after another; each sees
        the history written by the previous one.

        Args:
            session_id: Session UUID
            message: User message text
            channel: Transport the turn arrived on
            listener: Receives ``bot_typing`` and ``new_message`` events

        Returns:
            TurnResult: The appended messages and the orchestrator result

        Raises:
            InvalidInput: For a malformed session id or message
            SessionStoreUnavailable: If history can't be read or the turn can't be saved
        """
        require_session_id(session_id)
        query = validate_query(message)

        async with self.locks.locked(session_id):
            history = await self.store.load(session_id, strict=True)

            user_message = Message(role=MessageRole.USER, content=query, metadata={"channel": channel.value})

            await self._emit(listener, "bot_typing", True)
            try:
                result = await self.orchestrator.answer(query, history=history, session_id=session_id)
            except BaseException:
                await self._emit(listener, "bot_typing", False)
                raise

            bot_message = Message(
                role=MessageRole.BOT,
                content=result.answer,
                sources=result.sources,
                metadata={
                    "processingTimeMs": result.metadata.processing_time_ms,
                    "documentsFound": result.metadata.documents_found,
                    "modelUsed": result.metadata.model_used,
                    "error": result.metadata.error is not None,
                },
            )

            messages = [*history, user_message, bot_message]
            try:
                await self._save(session_id, messages)
            except BaseException:
                await self._emit(listener, "bot_typing", False)
                raise

        result.metadata.total_session_messages = len(messages)

        await self._emit(listener, "new_message", user_message)
        await self._emit(listener, "new_message", bot_message)
        await self._emit(listener, "bot_typing", False)

        logger.info(
            "Turn completed",
            session_id=session_id,
            channel=channel.value,
            model_used=result.metadata.model_used,
            total_messages=len(messages),
        )
        return TurnResult(
            session_id=session_id,
            user_message=user_message,
            bot_message=bot_message,
            result=result,
            total_messages=len(messages),
        )

    async def create_session(self) -> str:
        """Create an empty session and return its id."""
        session_id = new_id()
        await self.store.save(session_id, [])
        logger.info("Session created", session_id=session_id)
        return session_id

    async def history(self, session_id: Any, renew: bool = False) -> List[Message]:
        """Read a session's messages, optionally renewing its TTL when it has any."""
        require_session_id(session_id)
        messages = await self.store.load(session_id)
        if renew and messages:
            try:
                await self.store.renew_ttl(session_id)
            except SessionStoreUnavailable as e:
                logger.warning("Session TTL renewal failed", session_id=session_id, error=str(e))
        return messages

    async def clear(self, session_id: Any) -> Tuple[bool, int]:
        """
        Delete a session.

        Returns:
            Tuple[bool, int]: Whether a record was deleted, and how many messages it held
        """
        require_session_id(session_id)
        async with self.locks.locked(session_id):
            cleared_messages = len(await self.store.load(session_id))
            deleted = await self.store.delete(session_id)
        return deleted, cleared_messages
