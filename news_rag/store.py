"""
Redis-backed session storage.

This module provides:
- Session history persisted as one JSON record per session (``session:<id>``)
- Wholesale overwrite on save with a sliding TTL
- TTL renewal without touching content
- Per-session asyncio locks that serialize load-append-save sequences

The cache only supports whole-value writes, so two turns for the same session
that interleave would overwrite each other. Writers hold the session lock from
load to save.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as redis
from loguru import logger
from pydantic import ValidationError
from redis.exceptions import RedisError

from .models import Message, SessionRecord
from .utils import get_config, get_current_timestamp


class SessionStoreUnavailable(Exception):
    """Raised when the session cache cannot be read or written."""
    pass


class SessionStore:
    """Session message history in a TTL-bound Redis key."""

    KEY_PREFIX = "session:"

    def __init__(
        self,
        redis_client: Any,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the store.

        Args:
            redis_client: ``redis.asyncio.Redis`` (or compatible) client
            ttl: Session lifetime in seconds
            timeout: Per-command timeout in seconds
            config: Configuration dictionary (defaults to the global config)
        """
        config = config if config is not None else get_config()
        self.redis = redis_client
        self.ttl = int(ttl if ttl is not None else config.get("SESSION_TTL_SECONDS", 3600))
        self.timeout = float(timeout if timeout is not None else config.get("CACHE_TIMEOUT", 5))

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SessionStore":
        """Build a store with a fresh client for ``url``."""
        client = redis.from_url(url, decode_responses=True)
        logger.info("Redis client created", url=url.split("@")[-1])
        return cls(client, **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    async def _execute(self, operation: str, awaitable) -> Any:
        """Run one cache command under the store timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SessionStoreUnavailable(f"Cache {operation} timed out after {self.timeout} seconds") from e
        except (RedisError, OSError) as e:
            raise SessionStoreUnavailable(f"Cache {operation} failed: {e}") from e

    async def save(self, session_id: str, messages: List[Message], ttl: Optional[int] = None) -> SessionRecord:
        """
        Overwrite the session with ``messages`` and reset its expiry.

        Args:
            session_id: Session identifier
            messages: Complete message list, in order
            ttl: Expiry in seconds (defaults to the store TTL)

        Returns:
            SessionRecord: The record that was written

        Raises:
            SessionStoreUnavailable: If the write failed
        """
        record = SessionRecord(
            session_id=session_id,
            messages=list(messages),
            last_updated=get_current_timestamp(),
            message_count=len(messages),
        )
        payload = record.model_dump_json(by_alias=True)

        await self._execute("write", self.redis.set(self._key(session_id), payload, ex=ttl or self.ttl))

        logger.debug("Session saved", session_id=session_id, message_count=record.message_count)
        return record

    async def load(self, session_id: str, strict: bool = False) -> List[Message]:
        """
        Read the session's messages.

        A missing or expired session is an empty list. Cache failures degrade
        to an empty list too, unless ``strict`` is set; writers load strictly
        so a failed read can't be followed by a save that wipes the history.

        Raises:
            SessionStoreUnavailable: On cache failure when ``strict`` is True
        """
        try:
            raw = await self._execute("read", self.redis.get(self._key(session_id)))
        except SessionStoreUnavailable as e:
            if strict:
                raise
            logger.error("Failed to load session, returning empty history", session_id=session_id, error=str(e))
            return []

        if raw is None:
            return []

        try:
            record = SessionRecord.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as e:
            logger.error("Corrupt session record ignored", session_id=session_id, error=str(e))
            return []

        return record.messages

    async def delete(self, session_id: str) -> bool:
        """Remove the session. Returns True if a record was actually deleted."""
        deleted = await self._execute("delete", self.redis.delete(self._key(session_id)))
        logger.info("Session deleted", session_id=session_id, deleted=deleted == 1)
        return deleted == 1

    async def renew_ttl(self, session_id: str, ttl: Optional[int] = None) -> bool:
        """Reset the expiry without altering content. False if the session doesn't exist."""
        renewed = await self._execute("expire", self.redis.expire(self._key(session_id), ttl or self.ttl))
        return bool(renewed)

    async def ping(self) -> bool:
        return bool(await self._execute("ping", self.redis.ping()))

    async def close(self) -> None:
        close = getattr(self.redis, "aclose", None) or getattr(self.redis, "close", None)
        if close is not None:
            await close()


class SessionLockRegistry:
    """
    One ``asyncio.Lock`` per active session id.

    Entries are reference-counted and dropped once no task holds or awaits
    the lock, so the registry only grows with concurrently active sessions.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if not self._holders[session_id]:
                del self._holders[session_id]
                del self._locks[session_id]
