"""FastAPI application entry point for the news RAG chatbot.

This module provides:
- Composition root wiring the pipeline clients, session store and gateway
- Chat and session REST endpoints
- WebSocket channel with per-session rooms
- Error handling, request logging and CORS
- Health check with dependency status and process memory
"""

import asyncio
import json
import os
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import psutil
import uvicorn
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from .embeddings import EmbeddingClient
from .gateway import (
    Channel, ConversationGateway, build_session_export, build_session_stats, require_session_id
)
from .llm import GenerationClient
from .models import (
    ChatHistoryResponse, ChatRequest, ChatResponse, ErrorResponse, HealthResponse,
    SessionCreateResponse, SessionDeleteResponse, SessionDetailResponse, SessionStatistics
)
from .rag import InvalidInput, RAGOrchestrator
from .store import SessionStore, SessionStoreUnavailable
from .utils import ConfigurationError, OPTIONAL_VARS, get_current_timestamp, initialize_app, sanitize_for_logging
from .vector import PineconeRetriever


APP_VERSION = "1.0.0"
HEALTH_CHECK_TIMEOUT = 5.0


@dataclass
class ServiceContainer:
    """Process-wide service instances, built once at startup."""
    config: Dict[str, Any]
    store: SessionStore
    embedding_client: EmbeddingClient
    retriever: PineconeRetriever
    generator: GenerationClient
    orchestrator: RAGOrchestrator
    gateway: ConversationGateway

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ServiceContainer":
        store = SessionStore.from_url(config["REDIS_URL"], config=config)
        embedding_client = EmbeddingClient(config)
        retriever = PineconeRetriever(config)
        generator = GenerationClient(config)
        orchestrator = RAGOrchestrator(embedding_client, retriever, generator, config=config)
        return cls(
            config=config,
            store=store,
            embedding_client=embedding_client,
            retriever=retriever,
            generator=generator,
            orchestrator=orchestrator,
            gateway=ConversationGateway(store, orchestrator),
        )

    async def close(self) -> None:
        await self.embedding_client.aclose()
        await self.store.close()
        self.retriever.close()


class ConnectionManager:
    """Tracks WebSocket connections per session room."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    def join(self, session_id: str, websocket: WebSocket) -> None:
        self.rooms[session_id].add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        for session_id in list(self.rooms):
            self.rooms[session_id].discard(websocket)
            if not self.rooms[session_id]:
                del self.rooms[session_id]

    async def send(self, websocket: WebSocket, event: str, data: Any) -> None:
        await websocket.send_json({"event": event, "data": jsonable_encoder(data, by_alias=True)})

    async def broadcast(self, session_id: str, event: str, data: Any) -> None:
        for websocket in list(self.rooms.get(session_id, ())):
            try:
                await self.send(websocket, event, data)
            except Exception as e:
                logger.warning("Dropping unreachable WebSocket", session_id=session_id, error=str(e))
                self.disconnect(websocket)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_gateway(request: Request) -> ConversationGateway:
    return request.app.state.container.gateway


def _error_response(request: Request, status_code: int, error: str, message: str, exc: Exception) -> JSONResponse:
    """Standard error body; diagnostic details are withheld in production."""
    container = getattr(request.app.state, "container", None)
    environment = container.config.get("ENVIRONMENT", "development") if container else "development"
    details = None
    if environment != "production":
        details = {"error": str(exc), "type": type(exc).__name__}
        if isinstance(exc, InvalidInput):
            details["field"] = exc.field

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            details=details,
            request_id=getattr(request.state, "request_id", None),
        ).model_dump(mode="json", by_alias=True, exclude_none=True),
    )


# Chat endpoints

chat_router = APIRouter(prefix="/api/chat", tags=["chat"])


@chat_router.get("/")
async def chat_info():
    """Chat service information."""
    return {
        "service": "News RAG Chat",
        "status": "running",
        "endpoints": {
            "send": "POST /api/chat/send",
            "history": "GET /api/chat/history/{sessionId}",
        },
        "timestamp": get_current_timestamp(),
    }


@chat_router.post("/send", response_model=ChatResponse)
async def send_message(request: ChatRequest, gateway: ConversationGateway = Depends(get_gateway)) -> ChatResponse:
    """
    Answer one user message within a session.

    The user message and the answer are appended to the session history in a
    single write before the response is returned.
    """
    logger.info(
        "Processing chat request",
        session_id=request.session_id,
        message_preview=sanitize_for_logging(request.message, 100),
    )
    turn = await gateway.send_turn(request.session_id, request.message, Channel.REST)
    return ChatResponse(
        answer=turn.result.answer,
        sources=turn.result.sources,
        metadata=turn.result.metadata,
        session_id=turn.session_id,
    )


@chat_router.get("/history/{session_id}", response_model=ChatHistoryResponse)
async def chat_history(session_id: str, gateway: ConversationGateway = Depends(get_gateway)) -> ChatHistoryResponse:
    messages = await gateway.history(session_id)
    return ChatHistoryResponse(session_id=session_id, messages=messages, message_count=len(messages))


# Session endpoints

session_router = APIRouter(prefix="/api/session", tags=["session"])


@session_router.get("/")
async def session_info():
    """Session service information."""
    return {
        "service": "News RAG Sessions",
        "status": "running",
        "endpoints": {
            "create": "POST /api/session/create",
            "get": "GET /api/session/{sessionId}",
            "delete": "DELETE /api/session/{sessionId}",
            "stats": "GET /api/session/{sessionId}/stats",
            "export": "GET /api/session/{sessionId}/export?format=json",
        },
        "timestamp": get_current_timestamp(),
    }


@session_router.post("/create", response_model=SessionCreateResponse, status_code=201)
async def create_session(container: ServiceContainer = Depends(get_container)) -> SessionCreateResponse:
    session_id = await container.gateway.create_session()
    return SessionCreateResponse(session_id=session_id, expires_in=container.store.ttl)


@session_router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session(session_id: str, gateway: ConversationGateway = Depends(get_gateway)) -> SessionDetailResponse:
    """Session history with statistics; renews the session TTL when it has messages."""
    messages = await gateway.history(session_id, renew=True)
    return SessionDetailResponse(
        session_id=session_id,
        messages=messages,
        statistics=SessionStatistics.from_messages(messages),
    )


@session_router.delete("/{session_id}", response_model=SessionDeleteResponse)
async def delete_session(session_id: str, gateway: ConversationGateway = Depends(get_gateway)) -> SessionDeleteResponse:
    deleted, cleared_messages = await gateway.clear(session_id)
    return SessionDeleteResponse(deleted=deleted, session_id=session_id, cleared_messages=cleared_messages)


@session_router.get("/{session_id}/stats")
async def session_stats(session_id: str, gateway: ConversationGateway = Depends(get_gateway)):
    messages = await gateway.history(session_id)
    return {**build_session_stats(session_id, messages), "timestamp": get_current_timestamp()}


@session_router.get("/{session_id}/export")
async def export_session(
    session_id: str,
    format: str = "json",
    gateway: ConversationGateway = Depends(get_gateway),
):
    """Download the session transcript as a JSON attachment."""
    messages = await gateway.history(session_id)
    if not messages:
        raise HTTPException(status_code=404, detail="Session not found or empty")
    if format != "json":
        raise HTTPException(status_code=400, detail="Unsupported format. Use format=json")

    logger.info("Session exported", session_id=session_id, message_count=len(messages))
    return JSONResponse(
        content=build_session_export(session_id, messages),
        headers={"Content-Disposition": f'attachment; filename="session-{session_id}.json"'},
    )


def _session_id_from(data: Any) -> Any:
    """``join_session``/``clear_session`` accept a bare id or ``{"sessionId": ...}``."""
    if isinstance(data, dict):
        return data.get("sessionId")
    return data


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built services; when omitted they are created from the
            environment at startup

    Returns:
        FastAPI: Configured application
    """
    load_dotenv()

    app = FastAPI(
        title="News RAG Chatbot",
        description="Retrieval-augmented news question answering with session history",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.container = container
    app.state.start_time = time.time()
    app.state.connections = ConnectionManager()

    cors_origins = (
        container.config.get("CORS_ORIGINS") if container
        else os.getenv("CORS_ORIGINS", OPTIONAL_VARS["CORS_ORIGINS"])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in str(cors_origins).split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def logging_and_timing_middleware(request: Request, call_next):
        """Log requests and responses with timing information."""
        start_time = time.time()
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id

        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=request.client.host if request.client else "unknown",
        )

        response = await call_next(request)
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            processing_time_ms=round((time.time() - start_time) * 1000, 2),
            request_id=request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        return _error_response(request, 400, "INVALID_INPUT", str(exc), exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        message = first.get("msg", "Invalid request")
        return _error_response(request, 400, "VALIDATION_ERROR", message, exc)

    @app.exception_handler(SessionStoreUnavailable)
    async def session_store_handler(request: Request, exc: SessionStoreUnavailable):
        logger.error("Session store unavailable", error=str(exc))
        return _error_response(request, 503, "SESSION_STORE_UNAVAILABLE", "Session storage is temporarily unavailable", exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return _error_response(request, 500, "CONFIGURATION_ERROR", "System configuration error", exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, "HTTP_ERROR", str(exc.detail), exc)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unexpected error occurred",
            error=str(exc),
            error_type=type(exc).__name__,
            request_id=getattr(request.state, "request_id", None),
        )
        return _error_response(
            request, 500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred. Please try again later.", exc
        )

    @app.on_event("startup")
    async def startup_event():
        """Build services from the environment and make sure the index exists."""
        if app.state.container is not None:
            return

        config = initialize_app()
        services = ServiceContainer.from_config(config)
        app.state.container = services

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, services.retriever.ensure_index_exists)
        except Exception as e:
            logger.error("Vector index bootstrap failed, continuing", error=str(e))

        logger.info("Startup completed", version=APP_VERSION, environment=config.get("ENVIRONMENT"))

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.container is not None:
            await app.state.container.close()

    @app.get("/")
    async def root():
        """Root endpoint with basic service information."""
        return {
            "service": "News RAG Chatbot",
            "version": APP_VERSION,
            "status": "running",
            "timestamp": get_current_timestamp(),
            "endpoints": {
                "chat": "/api/chat",
                "session": "/api/session",
                "websocket": "/ws",
                "health": "/health",
                "docs": "/docs",
            },
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """
        Dependency health check.

        Cache failure is unhealthy (503); an unreachable vector index is degraded.
        """
        services = get_container(request)
        checks: Dict[str, Dict[str, Any]] = {}
        overall_status = "healthy"

        try:
            start_time = time.time()
            await services.store.ping()
            checks["cache"] = {"status": "healthy", "latency_ms": round((time.time() - start_time) * 1000, 2)}
        except Exception as e:
            checks["cache"] = {"status": "unhealthy", "error": str(e)}
            overall_status = "unhealthy"
            logger.warning("Cache health check failed", error=str(e))

        try:
            loop = asyncio.get_running_loop()
            stats = await asyncio.wait_for(
                loop.run_in_executor(services.retriever.thread_pool, services.retriever.get_index_stats),
                timeout=HEALTH_CHECK_TIMEOUT,
            )
            checks["vector_store"] = {"status": "healthy", "details": stats}
        except Exception as e:
            checks["vector_store"] = {"status": "unhealthy", "error": str(e) or type(e).__name__}
            if overall_status == "healthy":
                overall_status = "degraded"
            logger.warning("Vector store health check failed", error=str(e))

        checks["embedding"] = {
            "status": "healthy",
            "details": {"model": services.embedding_client.model, "dimension": services.embedding_client.dimension},
        }
        checks["generation"] = {"status": "healthy", "details": {"model": services.generator.model}}

        health = HealthResponse(
            status=overall_status,
            timestamp=get_current_timestamp(),
            version=APP_VERSION,
            uptime_seconds=int(time.time() - app.state.start_time),
            memory_mb=round(psutil.Process().memory_info().rss / 1024 / 1024, 2),
            services={name: check["status"] for name, check in checks.items()},
            checks=checks,
        )
        return JSONResponse(
            status_code=503 if overall_status == "unhealthy" else 200,
            content=health.model_dump(mode="json", by_alias=True),
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Streaming channel.

        Client sends:
            {"event": "join_session", "data": "<sessionId>"}
            {"event": "send_message", "data": {"sessionId": "...", "message": "..."}}
            {"event": "clear_session", "data": "<sessionId>"}

        Server sends:
            {"event": "session_history", "data": [Message, ...]}
            {"event": "new_message", "data": Message}
            {"event": "bot_typing", "data": true | false}
            {"event": "session_cleared", "data": {"sessionId": "..."}}
            {"event": "error", "data": "<message>"}
        """
        manager: ConnectionManager = app.state.connections
        gateway: ConversationGateway = app.state.container.gateway
        turns: Set[asyncio.Task] = set()

        await websocket.accept()
        logger.info("WebSocket connection established", client=str(websocket.client))

        async def handle_send(data: Dict[str, Any]):
            session_id = data.get("sessionId")
            try:
                require_session_id(session_id)
                manager.join(session_id, websocket)

                async def broadcast(event: str, payload: Any) -> None:
                    await manager.broadcast(session_id, event, payload)

                await gateway.send_turn(session_id, data.get("message"), Channel.WEBSOCKET, listener=broadcast)
            except InvalidInput as e:
                await manager.send(websocket, "error", str(e))
            except SessionStoreUnavailable as e:
                logger.error("Turn could not be stored", session_id=session_id, error=str(e))
                await manager.send(websocket, "error", "Failed to save message, please try again")
            except Exception as e:
                logger.error("WebSocket turn failed", session_id=session_id, error=str(e), error_type=type(e).__name__)
                await manager.send(websocket, "error", "Failed to process message")

        try:
            while True:
                raw_data = await websocket.receive_text()
                try:
                    payload = json.loads(raw_data)
                except json.JSONDecodeError:
                    await manager.send(websocket, "error", "Invalid JSON payload")
                    continue
                if not isinstance(payload, dict):
                    await manager.send(websocket, "error", "Invalid event envelope")
                    continue

                event, data = payload.get("event"), payload.get("data")

                try:
                    if event == "join_session":
                        session_id = _session_id_from(data)
                        messages = await gateway.history(session_id, renew=True)
                        manager.join(session_id, websocket)
                        await manager.send(websocket, "session_history", messages)
                        logger.info("Client joined session", session_id=session_id, message_count=len(messages))

                    elif event == "send_message":
                        if not isinstance(data, dict):
                            await manager.send(websocket, "error", "send_message requires sessionId and message")
                            continue
                        task = asyncio.create_task(handle_send(data))
                        turns.add(task)
                        task.add_done_callback(turns.discard)

                    elif event == "clear_session":
                        session_id = _session_id_from(data)
                        await gateway.clear(session_id)
                        manager.join(session_id, websocket)
                        await manager.broadcast(session_id, "session_cleared", {"sessionId": session_id})

                    else:
                        await manager.send(websocket, "error", f"Unknown event: {event}")

                except InvalidInput as e:
                    await manager.send(websocket, "error", str(e))
                except SessionStoreUnavailable as e:
                    logger.error("Session store unavailable", event_name=event, error=str(e))
                    await manager.send(websocket, "error", "Session storage is temporarily unavailable")

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected", client=str(websocket.client), pending_turns=len(turns))
        finally:
            manager.disconnect(websocket)
            for task in list(turns):
                task.cancel()

    app.include_router(chat_router)
    app.include_router(session_router)
    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn (``news-rag`` console script)."""
    uvicorn.run(
        "news_rag.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
