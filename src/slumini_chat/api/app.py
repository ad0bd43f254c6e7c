"""
FastAPI Application Module

HTTP and WebSocket surface for Slumini's student/alumni messaging.

Key Features:
- Send messages between one student and one alumni
- Per-user conversation inbox with unread counters
- Live message snapshots over WebSocket
- Structured logging, Prometheus metrics and OpenTelemetry tracing

The conversation backend (shared document store or local fallback) is chosen
from settings at startup; every endpoint goes through the same ChatService.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import configure_logging, get_settings
from ..domain.errors import (
    ConversationNotFound,
    InvalidConversationId,
    InvalidMessage,
    ReadFailure,
    SendFailure,
    SubscriptionError,
    UnsupportedOperation,
    UpdateFailure,
)
from ..domain.models import Conversation, Message, Participant, Role
from ..repositories.factory import create_repository
from ..repositories.remote import RemoteRepository
from ..services.chat import ChatService
from ..services.reconciler import SummaryReconciler

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

MESSAGES_SENT = Counter("messages_sent_total", "Messages accepted by the backend", registry=CUSTOM_REGISTRY)
SEND_FAILURES = Counter("send_failures_total", "Sends rejected by the backend", registry=CUSTOM_REGISTRY)
READ_FAILURES = Counter("read_failures_total", "One-shot reads that failed", registry=CUSTOM_REGISTRY)
UPDATE_FAILURES = Counter("update_failures_total", "Conversation updates that failed", registry=CUSTOM_REGISTRY)
ACTIVE_STREAMS = Gauge("active_message_streams", "Open WebSocket message streams", registry=CUSTOM_REGISTRY)

logger = get_logger()


class SendMessageRequest(BaseModel):
    """Defines the structure for message send requests"""
    sender: Participant
    recipient: Participant
    body: str


class SendMessageResponse(BaseModel):
    conversation_id: str
    message_id: str


class MarkReadRequest(BaseModel):
    role: Role


settings = get_settings()
configure_logging(settings)

# Core service instances
repository = create_repository(settings)
chat_service = ChatService(repository)
reconciler: Optional[SummaryReconciler] = None
if isinstance(repository, RemoteRepository) and settings.reconcile_interval_seconds > 0:
    reconciler = SummaryReconciler(
        repository,
        interval=settings.reconcile_interval_seconds,
        settle_seconds=settings.reconcile_settle_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and background jobs"""
    if reconciler is not None:
        await reconciler.start()
    logger.info("application_startup_complete", backend=settings.chat_backend)

    yield

    if reconciler is not None:
        await reconciler.stop()
    logger.info("application_shutdown_complete")


def get_chat_service() -> ChatService:
    """Returns the chat service instance"""
    return chat_service


app = FastAPI(
    title="Slumini Chat API",
    description="Student and alumni messaging for the Slumini portal",
    version="0.1.0",
    lifespan=lifespan
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Logs every request and its outcome"""
    logger.info("request_started", path=request.url.path, method=request.method)
    try:
        response = await call_next(request)
        logger.info("request_finished", path=request.url.path, status_code=response.status_code)
        return response
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


@app.post("/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    service: ChatService = Depends(get_chat_service)
) -> SendMessageResponse:
    """Sends a message and updates the conversation summary"""
    try:
        sent = await service.send(request.sender, request.recipient, request.body)
    except InvalidMessage as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SendFailure as e:
        SEND_FAILURES.inc()
        logger.error("send_message_error", error=str(e))
        raise HTTPException(status_code=503, detail="Failed to send message, please retry")
    MESSAGES_SENT.inc()
    return SendMessageResponse(conversation_id=sent.conversation_id, message_id=sent.message_id)


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    user_id: str,
    role: Role,
    service: ChatService = Depends(get_chat_service)
) -> List[Conversation]:
    """Gets a user's conversations, most recently updated first"""
    try:
        return await service.inbox(user_id, role)
    except ReadFailure as e:
        READ_FAILURES.inc()
        logger.error("list_conversations_error", user_id=user_id, error=str(e))
        raise HTTPException(status_code=503, detail="Failed to list conversations")


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service)
) -> Conversation:
    """Retrieves a conversation summary by its ID"""
    try:
        return await service.conversation(conversation_id)
    except (ConversationNotFound, InvalidConversationId):
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ReadFailure as e:
        READ_FAILURES.inc()
        logger.error("get_conversation_error", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=503, detail="Failed to get conversation")


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def get_messages(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service)
) -> List[Message]:
    """Gets the full message history, oldest first"""
    try:
        return await service.history(conversation_id)
    except InvalidConversationId:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ReadFailure as e:
        READ_FAILURES.inc()
        logger.error("get_messages_error", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=503, detail="Failed to get messages")


@app.post("/conversations/{conversation_id}/read", status_code=204)
async def mark_read(
    conversation_id: str,
    request: MarkReadRequest,
    service: ChatService = Depends(get_chat_service)
) -> Response:
    """Resets the unread counter of one side of the conversation"""
    try:
        await service.mark_read(conversation_id, request.role)
    except (ConversationNotFound, InvalidConversationId):
        raise HTTPException(status_code=404, detail="Conversation not found")
    except UpdateFailure as e:
        UPDATE_FAILURES.inc()
        logger.error("mark_read_error", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=503, detail="Failed to mark conversation read")
    return Response(status_code=204)


@app.delete("/conversations/{conversation_id}", status_code=204)
async def clear_conversation(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service)
) -> Response:
    """Deletes a conversation's history where the backend allows it"""
    try:
        await service.clear(conversation_id)
    except InvalidConversationId:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except UnsupportedOperation as e:
        raise HTTPException(status_code=405, detail=str(e))
    except UpdateFailure as e:
        UPDATE_FAILURES.inc()
        logger.error("clear_conversation_error", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=503, detail="Failed to clear conversation")
    return Response(status_code=204)


@app.websocket("/conversations/{conversation_id}/stream")
async def stream_messages(
    websocket: WebSocket,
    conversation_id: str,
    service: ChatService = Depends(get_chat_service)
):
    """Pushes the full ordered message list on every change"""
    await websocket.accept()
    ACTIVE_STREAMS.inc()
    logger.info("stream_opened", conversation_id=conversation_id)
    stream = service.stream(conversation_id)

    async def forward():
        async for messages in stream:
            await websocket.send_json({"type": "messages", "data": jsonable_encoder(messages)})

    async def drain():
        # Only used to notice the client going away
        while True:
            await websocket.receive_text()

    tasks = {asyncio.create_task(forward()), asyncio.create_task(drain())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()
    except WebSocketDisconnect:
        logger.info("stream_client_disconnected", conversation_id=conversation_id)
    except InvalidConversationId as e:
        logger.warning("stream_invalid_conversation", conversation_id=conversation_id)
        await websocket.send_json({"type": "error", "detail": str(e)})
        await websocket.close(code=1008)
    except SubscriptionError as e:
        logger.error("stream_subscription_error", conversation_id=conversation_id, error=str(e))
        await websocket.send_json({"type": "error", "detail": str(e)})
        await websocket.close(code=1011)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await stream.aclose()
        ACTIVE_STREAMS.dec()
        logger.info("stream_closed", conversation_id=conversation_id)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
