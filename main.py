import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

import protocol
from chat_ws import ConnectionManager
from config import Config
from errors import NotFoundError, ValidationError
from logging_config import connection_id_var, setup_logging
from messages import MessageStore, now_ms, validate_message
from storage import JsonFileStore
from users import UserRegistry

setup_logging(Config.LOG_LEVEL, Config.LOG_PATH)

logger = logging.getLogger(__name__)

router = APIRouter()

REQUIRED_MESSAGE_FIELDS = ["author", "content"]


# ================== MODELS ==================
class MessageCreate(BaseModel):
    author: Optional[str] = None
    content: Optional[str] = None


class ReactionRequest(BaseModel):
    username: Optional[str] = None


def origin_allowed(origin: Optional[str], allowed: List[str]) -> bool:
    if "*" in allowed:
        return True
    return origin is not None and origin in allowed


def _manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


# ================== HTTP ROUTES ==================
@router.get("/")
def root(request: Request):
    return {
        "ok": True,
        "message": "Chat server running",
        "port": request.app.state.config.PORT,
    }


@router.get("/messages")
def get_messages(request: Request, since: Optional[int] = Query(default=None)):
    store: MessageStore = request.app.state.messages
    messages = store.get_messages_after(since) if since else store.get_all_messages()
    return {
        "success": True,
        "data": {"messages": protocol.dump_messages(messages)},
        "timestamp": now_ms(),
    }


@router.post("/messages", status_code=status.HTTP_201_CREATED)
async def send_message(request: Request, body: MessageCreate):
    missing = [f for f in REQUIRED_MESSAGE_FIELDS if f not in body.model_fields_set]
    if missing:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "Missing required fields",
                "missing": missing,
                "expected": REQUIRED_MESSAGE_FIELDS,
            },
        )

    validate_message(body.author, body.content).raise_for_errors()

    message = request.app.state.messages.create_message(body.author, body.content)
    logger.info("Message created over HTTP by %s: %s", message.author, message.id)
    await _manager(request).broadcast(protocol.new_message(message))

    return {"success": True, "data": {"message": message.model_dump()}}


async def _react(request: Request, message_id: str, body: ReactionRequest, like: bool):
    if not body.username or not body.username.strip():
        raise ValidationError(["Username is required"])

    store: MessageStore = request.app.state.messages
    if like:
        message = store.toggle_like(message_id, body.username)
    else:
        message = store.toggle_dislike(message_id, body.username)
    await _manager(request).broadcast(protocol.message_updated(message))

    return {"success": True, "data": {"message": message.model_dump()}}


@router.post("/messages/{message_id}/like")
async def like_message(request: Request, message_id: str, body: ReactionRequest):
    return await _react(request, message_id, body, like=True)


@router.post("/messages/{message_id}/dislike")
async def dislike_message(request: Request, message_id: str, body: ReactionRequest):
    return await _react(request, message_id, body, like=False)


@router.get("/users")
def get_users(request: Request):
    users = request.app.state.users.get_usernames()
    return {"success": True, "data": {"users": users, "count": len(users)}}


# ================== WEBSOCKET CHAT ==================
@router.websocket("/ws")
async def chat_ws(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.manager
    allowed = websocket.app.state.config.ALLOWED_ORIGINS

    origin = websocket.headers.get("origin")
    if not origin_allowed(origin, allowed):
        logger.warning("Rejected WebSocket connection from origin %s", origin)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection_id = uuid4().hex
    connection_id_var.set(connection_id)
    await manager.connect(connection_id, websocket)

    code, reason = 1000, ""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                code = message.get("code", 1000)
                reason = message.get("reason") or ""
                break

            text = message.get("text")
            if text is None:
                await manager.send_error(connection_id, "Only text messages are supported")
                continue

            await manager.handle_frame(connection_id, text)

    except WebSocketDisconnect as exc:
        code, reason = exc.code, exc.reason or ""
    except Exception:
        logger.exception("WebSocket error for %s", connection_id)
        code = status.WS_1011_INTERNAL_ERROR
    finally:
        await manager.disconnect(connection_id, code, reason)


# ================== ERROR HANDLERS ==================
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": "Validation failed", "details": exc.errors},
    )


async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "error": exc.message},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Invalid request",
            "details": [err.get("msg", "") for err in exc.errors()],
        },
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
    )


async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error"},
    )


# ================== APP ==================
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.messages.load()
    logger.info("Chat server ready, allowed origins: %s", app.state.config.ALLOWED_ORIGINS)
    yield
    await app.state.manager.close()
    app.state.messages.close()
    logger.info("Chat server shut down")


def create_app(config=Config) -> FastAPI:
    app = FastAPI(title="Realtime Chat", lifespan=lifespan)

    messages = MessageStore(JsonFileStore(config.DATA_FILE))
    users = UserRegistry()
    app.state.config = config
    app.state.messages = messages
    app.state.users = users
    app.state.manager = ConnectionManager(messages, users, send_timeout=config.SEND_TIMEOUT_SECONDS)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials="*" not in config.ALLOWED_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.include_router(router)
    return app


app = create_app()
