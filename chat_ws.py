"""
Session coordinator for the chat WebSocket.

Maps connection ids to their sockets and joined users, turns decoded
commands into message store / user registry calls, and fans the
resulting events out to every live connection.

All command handling runs on the event loop. Store and registry calls
are synchronous and lock-guarded, so a join or a reaction toggle is
applied in full before the next command touches the same state.
Outbound sends are awaited concurrently and each one fails on its own.
A socket that fails or times out is closed and skipped from then on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

import protocol
from errors import ChatError, PreconditionError, ProtocolError, TransportError
from messages import MessageStore, validate_message
from protocol import (
    DislikeMessageCommand,
    GetMessagesCommand,
    JoinCommand,
    LikeMessageCommand,
    SendMessageCommand,
    UnknownCommand,
)
from users import User, UserRegistry, validate_username

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    ANONYMOUS = "anonymous"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


@dataclass
class ConnectionRecord:
    connection_id: str
    websocket: WebSocket
    state: ConnectionState = ConnectionState.ANONYMOUS
    user: Optional[User] = None
    # One writer per socket at a time
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_open(self) -> bool:
        return (
            self.state is not ConnectionState.DISCONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )


class ConnectionManager:
    def __init__(self, messages: MessageStore, users: UserRegistry, send_timeout: float = 5.0):
        self.messages = messages
        self.users = users
        self.send_timeout = send_timeout
        self.connections: Dict[str, ConnectionRecord] = {}
        self._closing: Set[asyncio.Task] = set()

    # ================== CONNECTIONS ==================
    async def connect(self, connection_id: str, websocket: WebSocket) -> ConnectionRecord:
        await websocket.accept()
        record = ConnectionRecord(connection_id=connection_id, websocket=websocket)
        self.connections[connection_id] = record
        logger.info("Connection added: %s (%d open)", connection_id, len(self.connections))

        await self.send_to(connection_id, protocol.connection_established(connection_id))
        return record

    async def disconnect(self, connection_id: str, code: Optional[int] = None, reason: str = "") -> Optional[User]:
        record = self.connections.pop(connection_id, None)
        if record is None:
            return None

        record.state = ConnectionState.DISCONNECTED
        user = self.users.remove_user(connection_id)
        logger.info("Connection removed: %s (code=%s %s)", connection_id, code, reason or "")

        if user is not None:
            logger.info("User %s left", user.username)
            await self.broadcast(protocol.user_left(user.username, self.online_users()))
        return user

    def online_users(self) -> List[str]:
        return self.users.get_usernames()

    async def close(self) -> None:
        """Close every live socket and forget all sessions."""
        records = list(self.connections.values())
        self.connections.clear()
        for record in records:
            if record.state is ConnectionState.DISCONNECTED:
                continue
            record.state = ConnectionState.DISCONNECTED
            try:
                await record.websocket.close(code=1001)
            except Exception as exc:
                logger.debug("Error closing %s: %s", record.connection_id, exc)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self.users.close()

    # ================== INBOUND ==================
    async def handle_frame(self, connection_id: str, raw: str) -> None:
        try:
            command = protocol.decode_frame(raw)
        except ProtocolError as exc:
            logger.warning("Undecodable frame from %s", connection_id)
            await self.send_error(connection_id, exc.message)
            return

        record = self.connections.get(connection_id)
        if record is None:
            logger.warning("Frame for unknown connection %s dropped", connection_id)
            return

        logger.info("Command %s from %s", command.name, connection_id)
        try:
            await self._dispatch(record, command)
        except ChatError as exc:
            await self.send_error(connection_id, exc.message)
        except Exception:
            logger.exception("Error handling %s from %s", command.name, connection_id)
            await self.send_error(connection_id, "Server error")

    async def _dispatch(self, record: ConnectionRecord, command) -> None:
        if isinstance(command, JoinCommand):
            await self._handle_join(record, command)

        elif isinstance(command, SendMessageCommand):
            await self._handle_send_message(record, command)

        elif isinstance(command, LikeMessageCommand):
            user = self._require_user(record)
            message = self.messages.toggle_like(command.message_id, user.username)
            logger.info("%s toggled like on %s", user.username, message.id)
            await self.broadcast(protocol.message_updated(message))

        elif isinstance(command, DislikeMessageCommand):
            user = self._require_user(record)
            message = self.messages.toggle_dislike(command.message_id, user.username)
            logger.info("%s toggled dislike on %s", user.username, message.id)
            await self.broadcast(protocol.message_updated(message))

        elif isinstance(command, GetMessagesCommand):
            if command.since:
                messages = self.messages.get_messages_after(command.since)
            else:
                messages = self.messages.get_all_messages()
            await self.send_to(record.connection_id, protocol.messages_list(messages))

        elif isinstance(command, UnknownCommand):
            raise ProtocolError(f"Unknown command: {command.name}")

    def _require_user(self, record: ConnectionRecord) -> User:
        if record.state is not ConnectionState.JOINED or record.user is None:
            raise PreconditionError()
        return record.user

    async def _handle_join(self, record: ConnectionRecord, command: JoinCommand) -> None:
        if record.state is ConnectionState.JOINED:
            raise PreconditionError("Already joined")

        validate_username(command.username).raise_for_errors()
        user = self.users.add_user(record.connection_id, command.username)
        record.user = user
        record.state = ConnectionState.JOINED

        online = self.online_users()
        await self.send_to(
            record.connection_id,
            protocol.join_success(user, self.messages.get_all_messages(), online),
        )
        await self.broadcast(
            protocol.user_joined(user.username, online),
            exclude=record.connection_id,
        )
        logger.info("User %s joined (%s)", user.username, record.connection_id)

    async def _handle_send_message(self, record: ConnectionRecord, command: SendMessageCommand) -> None:
        user = self._require_user(record)
        validate_message(user.username, command.content).raise_for_errors()

        message = self.messages.create_message(user.username, command.content)
        await self.broadcast(protocol.new_message(message))
        logger.info("Message from %s: %s", user.username, command.content[:50])

    # ================== OUTBOUND ==================
    async def send_error(self, connection_id: str, message: str) -> bool:
        return await self.send_to(connection_id, protocol.error(message))

    async def send_to(self, connection_id: str, frame: dict) -> bool:
        record = self.connections.get(connection_id)
        if record is None:
            logger.debug("Send to unknown connection %s ignored", connection_id)
            return False
        return await self._deliver(record, protocol.encode(frame))

    async def broadcast(self, frame: dict, exclude: Optional[str] = None) -> int:
        """Send one frame to every connection but `exclude`. Returns how many deliveries succeeded."""
        payload = protocol.encode(frame)
        # Snapshot so joins/leaves during the sends don't disturb the loop
        recipients = [r for cid, r in list(self.connections.items()) if cid != exclude]
        if not recipients:
            return 0
        results = await asyncio.gather(*(self._deliver(r, payload) for r in recipients))
        return sum(1 for ok in results if ok)

    async def _deliver(self, record: ConnectionRecord, payload: str) -> bool:
        if not record.is_open:
            logger.debug("Connection %s no longer open, frame dropped", record.connection_id)
            return False
        try:
            await self._send(record, payload)
        except TransportError as exc:
            logger.warning("Error sending to connection %s: %s", record.connection_id, exc.message)
            self._drop(record)
            return False
        return True

    async def _send(self, record: ConnectionRecord, payload: str) -> None:
        # Waiting for the socket counts against the same deadline as writing to it
        try:
            await asyncio.wait_for(self._locked_send(record, payload), timeout=self.send_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"send timed out after {self.send_timeout}s") from exc
        except Exception as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def _locked_send(self, record: ConnectionRecord, payload: str) -> None:
        async with record.send_lock:
            await record.websocket.send_text(payload)

    def _drop(self, record: ConnectionRecord) -> None:
        """Stop sending to a failed socket and close it; its receive loop then calls disconnect."""
        if record.state is ConnectionState.DISCONNECTED:
            return
        record.state = ConnectionState.DISCONNECTED
        task = asyncio.create_task(self._abort(record))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _abort(self, record: ConnectionRecord) -> None:
        try:
            await asyncio.wait_for(record.websocket.close(code=1011), timeout=self.send_timeout)
        except Exception as exc:
            logger.debug("Error closing %s: %s", record.connection_id, exc)
