"""
Message store.

Owns the ordered chat history and the per-message reaction sets. Callers
only ever get frozen `Message` snapshots back; counts on a snapshot are
the sizes of the reaction sets at the time it was taken.

Writes to the durable store happen on a single background thread, in
mutation order, so a slow disk never stalls command handling.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from errors import NotFoundError, ValidationError
from storage import JsonFileStore

logger = logging.getLogger(__name__)

MAX_AUTHOR_LENGTH = 50
MAX_CONTENT_LENGTH = 500


def now_ms() -> int:
    return int(time.time() * 1000)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    content: str
    timestamp: int
    likes: int = 0
    dislikes: int = 0


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            raise ValidationError(self.errors)


@dataclass
class Reactions:
    likes: Set[str] = field(default_factory=set)
    dislikes: Set[str] = field(default_factory=set)


def _is_blank(value) -> bool:
    return not isinstance(value, str) or value.strip() == ""


def validate_message(author, content) -> ValidationResult:
    errors = []

    if _is_blank(author):
        errors.append("Author is required")

    if _is_blank(content):
        errors.append("Message content is required")

    if isinstance(author, str) and len(author) > MAX_AUTHOR_LENGTH:
        errors.append(f"Author name too long (max {MAX_AUTHOR_LENGTH} characters)")

    if isinstance(content, str) and len(content) > MAX_CONTENT_LENGTH:
        errors.append(f"Message too long (max {MAX_CONTENT_LENGTH} characters)")

    return ValidationResult(is_valid=not errors, errors=errors)


class MessageStore:
    def __init__(self, store: Optional[JsonFileStore] = None):
        self._store = store
        self._messages: List[Message] = []
        self._positions: Dict[str, int] = {}
        self._reactions: Dict[str, Reactions] = {}
        self._last_timestamp = 0
        self._lock = threading.Lock()
        self._closed = False
        self._writer: Optional[ThreadPoolExecutor] = None
        if store is not None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="message-store")

    # ================== LIFECYCLE ==================
    def load(self) -> int:
        """Replace the in-memory history with the durable snapshot. Returns the count loaded."""
        if self._store is None:
            return 0

        records = self._store.load()
        messages: List[Message] = []
        seen = set()
        for record in records:
            try:
                message = Message.model_validate(record)
            except PydanticValidationError as exc:
                logger.warning("Skipping invalid stored message: %s", exc.errors()[:1])
                continue
            if message.id in seen:
                logger.warning("Skipping duplicate stored message %s", message.id)
                continue
            seen.add(message.id)
            messages.append(message)

        with self._lock:
            self._messages = messages
            self._positions = {m.id: i for i, m in enumerate(messages)}
            self._reactions = {}
            self._last_timestamp = max((m.timestamp for m in messages), default=0)

        logger.info("Loaded %d messages from %s", len(messages), self._store.path)
        return len(messages)

    def close(self) -> None:
        """Stop accepting writes and wait for queued ones to land."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._writer is not None:
            self._writer.shutdown(wait=True)

    # ================== QUERIES ==================
    def get_all_messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            position = self._positions.get(message_id)
            return None if position is None else self._messages[position]

    def get_messages_after(self, timestamp: int) -> List[Message]:
        with self._lock:
            return [m for m in self._messages if m.timestamp > timestamp]

    # ================== MUTATIONS ==================
    def create_message(self, author: str, content: str) -> Message:
        with self._lock:
            # Keep timestamps non-decreasing even if the wall clock steps back
            timestamp = max(now_ms(), self._last_timestamp)
            message = Message(
                id=str(uuid4()),
                author=author,
                content=content,
                timestamp=timestamp,
            )
            self._last_timestamp = timestamp
            self._positions[message.id] = len(self._messages)
            self._messages.append(message)
            self._persist_locked()
        return message

    def toggle_like(self, message_id: str, username: str) -> Message:
        return self._toggle(message_id, username, like=True)

    def toggle_dislike(self, message_id: str, username: str) -> Message:
        return self._toggle(message_id, username, like=False)

    def _toggle(self, message_id: str, username: str, like: bool) -> Message:
        with self._lock:
            position = self._positions.get(message_id)
            if position is None:
                raise NotFoundError()

            reactions = self._reactions.setdefault(message_id, Reactions())
            if like:
                chosen, opposite = reactions.likes, reactions.dislikes
            else:
                chosen, opposite = reactions.dislikes, reactions.likes

            opposite.discard(username)
            if username in chosen:
                chosen.remove(username)
            else:
                chosen.add(username)

            updated = self._messages[position].model_copy(
                update={"likes": len(reactions.likes), "dislikes": len(reactions.dislikes)}
            )
            self._messages[position] = updated
            self._persist_locked()
        return updated

    # ================== PERSISTENCE ==================
    def _persist_locked(self) -> None:
        """Queue a snapshot write. Caller holds the lock, so queue order is mutation order."""
        if self._writer is None:
            return
        if self._closed:
            logger.warning("Message store closed, change not persisted")
            return
        snapshot = [m.model_dump() for m in self._messages]
        future = self._writer.submit(self._store.save, snapshot)
        future.add_done_callback(self._on_saved)

    def _on_saved(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to save messages to %s", self._store.path, exc_info=exc)
