import logging
import re
import threading
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from errors import UsernameTakenError
from messages import ValidationResult, now_ms

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 20

# Letters and digits from any script, underscore, whitespace, dash
USERNAME_PATTERN = re.compile(r"[\w\s-]+")
ALL_WHITESPACE = re.compile(r"\s+")


class User(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    username: str
    connection_id: str
    joined_at: int = Field(default_factory=now_ms)


def normalize_username(username: str) -> str:
    return username.casefold()


def validate_username(username) -> ValidationResult:
    errors = []

    if not isinstance(username, str) or username.strip() == "":
        errors.append("Username is required")

    if isinstance(username, str) and username:
        if len(username) < MIN_USERNAME_LENGTH:
            errors.append(f"Username too short (min {MIN_USERNAME_LENGTH} characters)")

        if len(username) > MAX_USERNAME_LENGTH:
            errors.append(f"Username too long (max {MAX_USERNAME_LENGTH} characters)")

        if not USERNAME_PATTERN.fullmatch(username) or ALL_WHITESPACE.fullmatch(username):
            errors.append("Username can contain letters, numbers, spaces, underscore, and dash")

    return ValidationResult(is_valid=not errors, errors=errors)


class UserRegistry:
    """Joined users keyed by connection id, plus the case-insensitive name reservations."""

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._reserved: Dict[str, str] = {}  # normalized username -> connection id
        self._lock = threading.Lock()

    def add_user(self, connection_id: str, username: str) -> User:
        normalized = normalize_username(username)
        with self._lock:
            owner = self._reserved.get(normalized)
            if owner is not None and owner != connection_id:
                raise UsernameTakenError()

            previous = self._users.get(connection_id)
            if previous is not None:
                self._reserved.pop(normalize_username(previous.username), None)

            user = User(username=username, connection_id=connection_id)
            self._users[connection_id] = user
            self._reserved[normalized] = connection_id

        logger.debug("Reserved username %r for %s", username, connection_id)
        return user

    def remove_user(self, connection_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.pop(connection_id, None)
            if user is not None:
                self._reserved.pop(normalize_username(user.username), None)
        return user

    def get_user(self, connection_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(connection_id)

    def get_usernames(self) -> List[str]:
        with self._lock:
            return [user.username for user in self._users.values()]

    def __len__(self):
        with self._lock:
            return len(self._users)

    def close(self) -> None:
        with self._lock:
            self._users.clear()
            self._reserved.clear()
