from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import User


class MemoryStore:
    """In-process user store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._by_username: Dict[str, str] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def create_user(
        self, username: str, password_hash: str, encrypted_phone: str
    ) -> User:
        with self._data_lock:
            if username in self._by_username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                encrypted_phone=encrypted_phone,
            )
            self.users[user.id] = user
            self._by_username[username] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_username.get(username)
            if not user_id:
                return None
            return replace(self.users[user_id])

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(
                user,
                password_hash=password_hash,
                updated_at=datetime.now(timezone.utc),
            )
            return True

    def verify_connection(self) -> None:
        return None
