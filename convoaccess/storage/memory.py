from __future__ import annotations

import copy
import json
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Set

from convoaccess.logging import get_logger
from convoaccess.storage.common import (
    deserialize_conversation,
    deserialize_datetime,
    serialize_conversation,
    serialize_datetime,
)
from convoaccess.storage.errors import ConstraintViolation, VersionConflict
from convoaccess.storage.models import (
    Conversation,
    ConversationStatus,
    ConversationType,
    User,
)


class MemoryStore:
    """In-process conversation store with optimistic version checks.

    Conversations are held as private deep copies; callers always receive a
    fresh copy, so mutating a loaded aggregate has no effect until it is
    passed back through ``save_conversation``. When ``fs_root`` is given the
    whole state is snapshotted to ``<fs_root>/state/memory_store.json`` after
    every write and reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.conversations: Dict[str, Conversation] = {}
        # live token -> conversation id
        self.token_index: Dict[str, str] = {}
        # every token ever issued, so a superseded token is never handed out again
        self.issued_tokens: Set[str] = set()
        # RLock for all data operations; nested acquisition within one thread is allowed
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- identity directory -------------------------------------------------

    def create_user(self, user_id: Optional[str] = None, handle: Optional[str] = None) -> User:
        with self._data_lock:
            uid = user_id or str(uuid.uuid4())
            if uid in self.users:
                raise ConstraintViolation("user already exists", {"user_id": uid})
            user = User(id=uid, handle=handle)
            self.users[uid] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def user_exists(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            return bool(user and user.is_active)

    # -- conversations ------------------------------------------------------

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._data_lock:
            if conversation.id in self.conversations:
                raise ConstraintViolation(
                    "conversation already exists", {"conversation_id": conversation.id}
                )
            if conversation.type == ConversationType.DIRECT:
                pair = [p.user_id for p in conversation.participants if p.is_active]
                existing = self._direct_between(*pair) if len(pair) == 2 else None
                if existing is not None:
                    raise ConstraintViolation(
                        "direct conversation already exists",
                        {"conversation_id": existing.id},
                    )
            stored = copy.deepcopy(conversation)
            stored.version = 1
            self._claim_token(stored, previous=None)
            self.conversations[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            return copy.deepcopy(conversation) if conversation else None

    def get_conversation_by_token(self, token: str) -> Optional[Conversation]:
        with self._data_lock:
            conversation_id = self.token_index.get(token)
            if conversation_id is None:
                return None
            return self.get_conversation(conversation_id)

    def join_token_exists(self, token: str) -> bool:
        with self._data_lock:
            return token in self.issued_tokens

    def save_conversation(
        self, conversation: Conversation, expected_version: int
    ) -> Conversation:
        """Compare-and-swap the stored aggregate.

        The write lands only if the stored version still equals
        ``expected_version``; the stored version is then bumped by one.
        """
        with self._data_lock:
            current = self.conversations.get(conversation.id)
            if current is None:
                raise VersionConflict(conversation.id, expected_version, None)
            if current.version != expected_version:
                raise VersionConflict(conversation.id, expected_version, current.version)
            stored = copy.deepcopy(conversation)
            stored.version = current.version + 1
            self._claim_token(stored, previous=current)
            self.conversations[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def _claim_token(self, stored: Conversation, previous: Optional[Conversation]) -> None:
        old_token = previous.join_link.token if previous and previous.join_link else None
        new_token = stored.join_link.token if stored.join_link else None
        if new_token == old_token:
            return
        if new_token is not None:
            if new_token in self.issued_tokens:
                raise ConstraintViolation(
                    "join token already issued", {"conversation_id": stored.id}
                )
            self.issued_tokens.add(new_token)
            self.token_index[new_token] = stored.id
        if old_token is not None:
            self.token_index.pop(old_token, None)

    def list_conversations_for_user(self, user_id: str, limit: int = 50) -> List[Conversation]:
        with self._data_lock:
            matches = [
                conv
                for conv in self.conversations.values()
                if conv.status == ConversationStatus.ACTIVE
                and any(p.user_id == user_id and p.is_active for p in conv.participants)
            ]
            matches.sort(key=lambda c: c.updated_at, reverse=True)
            return [copy.deepcopy(c) for c in matches[:limit]]

    def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        with self._data_lock:
            conv = self._direct_between(user_a, user_b)
            return copy.deepcopy(conv) if conv else None

    def _direct_between(self, user_a: str, user_b: str) -> Optional[Conversation]:
        wanted = {user_a, user_b}
        for conv in self.conversations.values():
            if conv.type != ConversationType.DIRECT:
                continue
            if conv.status != ConversationStatus.ACTIVE:
                continue
            if {p.user_id for p in conv.participants if p.is_active} == wanted:
                return conv
        return None

    # -- snapshot persistence ----------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._data_lock:
            payload = {
                "users": [
                    {
                        "id": u.id,
                        "handle": u.handle,
                        "created_at": serialize_datetime(u.created_at),
                        "is_active": u.is_active,
                    }
                    for u in self.users.values()
                ],
                "conversations": [
                    serialize_conversation(c) for c in self.conversations.values()
                ],
                "issued_tokens": sorted(self.issued_tokens),
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload))
            tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", path=str(path), error=str(exc))
            raise
        with self._data_lock:
            self.users = {
                u["id"]: User(
                    id=u["id"],
                    handle=u.get("handle"),
                    created_at=deserialize_datetime(u["created_at"]),
                    is_active=u.get("is_active", True),
                )
                for u in payload.get("users", [])
            }
            self.conversations = {}
            self.token_index = {}
            for raw in payload.get("conversations", []):
                conv = deserialize_conversation(raw)
                self.conversations[conv.id] = conv
                if conv.join_link is not None:
                    self.token_index[conv.join_link.token] = conv.id
            self.issued_tokens = set(payload.get("issued_tokens", []))
            self.issued_tokens.update(self.token_index)
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            conversations=len(self.conversations),
        )
        return True
