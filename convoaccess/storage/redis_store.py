from __future__ import annotations

import json
from typing import List, Optional

from redis import Redis

from convoaccess.logging import get_logger
from convoaccess.storage.common import deserialize_conversation, serialize_conversation
from convoaccess.storage.errors import ConstraintViolation, VersionConflict
from convoaccess.storage.models import (
    Conversation,
    ConversationStatus,
    ConversationType,
    User,
)

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed conversation store for multi-process deployments.

    Each conversation is a single JSON document. Writes go through one Lua
    script that compares the stored version, swaps the join-token index and
    writes the document atomically, so two processes racing on the same
    conversation can never both land a save.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # KEYS: conversation doc, token index hash, issued token set, direct pair
    #       key (empty unless creating a direct conversation)
    # ARGV: expected version (0 = create), payload, old token, new token,
    #       conversation id, then participant user ids for the membership index
    _SAVE_SCRIPT = """
local doc_key = KEYS[1]
local index_key = KEYS[2]
local issued_key = KEYS[3]
local direct_key = KEYS[4]
local expected = tonumber(ARGV[1])
local payload = ARGV[2]
local old_token = ARGV[3]
local new_token = ARGV[4]
local conv_id = ARGV[5]

local current = redis.call('GET', doc_key)
if expected == 0 then
  if current then
    return {-3, 0}
  end
  if direct_key ~= '' then
    local holder = redis.call('GET', direct_key)
    if holder then
      local held = redis.call('GET', 'convo:conversation:' .. holder)
      if held and cjson.decode(held)['status'] == 'active' then
        return {-4, holder}
      end
    end
  end
else
  if not current then
    return {-1, -1}
  end
  local version = tonumber(cjson.decode(current)['version'])
  if version ~= expected then
    return {-1, version}
  end
end

if new_token ~= old_token then
  if new_token ~= '' then
    if redis.call('SISMEMBER', issued_key, new_token) == 1 then
      return {-2, expected}
    end
    redis.call('SADD', issued_key, new_token)
    redis.call('HSET', index_key, new_token, conv_id)
  end
  if old_token ~= '' then
    redis.call('HDEL', index_key, old_token)
  end
end

redis.call('SET', doc_key, payload)
if expected == 0 and direct_key ~= '' then
  redis.call('SET', direct_key, conv_id)
end
for i = 6, #ARGV do
  redis.call('SADD', 'convo:user:' .. ARGV[i] .. ':conversations', conv_id)
end
return {1, expected + 1}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._save = self.client.register_script(self._SAVE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _doc_key(conversation_id: str) -> str:
        return f"convo:conversation:{conversation_id}"

    _TOKEN_INDEX_KEY = "convo:join_tokens"
    _ISSUED_TOKENS_KEY = "convo:issued_join_tokens"
    _USERS_KEY = "convo:users"

    @staticmethod
    def _direct_key(user_a: str, user_b: str) -> str:
        first, second = sorted((user_a, user_b))
        return f"convo:direct:{first}:{second}"

    # -- identity directory -------------------------------------------------

    def create_user(self, user_id: str, handle: Optional[str] = None) -> User:
        user = User(id=user_id, handle=handle)
        record = json.dumps(
            {"id": user.id, "handle": user.handle, "is_active": user.is_active}
        )
        if not self.client.hsetnx(self._USERS_KEY, user_id, record):
            raise ConstraintViolation("user already exists", {"user_id": user_id})
        return user

    def user_exists(self, user_id: str) -> bool:
        raw = self.client.hget(self._USERS_KEY, user_id)
        if raw is None:
            return False
        return bool(json.loads(raw).get("is_active", True))

    # -- conversations ------------------------------------------------------

    def _run_save(
        self,
        conversation: Conversation,
        expected_version: int,
        old_token: Optional[str],
        direct_key: str = "",
    ) -> Conversation:
        candidate = serialize_conversation(conversation)
        candidate["version"] = expected_version + 1
        new_token = conversation.join_link.token if conversation.join_link else ""
        participant_ids = [p.user_id for p in conversation.participants]
        status, version = self._save(
            keys=[
                self._doc_key(conversation.id),
                self._TOKEN_INDEX_KEY,
                self._ISSUED_TOKENS_KEY,
                direct_key,
            ],
            args=[
                expected_version,
                json.dumps(candidate),
                old_token or "",
                new_token,
                conversation.id,
                *participant_ids,
            ],
        )
        status = int(status)
        if status == -4:
            raise ConstraintViolation(
                "direct conversation already exists", {"conversation_id": version}
            )
        if status == -1:
            actual = None if int(version) < 0 else int(version)
            raise VersionConflict(conversation.id, expected_version, actual)
        if status == -2:
            raise ConstraintViolation(
                "join token already issued", {"conversation_id": conversation.id}
            )
        if status == -3:
            raise ConstraintViolation(
                "conversation already exists", {"conversation_id": conversation.id}
            )
        return deserialize_conversation(candidate)

    def create_conversation(self, conversation: Conversation) -> Conversation:
        direct_key = ""
        if conversation.type == ConversationType.DIRECT:
            active = [p.user_id for p in conversation.participants if p.is_active]
            if len(active) == 2:
                direct_key = self._direct_key(*active)
        return self._run_save(conversation, 0, None, direct_key)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        raw = self.client.get(self._doc_key(conversation_id))
        if raw is None:
            return None
        return deserialize_conversation(json.loads(raw))

    def get_conversation_by_token(self, token: str) -> Optional[Conversation]:
        conversation_id = self.client.hget(self._TOKEN_INDEX_KEY, token)
        if conversation_id is None:
            return None
        return self.get_conversation(conversation_id)

    def join_token_exists(self, token: str) -> bool:
        return bool(self.client.sismember(self._ISSUED_TOKENS_KEY, token))

    def save_conversation(
        self, conversation: Conversation, expected_version: int
    ) -> Conversation:
        current = self.get_conversation(conversation.id)
        if current is None:
            raise VersionConflict(conversation.id, expected_version, None)
        old_token = current.join_link.token if current.join_link else None
        # The script re-checks the version, so a stale old_token read here
        # can only surface as a VersionConflict, never as a bad index swap.
        return self._run_save(conversation, expected_version, old_token)

    def list_conversations_for_user(self, user_id: str, limit: int = 50) -> List[Conversation]:
        ids = self.client.smembers(f"convo:user:{user_id}:conversations")
        matches: List[Conversation] = []
        for conversation_id in ids:
            conv = self.get_conversation(conversation_id)
            if conv is None or conv.status != ConversationStatus.ACTIVE:
                continue
            if any(p.user_id == user_id and p.is_active for p in conv.participants):
                matches.append(conv)
        matches.sort(key=lambda c: c.updated_at, reverse=True)
        return matches[:limit]

    def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        conversation_id = self.client.get(self._direct_key(user_a, user_b))
        if conversation_id is None:
            return None
        conv = self.get_conversation(conversation_id)
        if conv is None or conv.status != ConversationStatus.ACTIVE:
            return None
        return conv
