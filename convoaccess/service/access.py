from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
)

from convoaccess.logging import get_logger, token_fingerprint
from convoaccess.service.errors import (
    AuthorizationError,
    ConflictError,
    InvalidOrExpiredLinkError,
    NotFoundError,
    ValidationError,
)
from convoaccess.service.permissions import Action, PermissionEngine
from convoaccess.service.registry import ParticipantRegistry, validate_conversation_fields
from convoaccess.service.tokens import TokenGenerator
from convoaccess.storage.errors import ConstraintViolation, VersionConflict
from convoaccess.storage.models import (
    AddPolicy,
    Conversation,
    ConversationSettings,
    ConversationStatus,
    ConversationType,
    JoinLink,
    Participant,
    Role,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")
RoleLike = Union[Role, str]


class ConversationStore(Protocol):
    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def get_conversation_by_token(self, token: str) -> Optional[Conversation]: ...

    def save_conversation(
        self, conversation: Conversation, expected_version: int
    ) -> Conversation: ...

    def join_token_exists(self, token: str) -> bool: ...

    def list_conversations_for_user(
        self, user_id: str, limit: int = 50
    ) -> List[Conversation]: ...

    def find_direct_conversation(
        self, user_a: str, user_b: str
    ) -> Optional[Conversation]: ...


class IdentityDirectory(Protocol):
    def user_exists(self, user_id: str) -> bool: ...


@dataclass
class JoinResult:
    conversation: Conversation
    participant: Participant
    newly_joined: bool
    usage_count: int


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class _ConversationLocks:
    """Per-conversation mutexes with bounded acquisition.

    Entries are reference counted by holders and waiters and dropped when the
    last one leaves, so the map only ever holds keys that are in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextlib.contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning("conversation_lock_timeout", lock_key=key, timeout_seconds=timeout)
                raise ConflictError(
                    "conversation is busy; retry the request",
                    detail={"conversation_id": key},
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


def _coerce_role(role: RoleLike) -> Role:
    try:
        return Role(role)
    except ValueError as exc:
        raise ValidationError(f"unknown role: {role!r}", detail={"role": role}) from exc


class ConversationAccessService:
    """Membership and join-link workflows for conversations.

    Every mutation runs as load -> decide -> compare-and-swap save on a single
    conversation aggregate, inside that conversation's lock. A transition
    either lands with its save or leaves no trace. Version conflicts from
    other processes trigger a bounded reload-and-retry.
    """

    def __init__(
        self,
        store: ConversationStore,
        identities: IdentityDirectory,
        tokens: TokenGenerator,
        permissions: Optional[PermissionEngine] = None,
        *,
        default_expiry_days: int = 7,
        max_expiry_days: int = 365,
        count_rejoins_against_limit: bool = True,
        mutation_retry_attempts: int = 3,
        lock_timeout_seconds: float = 5.0,
        default_list_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.identities = identities
        self.tokens = tokens
        self.permissions = permissions or PermissionEngine()
        self.default_expiry_days = default_expiry_days
        self.max_expiry_days = max_expiry_days
        self.count_rejoins_against_limit = count_rejoins_against_limit
        self.mutation_retry_attempts = max(1, mutation_retry_attempts)
        self.lock_timeout_seconds = lock_timeout_seconds
        self.default_list_limit = default_list_limit
        self._clock = clock
        self._locks = _ConversationLocks()
        self.logger = logger

    # -- helpers ------------------------------------------------------------

    def _load(self, conversation_id: str) -> Conversation:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(
                "conversation not found", detail={"conversation_id": conversation_id}
            )
        return conversation

    def _require_user(self, user_id: str) -> None:
        if not user_id:
            raise ValidationError("user id is required")
        if not self.identities.user_exists(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})

    def _authorize(
        self,
        conversation: Conversation,
        acting_user_id: str,
        action: Action,
        target_id: Optional[str] = None,
        requested_role: Optional[Role] = None,
    ) -> Participant:
        acting = ParticipantRegistry(conversation).find_active(acting_user_id)
        allowed = self.permissions.can_perform(
            conversation, acting, action, target_id, requested_role
        )
        if not allowed:
            self.logger.warning(
                "permission_denied",
                conversation_id=conversation.id,
                acting_user_id=acting_user_id,
                action=action.value,
                target_id=target_id,
                requested_role=requested_role.value if requested_role else None,
            )
            raise AuthorizationError(
                f"not permitted to {action.value.replace('_', ' ')}",
                detail={"conversation_id": conversation.id, "action": action.value},
            )
        return acting

    def _mutate(
        self, conversation_id: str, mutation: Callable[[Conversation], T]
    ) -> Tuple[Conversation, T]:
        # unknown ids fail here without taking a lock
        self._load(conversation_id)
        with self._locks.hold(conversation_id, self.lock_timeout_seconds):
            for attempt in range(1, self.mutation_retry_attempts + 1):
                conversation = self._load(conversation_id)
                expected_version = conversation.version
                result = mutation(conversation)
                conversation.touch(self._clock())
                ParticipantRegistry(conversation).check_invariants()
                try:
                    saved = self.store.save_conversation(conversation, expected_version)
                except VersionConflict as exc:
                    self.logger.warning(
                        "conversation_version_conflict",
                        conversation_id=conversation_id,
                        attempt=attempt,
                        expected_version=exc.expected_version,
                        actual_version=exc.actual_version,
                    )
                    continue
                return saved, result
        raise ConflictError(
            "conversation was modified concurrently; retry the request",
            detail={"conversation_id": conversation_id},
        )

    # -- conversation lifecycle ---------------------------------------------

    def create_conversation(
        self,
        created_by: str,
        type: Union[ConversationType, str] = ConversationType.GROUP,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        who_can_add_participants: Union[AddPolicy, str] = AddPolicy.ADMINS_ONLY,
        participant_ids: Iterable[str] = (),
    ) -> Conversation:
        try:
            conv_type = ConversationType(type)
            policy = AddPolicy(who_can_add_participants)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if conv_type == ConversationType.DIRECT:
            raise ValidationError(
                "use create_direct_conversation for direct conversations"
            )
        normalized_name = validate_conversation_fields(conv_type, name, description)
        self._require_user(created_by)
        now = self._clock()
        conversation = Conversation.new(
            conv_type,
            created_by,
            name=normalized_name,
            description=description,
            settings=ConversationSettings(who_can_add_participants=policy),
            now=now,
        )
        registry = ParticipantRegistry(conversation)
        registry.add(created_by, Role.ADMIN, now=now)
        for user_id in dict.fromkeys(participant_ids):
            if user_id == created_by:
                continue
            self._require_user(user_id)
            registry.add(user_id, Role.MEMBER, invited_by=created_by, now=now)
        registry.check_invariants()
        stored = self.store.create_conversation(conversation)
        self.logger.info(
            "conversation_created",
            conversation_id=stored.id,
            type=stored.type.value,
            created_by=created_by,
            participants=len(stored.participants),
        )
        return stored

    def create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        if user_id == other_user_id:
            raise ValidationError("cannot start a direct conversation with yourself")
        self._require_user(user_id)
        self._require_user(other_user_id)
        pair_key = "direct:" + ":".join(sorted((user_id, other_user_id)))
        with self._locks.hold(pair_key, self.lock_timeout_seconds):
            existing = self.store.find_direct_conversation(user_id, other_user_id)
            if existing is not None:
                return existing
            now = self._clock()
            conversation = Conversation.new(ConversationType.DIRECT, user_id, now=now)
            registry = ParticipantRegistry(conversation)
            # both ends of a direct conversation are peers
            registry.add(user_id, Role.ADMIN, now=now)
            registry.add(other_user_id, Role.ADMIN, invited_by=user_id, now=now)
            registry.check_invariants()
            try:
                stored = self.store.create_conversation(conversation)
            except ConstraintViolation as exc:
                # another process claimed the pair first
                winner = self.store.find_direct_conversation(user_id, other_user_id)
                if winner is None:
                    raise ConflictError(exc.message, detail=exc.detail) from exc
                return winner
        self.logger.info(
            "direct_conversation_created",
            conversation_id=stored.id,
            created_by=user_id,
        )
        return stored

    def get_conversation(self, conversation_id: str, acting_user_id: str) -> Conversation:
        conversation = self._load(conversation_id)
        if not ParticipantRegistry(conversation).is_active(acting_user_id):
            raise AuthorizationError(
                "not a participant of this conversation",
                detail={"conversation_id": conversation_id},
            )
        return conversation

    def list_conversations_for_user(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[Conversation]:
        limit = limit or self.default_list_limit
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        return self.store.list_conversations_for_user(user_id, limit=limit)

    # -- capability queries -------------------------------------------------

    def evaluate(
        self,
        conversation_id: str,
        acting_user_id: str,
        action: Union[Action, str],
        target_id: Optional[str] = None,
        requested_role: Optional[RoleLike] = None,
    ) -> bool:
        conversation = self._load(conversation_id)
        return self.permissions.evaluate(
            conversation, acting_user_id, action, target_id, requested_role
        )

    def capabilities(self, conversation_id: str, acting_user_id: str) -> Dict[str, bool]:
        conversation = self._load(conversation_id)
        return self.permissions.capabilities(conversation, acting_user_id)

    # -- membership ---------------------------------------------------------

    def add_participant(
        self,
        conversation_id: str,
        target_user_id: str,
        acting_user_id: str,
        role: RoleLike = Role.MEMBER,
    ) -> Participant:
        requested_role = _coerce_role(role)
        self._require_user(target_user_id)

        def mutation(conversation: Conversation) -> Participant:
            self._authorize(
                conversation,
                acting_user_id,
                Action.ADD_PARTICIPANT,
                target_user_id,
                requested_role,
            )
            return ParticipantRegistry(conversation).add(
                target_user_id,
                requested_role,
                invited_by=acting_user_id,
                now=self._clock(),
            )

        _, participant = self._mutate(conversation_id, mutation)
        self.logger.info(
            "participant_added",
            conversation_id=conversation_id,
            user_id=target_user_id,
            role=participant.role.value,
            added_by=acting_user_id,
        )
        return participant

    def remove_participant(
        self, conversation_id: str, target_user_id: str, acting_user_id: str
    ) -> Participant:
        def mutation(conversation: Conversation) -> Participant:
            self._authorize(
                conversation, acting_user_id, Action.REMOVE_PARTICIPANT, target_user_id
            )
            return ParticipantRegistry(conversation).remove(
                target_user_id, removed_by=acting_user_id, now=self._clock()
            )

        _, participant = self._mutate(conversation_id, mutation)
        self.logger.info(
            "participant_removed",
            conversation_id=conversation_id,
            user_id=target_user_id,
            removed_by=acting_user_id,
        )
        return participant

    def update_participant_role(
        self,
        conversation_id: str,
        target_user_id: str,
        new_role: RoleLike,
        acting_user_id: str,
    ) -> Participant:
        requested_role = _coerce_role(new_role)

        def mutation(conversation: Conversation) -> Participant:
            self._authorize(
                conversation,
                acting_user_id,
                Action.UPDATE_ROLE,
                target_user_id,
                requested_role,
            )
            return ParticipantRegistry(conversation).set_role(target_user_id, requested_role)

        _, participant = self._mutate(conversation_id, mutation)
        self.logger.info(
            "participant_role_updated",
            conversation_id=conversation_id,
            user_id=target_user_id,
            role=participant.role.value,
            updated_by=acting_user_id,
        )
        return participant

    # -- join links ---------------------------------------------------------

    def generate_join_link(
        self,
        conversation_id: str,
        acting_user_id: str,
        expires_in_days: Optional[int] = None,
        usage_limit: Optional[int] = None,
    ) -> JoinLink:
        """Issue a new join link, superseding any previous one."""
        if expires_in_days is None:
            expires_in_days = self.default_expiry_days
        if isinstance(expires_in_days, int) and expires_in_days > self.max_expiry_days:
            raise ValidationError(
                f"expires_in_days cannot exceed {self.max_expiry_days}",
                detail={"expires_in_days": expires_in_days},
            )

        def mutation(conversation: Conversation) -> JoinLink:
            self._authorize(conversation, acting_user_id, Action.GENERATE_JOIN_LINK)
            link = self.tokens.issue(expires_in_days, usage_limit, acting_user_id)
            conversation.join_link = link
            return link

        saved, link = self._mutate(conversation_id, mutation)
        self.logger.info(
            "join_link_generated",
            conversation_id=conversation_id,
            created_by=acting_user_id,
            expires_at=link.expires_at.isoformat(),
            usage_limit=link.usage_limit,
            token_fingerprint=token_fingerprint(link.token),
        )
        return saved.join_link

    def share_url(self, link: JoinLink) -> str:
        return self.tokens.share_url(link.token)

    def _reject_link(self, token: str, reason: str, **fields) -> InvalidOrExpiredLinkError:
        self.logger.info(
            "join_link_rejected",
            reason=reason,
            token_fingerprint=token_fingerprint(token),
            **fields,
        )
        return InvalidOrExpiredLinkError("invalid or expired join link")

    def join_by_token(self, token: str, joining_user_id: str) -> JoinResult:
        """Consume a join link and make ``joining_user_id`` an active member.

        The usability check and the usage increment happen on the same loaded
        aggregate and land through one compare-and-swap save, so concurrent
        joiners can never push ``usage_count`` past ``usage_limit``.
        """
        if not token:
            raise ValidationError("join token is required")
        self._require_user(joining_user_id)
        located = self.store.get_conversation_by_token(token)
        if located is None:
            raise self._reject_link(token, "unknown")
        conversation_id = located.id

        def mutation(conversation: Conversation) -> Tuple[Participant, bool]:
            link = conversation.join_link
            if link is None or link.token != token:
                raise self._reject_link(token, "superseded", conversation_id=conversation.id)
            if conversation.status != ConversationStatus.ACTIVE:
                raise self._reject_link(token, "inactive", conversation_id=conversation.id)
            now = self._clock()
            if link.is_expired(now):
                raise self._reject_link(token, "expired", conversation_id=conversation.id)
            if link.is_exhausted():
                raise self._reject_link(token, "exhausted", conversation_id=conversation.id)
            registry = ParticipantRegistry(conversation)
            existing = registry.find_active(joining_user_id)
            link.usage_count += 1
            if existing is not None:
                return existing, False
            return registry.add(joining_user_id, Role.MEMBER, now=now), True

        if not self.count_rejoins_against_limit:
            already = self._rejoin_without_consuming(conversation_id, token, joining_user_id)
            if already is not None:
                return already

        saved, (participant, newly_joined) = self._mutate(conversation_id, mutation)
        self.logger.info(
            "join_link_consumed",
            conversation_id=conversation_id,
            user_id=joining_user_id,
            newly_joined=newly_joined,
            usage_count=saved.join_link.usage_count,
            usage_limit=saved.join_link.usage_limit,
            token_fingerprint=token_fingerprint(token),
        )
        return JoinResult(
            conversation=saved,
            participant=participant,
            newly_joined=newly_joined,
            usage_count=saved.join_link.usage_count,
        )

    def _rejoin_without_consuming(
        self, conversation_id: str, token: str, joining_user_id: str
    ) -> Optional[JoinResult]:
        """Validate the link for an already-active joiner without using it up."""
        with self._locks.hold(conversation_id, self.lock_timeout_seconds):
            conversation = self._load(conversation_id)
            existing = ParticipantRegistry(conversation).find_active(joining_user_id)
            if existing is None:
                return None
            link = conversation.join_link
            if (
                link is None
                or link.token != token
                or conversation.status != ConversationStatus.ACTIVE
                or not link.is_usable(self._clock())
            ):
                raise self._reject_link(token, "unusable", conversation_id=conversation_id)
            return JoinResult(
                conversation=conversation,
                participant=existing,
                newly_joined=False,
                usage_count=link.usage_count,
            )


__all__ = [
    "ConversationAccessService",
    "ConversationStore",
    "IdentityDirectory",
    "JoinResult",
]
