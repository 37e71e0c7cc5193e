from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import List, Optional

from convoaccess.logging import get_logger
from convoaccess.service.errors import (
    AlreadyParticipantError,
    ConflictError,
    InvariantViolation,
    NotParticipantError,
    OrphanedAdminError,
    ValidationError,
)
from convoaccess.storage.models import (
    Conversation,
    ConversationType,
    Participant,
    ParticipantStatus,
    Role,
    utcnow,
)

logger = get_logger(__name__)

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
DIRECT_PARTICIPANT_COUNT = 2


def validate_conversation_fields(
    type: ConversationType, name: Optional[str], description: Optional[str]
) -> Optional[str]:
    """Check creation-time fields and return the normalized name."""
    normalized = name.strip() if name else None
    if type == ConversationType.GROUP and not normalized:
        raise ValidationError("group conversations must have a name")
    if normalized and len(normalized) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"conversation name cannot exceed {MAX_NAME_LENGTH} characters"
        )
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"conversation description cannot exceed {MAX_DESCRIPTION_LENGTH} characters"
        )
    return normalized


class ParticipantRegistry:
    """Membership view over a single conversation aggregate.

    All mutation of ``conversation.participants`` goes through this class so
    the per-conversation invariants hold after every transition:

    * at most one active record per user
    * removed records are terminal; re-adding appends a new record
    * a group never loses its last active admin
    * a direct conversation has exactly two active participants
    """

    def __init__(self, conversation: Conversation) -> None:
        self.conversation = conversation

    def find_active(self, user_id: str) -> Optional[Participant]:
        for participant in self.conversation.participants:
            if participant.user_id == user_id and participant.is_active:
                return participant
        return None

    def require_active(self, user_id: str) -> Participant:
        participant = self.find_active(user_id)
        if participant is None:
            raise NotParticipantError(
                "user is not an active participant",
                detail={"conversation_id": self.conversation.id, "user_id": user_id},
            )
        return participant

    def is_active(self, user_id: str) -> bool:
        return self.find_active(user_id) is not None

    def active(self) -> List[Participant]:
        return [p for p in self.conversation.participants if p.is_active]

    def active_admins(self) -> List[Participant]:
        return [p for p in self.active() if p.role == Role.ADMIN]

    def history(self, user_id: str) -> List[Participant]:
        return [p for p in self.conversation.participants if p.user_id == user_id]

    def add(
        self,
        user_id: str,
        role: Role = Role.MEMBER,
        *,
        invited_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Participant:
        if self.is_active(user_id):
            raise AlreadyParticipantError(
                "user is already a participant in this conversation",
                detail={"conversation_id": self.conversation.id, "user_id": user_id},
            )
        if (
            self.conversation.is_direct
            and len(self.active()) >= DIRECT_PARTICIPANT_COUNT
        ):
            raise ConflictError(
                "direct conversations cannot have more than 2 participants",
                detail={"conversation_id": self.conversation.id},
            )
        participant = Participant(
            user_id=user_id,
            role=role,
            status=ParticipantStatus.ACTIVE,
            joined_at=now or utcnow(),
            invited_by=invited_by,
        )
        self.conversation.participants.append(participant)
        return participant

    def would_orphan(self, target: Participant) -> bool:
        """True if deactivating or demoting ``target`` leaves a group adminless."""
        if not self.conversation.is_group or target.role != Role.ADMIN:
            return False
        return all(p is target for p in self.active_admins())

    def remove(
        self,
        user_id: str,
        *,
        removed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Participant:
        target = self.require_active(user_id)
        if self.would_orphan(target):
            raise OrphanedAdminError(
                "cannot remove the only active admin of a group conversation",
                detail={"conversation_id": self.conversation.id, "user_id": user_id},
            )
        target.status = ParticipantStatus.REMOVED
        target.removed_at = now or utcnow()
        target.removed_by = removed_by
        return target

    def set_role(self, user_id: str, role: Role) -> Participant:
        target = self.require_active(user_id)
        if target.role == Role.ADMIN and role != Role.ADMIN and self.would_orphan(target):
            raise OrphanedAdminError(
                "cannot demote the only active admin of a group conversation",
                detail={"conversation_id": self.conversation.id, "user_id": user_id},
            )
        target.role = role
        return target

    def check_invariants(self) -> None:
        """Raise ``InvariantViolation`` if the aggregate is in a corrupt state."""
        conv = self.conversation
        problems: List[str] = []
        counts = Counter(p.user_id for p in self.active())
        duplicated = sorted(uid for uid, n in counts.items() if n > 1)
        if duplicated:
            problems.append("duplicate active participants")
        if conv.is_group and not self.active_admins():
            problems.append("group has no active admin")
        if conv.is_direct and len(self.active()) != DIRECT_PARTICIPANT_COUNT:
            problems.append("direct conversation must have exactly two participants")
        link = conv.join_link
        if link is not None:
            if link.usage_count < 0:
                problems.append("join link usage count is negative")
            if link.usage_limit is not None and link.usage_count > link.usage_limit:
                problems.append("join link usage count exceeds its limit")
        if problems:
            logger.critical(
                "conversation_invariant_violation",
                conversation_id=conv.id,
                problems=problems,
                duplicated_users=duplicated,
            )
            raise InvariantViolation(
                "conversation state is inconsistent",
                detail={"conversation_id": conv.id, "problems": problems},
            )


__all__ = [
    "ParticipantRegistry",
    "validate_conversation_fields",
    "MAX_NAME_LENGTH",
    "MAX_DESCRIPTION_LENGTH",
]
