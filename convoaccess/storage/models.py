from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Participant roles, ordered from least to most privileged."""

    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank


_ROLE_RANK = {Role.MEMBER: 0, Role.MODERATOR: 1, Role.ADMIN: 2}


class ParticipantStatus(str, Enum):
    INVITED = "invited"
    ACTIVE = "active"
    REMOVED = "removed"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    SUPPORT = "support"
    ANNOUNCEMENT = "announcement"


class AddPolicy(str, Enum):
    """Who may add participants, stored as settings.who_can_add_participants."""

    ADMINS_ONLY = "admins_only"
    MODERATORS_AND_ADMINS = "moderators_and_admins"
    ALL_MEMBERS = "all_members"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass
class User:
    id: str
    handle: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Participant:
    user_id: str
    role: Role = Role.MEMBER
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    joined_at: datetime = field(default_factory=utcnow)
    invited_by: Optional[str] = None
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE


@dataclass
class JoinLink:
    token: str
    created_by: str
    expires_at: datetime
    usage_limit: Optional[int] = None
    usage_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def is_usable(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.is_exhausted()


@dataclass
class ConversationSettings:
    who_can_add_participants: AddPolicy = AddPolicy.ADMINS_ONLY


@dataclass
class Conversation:
    id: str
    type: ConversationType
    created_by: str
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    description: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    settings: ConversationSettings = field(default_factory=ConversationSettings)
    participants: List[Participant] = field(default_factory=list)
    join_link: Optional[JoinLink] = None
    # 0 until first persisted; the store bumps it on every successful save.
    version: int = 0

    @classmethod
    def new(
        cls,
        type: ConversationType,
        created_by: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        settings: Optional[ConversationSettings] = None,
        now: Optional[datetime] = None,
    ) -> "Conversation":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            type=type,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            name=name,
            description=description,
            settings=settings or ConversationSettings(),
        )

    @property
    def is_group(self) -> bool:
        return self.type == ConversationType.GROUP

    @property
    def is_direct(self) -> bool:
        return self.type == ConversationType.DIRECT

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()
