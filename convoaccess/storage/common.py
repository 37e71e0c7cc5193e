"""Serialization helpers shared between the memory and redis stores.

Both stores keep conversations as plain JSON-compatible dicts at rest so the
aggregate can be snapshotted to disk (memory) or written as one document
(redis) without either backend knowing about dataclass internals.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from convoaccess.storage.models import (
    AddPolicy,
    Conversation,
    ConversationSettings,
    ConversationStatus,
    ConversationType,
    JoinLink,
    Participant,
    ParticipantStatus,
    Role,
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def serialize_participant(participant: Participant) -> Dict[str, Any]:
    return {
        "user_id": participant.user_id,
        "role": participant.role.value,
        "status": participant.status.value,
        "joined_at": serialize_datetime(participant.joined_at),
        "invited_by": participant.invited_by,
        "removed_at": serialize_datetime(participant.removed_at),
        "removed_by": participant.removed_by,
    }


def deserialize_participant(data: Dict[str, Any]) -> Participant:
    return Participant(
        user_id=data["user_id"],
        role=Role(data.get("role", Role.MEMBER.value)),
        status=ParticipantStatus(data.get("status", ParticipantStatus.ACTIVE.value)),
        joined_at=deserialize_datetime(data["joined_at"]),
        invited_by=data.get("invited_by"),
        removed_at=deserialize_datetime(data.get("removed_at")),
        removed_by=data.get("removed_by"),
    )


def serialize_join_link(link: Optional[JoinLink]) -> Optional[Dict[str, Any]]:
    if link is None:
        return None
    return {
        "token": link.token,
        "created_by": link.created_by,
        "expires_at": serialize_datetime(link.expires_at),
        "usage_limit": link.usage_limit,
        "usage_count": link.usage_count,
        "created_at": serialize_datetime(link.created_at),
    }


def deserialize_join_link(data: Optional[Dict[str, Any]]) -> Optional[JoinLink]:
    if not data:
        return None
    return JoinLink(
        token=data["token"],
        created_by=data["created_by"],
        expires_at=deserialize_datetime(data["expires_at"]),
        usage_limit=data.get("usage_limit"),
        usage_count=int(data.get("usage_count", 0)),
        created_at=deserialize_datetime(data["created_at"]),
    )


def serialize_conversation(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "type": conversation.type.value,
        "created_by": conversation.created_by,
        "created_at": serialize_datetime(conversation.created_at),
        "updated_at": serialize_datetime(conversation.updated_at),
        "name": conversation.name,
        "description": conversation.description,
        "status": conversation.status.value,
        "settings": {
            "who_can_add_participants": conversation.settings.who_can_add_participants.value,
        },
        "participants": [serialize_participant(p) for p in conversation.participants],
        "join_link": serialize_join_link(conversation.join_link),
        "version": conversation.version,
    }


def deserialize_conversation(data: Dict[str, Any]) -> Conversation:
    settings = data.get("settings") or {}
    return Conversation(
        id=data["id"],
        type=ConversationType(data["type"]),
        created_by=data["created_by"],
        created_at=deserialize_datetime(data["created_at"]),
        updated_at=deserialize_datetime(data["updated_at"]),
        name=data.get("name"),
        description=data.get("description"),
        status=ConversationStatus(data.get("status", ConversationStatus.ACTIVE.value)),
        settings=ConversationSettings(
            who_can_add_participants=AddPolicy(
                settings.get("who_can_add_participants", AddPolicy.ADMINS_ONLY.value)
            )
        ),
        participants=[deserialize_participant(p) for p in data.get("participants", [])],
        join_link=deserialize_join_link(data.get("join_link")),
        version=int(data.get("version", 0)),
    )


def public_view(conversation: Conversation) -> Dict[str, Any]:
    """Outbound projection of a conversation with the join token stripped."""
    payload = serialize_conversation(conversation)
    link = payload.get("join_link")
    if link is not None:
        link.pop("token", None)
    return payload


__all__ = [
    "serialize_datetime",
    "deserialize_datetime",
    "serialize_participant",
    "deserialize_participant",
    "serialize_join_link",
    "deserialize_join_link",
    "serialize_conversation",
    "deserialize_conversation",
    "public_view",
]
