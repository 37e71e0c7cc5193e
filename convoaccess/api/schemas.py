from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from convoaccess.service.registry import MAX_DESCRIPTION_LENGTH, MAX_NAME_LENGTH

MAX_INITIAL_PARTICIPANTS = 1000
MAX_USER_ID_LENGTH = 255


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


RoleName = Literal["admin", "moderator", "member"]
AddPolicyName = Literal["admins_only", "moderators_and_admins", "all_members"]


class CreateConversationRequest(BaseModel):
    type: Literal["group", "support", "announcement"] = "group"
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    who_can_add_participants: AddPolicyName = "admins_only"
    participant_ids: List[str] = Field(
        default_factory=list, max_length=MAX_INITIAL_PARTICIPANTS
    )

    @field_validator("name", "description")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value else value


class CreateDirectConversationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=MAX_USER_ID_LENGTH)


class AddParticipantRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=MAX_USER_ID_LENGTH)
    # "admin" passes schema validation on purpose; the permission engine
    # answers it with 403 like any other disallowed grant.
    role: RoleName = "member"


class UpdateRoleRequest(BaseModel):
    role: RoleName


class JoinLinkRequest(BaseModel):
    expires_in_days: Optional[int] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=1)


class ParticipantResponse(BaseModel):
    user_id: str
    role: RoleName
    status: Literal["invited", "active", "removed"]
    joined_at: datetime
    invited_by: Optional[str] = None
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None


class JoinLinkSummary(BaseModel):
    """Join link state without the bearer token."""

    created_by: str
    expires_at: datetime
    usage_limit: Optional[int] = None
    usage_count: int
    created_at: datetime


class ConversationResponse(BaseModel):
    id: str
    type: str
    name: Optional[str] = None
    description: Optional[str] = None
    status: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    settings: Dict[str, str]
    participants: List[ParticipantResponse]
    join_link: Optional[JoinLinkSummary] = None
    version: int


class ConversationListResponse(BaseModel):
    items: List[ConversationResponse]


class JoinLinkResponse(BaseModel):
    """Returned once, to the issuing admin; the only place the token appears."""

    token: str
    url: str
    expires_at: datetime
    usage_limit: Optional[int] = None
    usage_count: int


class JoinResponse(BaseModel):
    conversation_id: str
    participant: ParticipantResponse
    newly_joined: bool
    usage_count: int


class CapabilitiesResponse(BaseModel):
    conversation_id: str
    capabilities: Dict[str, bool]
