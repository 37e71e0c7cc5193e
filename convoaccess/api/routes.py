from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from convoaccess.api.schemas import (
    AddParticipantRequest,
    CapabilitiesResponse,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    CreateDirectConversationRequest,
    Envelope,
    JoinLinkRequest,
    JoinLinkResponse,
    JoinResponse,
    MAX_USER_ID_LENGTH,
    ParticipantResponse,
    UpdateRoleRequest,
)
from convoaccess.service.errors import AuthenticationError
from convoaccess.service.runtime import get_runtime
from convoaccess.storage.common import public_view, serialize_participant
from convoaccess.storage.models import Conversation, Participant

router = APIRouter(prefix="/v1")


def get_caller_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """Verified caller identity, injected by the authenticating gateway."""
    caller = (x_user_id or "").strip()
    if not caller or len(caller) > MAX_USER_ID_LENGTH:
        raise AuthenticationError("missing caller identity")
    return caller


def _conversation_to_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(**public_view(conversation))


def _participant_to_response(participant: Participant) -> ParticipantResponse:
    return ParticipantResponse(**serialize_participant(participant))


@router.post("/conversations", response_model=Envelope, status_code=201, tags=["conversations"])
def create_conversation(
    body: CreateConversationRequest, caller_id: str = Depends(get_caller_id)
):
    runtime = get_runtime()
    conversation = runtime.access.create_conversation(
        caller_id,
        body.type,
        name=body.name,
        description=body.description,
        who_can_add_participants=body.who_can_add_participants,
        participant_ids=body.participant_ids,
    )
    return Envelope(status="ok", data=_conversation_to_response(conversation))


@router.post(
    "/conversations/direct", response_model=Envelope, status_code=201, tags=["conversations"]
)
def create_direct_conversation(
    body: CreateDirectConversationRequest, caller_id: str = Depends(get_caller_id)
):
    runtime = get_runtime()
    conversation = runtime.access.create_direct_conversation(caller_id, body.user_id)
    return Envelope(status="ok", data=_conversation_to_response(conversation))


@router.get("/conversations", response_model=Envelope, tags=["conversations"])
def list_conversations(
    limit: Optional[int] = Query(None, ge=1, le=200),
    caller_id: str = Depends(get_caller_id),
):
    runtime = get_runtime()
    items = runtime.access.list_conversations_for_user(caller_id, limit=limit)
    return Envelope(
        status="ok",
        data=ConversationListResponse(items=[_conversation_to_response(c) for c in items]),
    )


@router.post("/conversations/join/{token}", response_model=Envelope, tags=["join-links"])
def join_by_token(
    token: str = Path(..., min_length=1, max_length=256),
    caller_id: str = Depends(get_caller_id),
):
    runtime = get_runtime()
    result = runtime.access.join_by_token(token, caller_id)
    return Envelope(
        status="ok",
        data=JoinResponse(
            conversation_id=result.conversation.id,
            participant=_participant_to_response(result.participant),
            newly_joined=result.newly_joined,
            usage_count=result.usage_count,
        ),
    )


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
def get_conversation(conversation_id: str, caller_id: str = Depends(get_caller_id)):
    runtime = get_runtime()
    conversation = runtime.access.get_conversation(conversation_id, caller_id)
    return Envelope(status="ok", data=_conversation_to_response(conversation))


@router.get(
    "/conversations/{conversation_id}/capabilities",
    response_model=Envelope,
    tags=["conversations"],
)
def get_capabilities(conversation_id: str, caller_id: str = Depends(get_caller_id)):
    runtime = get_runtime()
    capabilities = runtime.access.capabilities(conversation_id, caller_id)
    return Envelope(
        status="ok",
        data=CapabilitiesResponse(
            conversation_id=conversation_id, capabilities=capabilities
        ),
    )


@router.post(
    "/conversations/{conversation_id}/participants",
    response_model=Envelope,
    status_code=201,
    tags=["participants"],
)
def add_participant(
    conversation_id: str,
    body: AddParticipantRequest,
    caller_id: str = Depends(get_caller_id),
):
    runtime = get_runtime()
    participant = runtime.access.add_participant(
        conversation_id, body.user_id, caller_id, role=body.role
    )
    return Envelope(status="ok", data=_participant_to_response(participant))


@router.delete(
    "/conversations/{conversation_id}/participants/{user_id}",
    response_model=Envelope,
    tags=["participants"],
)
def remove_participant(
    conversation_id: str, user_id: str, caller_id: str = Depends(get_caller_id)
):
    runtime = get_runtime()
    participant = runtime.access.remove_participant(conversation_id, user_id, caller_id)
    return Envelope(status="ok", data=_participant_to_response(participant))


@router.put(
    "/conversations/{conversation_id}/participants/{user_id}/role",
    response_model=Envelope,
    tags=["participants"],
)
def update_participant_role(
    conversation_id: str,
    user_id: str,
    body: UpdateRoleRequest,
    caller_id: str = Depends(get_caller_id),
):
    runtime = get_runtime()
    participant = runtime.access.update_participant_role(
        conversation_id, user_id, body.role, caller_id
    )
    return Envelope(status="ok", data=_participant_to_response(participant))


@router.post(
    "/conversations/{conversation_id}/join-link",
    response_model=Envelope,
    status_code=201,
    tags=["join-links"],
)
def generate_join_link(
    conversation_id: str,
    body: JoinLinkRequest,
    caller_id: str = Depends(get_caller_id),
):
    runtime = get_runtime()
    link = runtime.access.generate_join_link(
        conversation_id,
        caller_id,
        expires_in_days=body.expires_in_days,
        usage_limit=body.usage_limit,
    )
    return Envelope(
        status="ok",
        data=JoinLinkResponse(
            token=link.token,
            url=runtime.access.share_url(link),
            expires_at=link.expires_at,
            usage_limit=link.usage_limit,
            usage_count=link.usage_count,
        ),
    )
