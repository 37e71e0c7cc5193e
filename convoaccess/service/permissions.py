"""Role-based authorization for conversation membership actions.

The engine is a pure function of its inputs: it reads the conversation and
participant records it is handed and never touches storage, clocks or
randomness. Decisions are driven by the tables below rather than by
branching on role names, so the policy can be read (and tested) at a glance.

Evaluation order, first match wins:

1. the acting participant must be active
2. ADD_PARTICIPANT consults ``settings.who_can_add_participants``
3. REMOVE_PARTICIPANT never allows self-removal and only removes roles
   listed in ``REMOVABLE_ROLES`` for the actor
4. UPDATE_ROLE is admin-only, never on oneself, never to ``admin``
5. GENERATE_JOIN_LINK is admin-only

Direct conversations have fixed membership, so every membership action on
them is denied regardless of role.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from convoaccess.service.errors import ValidationError
from convoaccess.storage.models import AddPolicy, Conversation, Participant, Role


class Action(str, Enum):
    ADD_PARTICIPANT = "add_participant"
    REMOVE_PARTICIPANT = "remove_participant"
    UPDATE_ROLE = "update_role"
    GENERATE_JOIN_LINK = "generate_join_link"


_ALL_ROLES: FrozenSet[Role] = frozenset(Role)

# who_can_add_participants -> roles allowed to add
ADD_POLICY_ROLES: Dict[AddPolicy, FrozenSet[Role]] = {
    AddPolicy.ADMINS_ONLY: frozenset({Role.ADMIN}),
    AddPolicy.MODERATORS_AND_ADMINS: frozenset({Role.ADMIN, Role.MODERATOR}),
    AddPolicy.ALL_MEMBERS: _ALL_ROLES,
}

# acting role -> target roles it may remove
REMOVABLE_ROLES: Dict[Role, FrozenSet[Role]] = {
    Role.ADMIN: frozenset({Role.MODERATOR, Role.MEMBER}),
    Role.MODERATOR: frozenset({Role.MEMBER}),
    Role.MEMBER: frozenset(),
}

# action -> roles allowed regardless of conversation settings
FIXED_ACTION_ROLES: Dict[Action, FrozenSet[Role]] = {
    Action.UPDATE_ROLE: frozenset({Role.ADMIN}),
    Action.GENERATE_JOIN_LINK: frozenset({Role.ADMIN}),
}

# Roles that may be granted after creation. Admin is assigned only when a
# conversation is created.
ASSIGNABLE_ROLES: FrozenSet[Role] = frozenset({Role.MODERATOR, Role.MEMBER})

RoleLike = Union[Role, str]
ActionLike = Union[Action, str]


def _coerce_action(action: ActionLike) -> Action:
    try:
        return Action(action)
    except ValueError as exc:
        raise ValidationError(f"unknown action: {action!r}") from exc


def _coerce_role(role: Optional[RoleLike]) -> Optional[Role]:
    if role is None:
        return None
    try:
        return Role(role)
    except ValueError as exc:
        raise ValidationError(f"unknown role: {role!r}") from exc


def _find_active(conversation: Conversation, user_id: Optional[str]) -> Optional[Participant]:
    if user_id is None:
        return None
    for participant in conversation.participants:
        if participant.user_id == user_id and participant.is_active:
            return participant
    return None


class PermissionEngine:
    """Pure allow/deny decisions for membership actions."""

    def can_perform(
        self,
        conversation: Conversation,
        acting: Optional[Participant],
        action: ActionLike,
        target_id: Optional[str] = None,
        requested_role: Optional[RoleLike] = None,
    ) -> bool:
        if conversation is None:
            raise ValidationError("conversation is required")
        action = _coerce_action(action)
        requested_role = _coerce_role(requested_role)
        if action in (Action.REMOVE_PARTICIPANT, Action.UPDATE_ROLE) and not target_id:
            raise ValidationError(f"{action.value} requires a target user")
        if action == Action.UPDATE_ROLE and requested_role is None:
            raise ValidationError("update_role requires a requested role")

        if acting is None or not acting.is_active:
            return False
        if conversation.is_direct:
            return False

        if action == Action.ADD_PARTICIPANT:
            return self._can_add(conversation, acting, requested_role)
        if action == Action.REMOVE_PARTICIPANT:
            return self._can_remove(conversation, acting, target_id)
        if action == Action.UPDATE_ROLE:
            if acting.role not in FIXED_ACTION_ROLES[action]:
                return False
            if target_id == acting.user_id:
                return False
            return requested_role in ASSIGNABLE_ROLES
        return acting.role in FIXED_ACTION_ROLES[action]

    def _can_add(
        self,
        conversation: Conversation,
        acting: Participant,
        requested_role: Optional[Role],
    ) -> bool:
        role = requested_role or Role.MEMBER
        if role not in ASSIGNABLE_ROLES:
            return False
        if acting.role == Role.ADMIN:
            return True
        allowed = ADD_POLICY_ROLES[conversation.settings.who_can_add_participants]
        if acting.role not in allowed:
            return False
        # nobody below admin may hand out a role above their own
        return not role.outranks(acting.role)

    def _can_remove(
        self,
        conversation: Conversation,
        acting: Participant,
        target_id: str,
    ) -> bool:
        if target_id == acting.user_id:
            return False
        target = _find_active(conversation, target_id)
        # An absent target is judged as the lowest role; the caller reports
        # the missing membership separately.
        target_role = target.role if target is not None else Role.MEMBER
        return target_role in REMOVABLE_ROLES[acting.role]

    def evaluate(
        self,
        conversation: Conversation,
        acting_user_id: str,
        action: ActionLike,
        target_id: Optional[str] = None,
        requested_role: Optional[RoleLike] = None,
    ) -> bool:
        """``can_perform`` keyed by user id instead of participant record."""
        if conversation is None:
            raise ValidationError("conversation is required")
        acting = _find_active(conversation, acting_user_id)
        return self.can_perform(conversation, acting, action, target_id, requested_role)

    def capabilities(self, conversation: Conversation, acting_user_id: str) -> Dict[str, bool]:
        """Coarse per-action capabilities for UI rendering.

        Target-dependent actions are answered for the most permissive target
        the actor could have: a plain member other than themselves.
        """
        acting = _find_active(conversation, acting_user_id)
        if acting is None or not acting.is_active or conversation.is_direct:
            return {action.value: False for action in Action}
        return {
            Action.ADD_PARTICIPANT.value: self._can_add(conversation, acting, Role.MEMBER),
            Action.REMOVE_PARTICIPANT.value: bool(REMOVABLE_ROLES[acting.role]),
            Action.UPDATE_ROLE.value: acting.role in FIXED_ACTION_ROLES[Action.UPDATE_ROLE],
            Action.GENERATE_JOIN_LINK.value: acting.role
            in FIXED_ACTION_ROLES[Action.GENERATE_JOIN_LINK],
        }


__all__ = [
    "Action",
    "PermissionEngine",
    "ADD_POLICY_ROLES",
    "REMOVABLE_ROLES",
    "FIXED_ACTION_ROLES",
    "ASSIGNABLE_ROLES",
]
