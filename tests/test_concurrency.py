"""Concurrent callers racing on the same conversation."""

import threading
import time
import uuid

import pytest

from convoaccess.service.errors import (
    AuthorizationError,
    ConflictError,
    InvalidOrExpiredLinkError,
    NotFoundError,
)
from convoaccess.storage.errors import VersionConflict
from convoaccess.storage.models import Role


def _race(workers):
    """Start every worker at the same instant and collect outcomes."""
    barrier = threading.Barrier(len(workers))
    outcomes = [None] * len(workers)

    def run(index, fn):
        barrier.wait()
        try:
            outcomes[index] = ("ok", fn())
        except Exception as exc:
            outcomes[index] = ("error", exc)

    threads = [
        threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(workers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return outcomes


def test_single_use_link_admits_exactly_one(service, group):
    link = service.generate_join_link(group.id, "alice", usage_limit=1)
    outcomes = _race(
        [
            lambda: service.join_by_token(link.token, "dave"),
            lambda: service.join_by_token(link.token, "erin"),
        ]
    )
    successes = [value for kind, value in outcomes if kind == "ok"]
    failures = [value for kind, value in outcomes if kind == "error"]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidOrExpiredLinkError)
    assert isinstance(failures[0], ConflictError)
    conversation = service.get_conversation(group.id, "alice")
    assert conversation.join_link.usage_count == 1


def test_many_joiners_respect_usage_limit(store, service, group):
    joiners = [f"user-{i}" for i in range(12)]
    for user_id in joiners:
        store.create_user(user_id)
    link = service.generate_join_link(group.id, "alice", usage_limit=5)
    outcomes = _race(
        [lambda uid=uid: service.join_by_token(link.token, uid) for uid in joiners]
    )
    assert sum(1 for kind, _ in outcomes if kind == "ok") == 5
    assert all(
        isinstance(value, InvalidOrExpiredLinkError)
        for kind, value in outcomes
        if kind == "error"
    )
    conversation = service.get_conversation(group.id, "alice")
    assert conversation.join_link.usage_count == 5
    joined = {p.user_id for p in conversation.participants if p.is_active} & set(joiners)
    assert len(joined) == 5


def test_concurrent_membership_changes_keep_an_admin(service, group):
    workers = [
        lambda: service.remove_participant(group.id, "carol", "bob"),
        lambda: service.add_participant(group.id, "dave", "alice"),
        lambda: service.remove_participant(group.id, "alice", "bob"),
        lambda: service.update_participant_role(group.id, "bob", "member", "alice"),
        lambda: service.remove_participant(group.id, "alice", "alice"),
    ]
    outcomes = _race(workers)
    for kind, value in outcomes:
        if kind == "error":
            assert isinstance(value, (AuthorizationError, NotFoundError, ConflictError))
    conversation = service.get_conversation(group.id, "alice")
    admins = [p for p in conversation.participants if p.is_active and p.role == Role.ADMIN]
    assert [p.user_id for p in admins] == ["alice"]
    active = [p.user_id for p in conversation.participants if p.is_active]
    assert len(active) == len(set(active))


class _FlakyStore:
    """Delegating store whose first saves lose the optimistic race."""

    def __init__(self, inner, failures):
        self._inner = inner
        self.failures = failures
        self.save_calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def save_conversation(self, conversation, expected_version):
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise VersionConflict(conversation.id, expected_version, expected_version + 1)
        return self._inner.save_conversation(conversation, expected_version)


def test_version_conflict_is_retried(store, clock, group):
    from convoaccess.service.access import ConversationAccessService
    from convoaccess.service.tokens import TokenGenerator

    flaky = _FlakyStore(store, failures=2)
    service = ConversationAccessService(
        flaky, store, TokenGenerator(store.join_token_exists, clock=clock), clock=clock
    )
    participant = service.add_participant(group.id, "dave", "alice")
    assert participant.is_active
    assert flaky.save_calls == 3


def test_exhausted_version_retries_surface_conflict(store, clock, group):
    from convoaccess.service.access import ConversationAccessService
    from convoaccess.service.tokens import TokenGenerator

    flaky = _FlakyStore(store, failures=10)
    service = ConversationAccessService(
        flaky,
        store,
        TokenGenerator(store.join_token_exists, clock=clock),
        mutation_retry_attempts=3,
        clock=clock,
    )
    with pytest.raises(ConflictError):
        service.add_participant(group.id, "dave", "alice")
    assert flaky.save_calls == 3
    assert "dave" not in {
        p.user_id for p in store.get_conversation(group.id).participants if p.is_active
    }


def test_lock_timeout_raises_conflict(make_service, group):
    service = make_service(lock_timeout_seconds=0.05)
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with service._locks.hold(group.id, 1.0):
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    try:
        assert held.wait(timeout=5)
        with pytest.raises(ConflictError):
            service.add_participant(group.id, "dave", "alice")
    finally:
        release.set()
        holder.join(timeout=5)


class _SlowDirectLookup:
    """Delegating store that widens the gap between direct lookup and create."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def find_direct_conversation(self, user_a, user_b):
        found = self._inner.find_direct_conversation(user_a, user_b)
        time.sleep(0.05)
        return found


def test_racing_direct_creates_share_one_conversation(store, make_service):
    service = make_service()
    service.store = _SlowDirectLookup(store)
    outcomes = _race(
        [
            lambda: service.create_direct_conversation("alice", "bob"),
            lambda: service.create_direct_conversation("bob", "alice"),
        ]
    )
    assert [kind for kind, _ in outcomes] == ["ok", "ok"]
    assert outcomes[0][1].id == outcomes[1][1].id
    direct = [
        c for c in store.list_conversations_for_user("alice") if c.type.value == "direct"
    ]
    assert len(direct) == 1


def test_unknown_conversations_leave_no_lock_entries(service):
    for _ in range(200):
        with pytest.raises(NotFoundError):
            service.remove_participant(str(uuid.uuid4()), "bob", "alice")
    assert len(service._locks) == 0


def test_lock_entries_released_after_contention(store, service, group):
    for user_id in ("gina", "hank"):
        store.create_user(user_id)
    _race(
        [
            lambda: service.add_participant(group.id, "dave", "alice"),
            lambda: service.add_participant(group.id, "erin", "alice"),
            lambda: service.add_participant(group.id, "gina", "alice"),
            lambda: service.create_direct_conversation("alice", "hank"),
        ]
    )
    assert len(service._locks) == 0
    active = {p.user_id for p in service.get_conversation(group.id, "alice").participants}
    assert {"dave", "erin", "gina"} <= active


def test_lock_timeout_releases_entry(make_service, group):
    service = make_service(lock_timeout_seconds=0.05)
    with service._locks.hold(group.id, 1.0):
        with pytest.raises(ConflictError):
            service.add_participant(group.id, "dave", "alice")
        assert len(service._locks) == 1
    assert len(service._locks) == 0
