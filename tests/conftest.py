import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_JSON", "true")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from convoaccess.service.access import ConversationAccessService  # noqa: E402
from convoaccess.service.permissions import PermissionEngine  # noqa: E402
from convoaccess.service.runtime import reset_runtime_for_tests  # noqa: E402
from convoaccess.service.tokens import TokenGenerator  # noqa: E402
from convoaccess.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = MemoryStore()
    for user_id in ("alice", "bob", "carol", "dave", "erin", "frank"):
        store.create_user(user_id)
    return store


@pytest.fixture
def make_service(store, clock):
    def _make(**kwargs):
        tokens = TokenGenerator(
            store.join_token_exists,
            base_url="https://chat.example.com",
            clock=clock,
        )
        return ConversationAccessService(
            store, store, tokens, PermissionEngine(), clock=clock, **kwargs
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def group(service):
    """Group owned by alice with bob as moderator and carol as member."""
    conversation = service.create_conversation(
        "alice", name="Project", participant_ids=["bob", "carol"]
    )
    service.update_participant_role(conversation.id, "bob", "moderator", "alice")
    return service.get_conversation(conversation.id, "alice")
