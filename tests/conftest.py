import pytest

from karma_node.engine import KarmaEngine
from karma_node.storage.state_store import MemoryStateStore

OWNER = "0xowner"


@pytest.fixture(scope="function")
def store():
    return MemoryStateStore()


@pytest.fixture(scope="function")
def engine(store):
    """Fresh engine per test, in-memory snapshot store."""
    return KarmaEngine(owner=OWNER, store=store)


@pytest.fixture
def alice(engine):
    engine.register_user("alice", {"github_handle": "alice-dev"})
    return "alice"


@pytest.fixture
def code_only(engine):
    """All weight on code contributions: karma == code_total // 4."""
    engine.set_weights(
        OWNER,
        {"code_weight": 10000, "governance_weight": 0, "forum_weight": 0, "identity_weight": 0},
    )


@pytest.fixture
def owner():
    return OWNER
