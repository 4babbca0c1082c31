"""
Pytest fixtures and test configuration for strata tests.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from strata.audit import AuditLog
from strata.storage import InMemoryPartitionStore, SQLitePartitionStore

BASE_TIME = 1_700_000_000.0

# One thread, five messages (3 user, 2 assistant), one explicit correction
# on the third message and no hallucination phrasing.
CLEAN_THREAD: List[Tuple[str, str]] = [
    ("user", "Let's design the memory architecture for the agent."),
    ("assistant", "The architecture uses three memory partitions with a review step for each module."),
    ("user", "That's incorrect, the review step should be optional."),
    ("assistant", "Understood, the review step is now optional in the design."),
    ("user", "Thanks, that covers the framework update."),
]

# Assistant turns full of unverifiable memory claims and absolutes
DRIFTING_THREAD: List[Tuple[str, str]] = [
    ("user", "How does the memory system handle conflicts?"),
    (
        "assistant",
        "I remember we decided this is definitely the perfect solution. "
        "It always works and never fails, absolutely guaranteed.",
    ),
    ("user", "Can you explain the module layout?"),
    (
        "assistant",
        "As I mentioned before, the framework is flawless and bug-free. "
        "It is definitely, certainly, absolutely the ultimate answer and can never crash.",
    ),
]


def build_conversation(
    conversation_id: str,
    messages: Sequence[Tuple[str, str]],
    title: str = "Test conversation",
    create_time: float = BASE_TIME,
    update_time: Optional[float] = None,
) -> Dict[str, Any]:
    """Build one conversation in the export shape (root node plus a chain of messages)."""
    mapping: Dict[str, Any] = {
        "root": {"id": "root", "message": None, "parent": None, "children": ["n0"] if messages else []}
    }
    for index, (role, text) in enumerate(messages):
        node_id = f"n{index}"
        mapping[node_id] = {
            "id": node_id,
            "message": {
                "id": f"{conversation_id}-m{index}",
                "author": {"role": role},
                "create_time": create_time + index,
                "content": {"content_type": "text", "parts": [text]},
                "metadata": {},
            },
            "parent": "root" if index == 0 else f"n{index - 1}",
            "children": [f"n{index + 1}"] if index + 1 < len(messages) else [],
        }
    return {
        "id": conversation_id,
        "title": title,
        "create_time": create_time,
        "update_time": update_time if update_time is not None else create_time + len(messages),
        "mapping": mapping,
    }


@pytest.fixture(autouse=True)
def strata_home(tmp_path, monkeypatch):
    """Keep the data directory (and its logs) inside the test's tmp dir."""
    home = tmp_path / "strata-home"
    monkeypatch.setenv("STRATA_DATA_DIR", str(home))
    for key in (
        "STRATA_MODE",
        "STRATA_AUDIT_LEVEL",
        "STRATA_BATCH_SIZE",
        "STRATA_MAX_WORKERS",
        "STRATA_MAX_BATCH_DRIFT",
        "STRATA_CONFIDENCE_THRESHOLD",
        "STRATA_THREAD_TIMEOUT",
        "STRATA_ROLLBACK_ON_FAILURE",
        "STRATA_RELEVANCE_KEYWORDS",
    ):
        monkeypatch.delenv(key, raising=False)
    yield home
    strata_logger = logging.getLogger("strata")
    for handler in list(strata_logger.handlers):
        strata_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def clean_conversation() -> Dict[str, Any]:
    return build_conversation("conv-clean", CLEAN_THREAD, title="Memory design")


@pytest.fixture
def drifting_conversation() -> Dict[str, Any]:
    return build_conversation("conv-drift", DRIFTING_THREAD, title="Overconfident answers")


@pytest.fixture
def export_file(tmp_path, clean_conversation):
    """An export file holding the clean conversation, in the object form."""
    path = tmp_path / "conversations.json"
    path.write_text(json.dumps({"conversations": [clean_conversation]}), encoding="utf-8")
    return path


@pytest.fixture
def audit_log():
    return AuditLog()


@pytest.fixture
def memory_store():
    return InMemoryPartitionStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLitePartitionStore(tmp_path / "strata.db")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Both store backends; tests using this run once per backend."""
    if request.param == "memory":
        return InMemoryPartitionStore()
    return SQLitePartitionStore(tmp_path / "strata.db")


@pytest.fixture
def make_conversation():
    """Factory fixture: ``make_conversation(id, [(role, text), ...], **kwargs)``."""
    return build_conversation


@pytest.fixture
def drifting_messages():
    return list(DRIFTING_THREAD)


@pytest.fixture
def thread_texts() -> Dict[str, List[Tuple[str, str]]]:
    """Canned message lists by name, for tests that build their own exports."""
    return {"clean": CLEAN_THREAD, "drift": DRIFTING_THREAD}
