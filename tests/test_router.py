"""Tests for the memory router: strategy constraints, indexes, idempotence, overrides."""

from unittest.mock import MagicMock

import pytest

from strata.audit import AuditLog
from strata.config import PipelineConfig
from strata.drift.analyzer import DriftAnalyzer
from strata.importers import parse_export
from strata.protocols import StorageError, StorageUnavailableError
from strata.router import MemoryRouter, RoutingResult, apply_strategy, relevance_score
from strata.storage import InMemoryPartitionStore
from strata.types import (
    ConfidenceScore,
    Destination,
    IntegrationStrategy,
    Message,
    MessageDriftAnalysis,
    ParsedThread,
    PatternObservation,
    PatternType,
    Role,
    ThreadAnalysis,
    ThreadDriftProfile,
)


def _analysis(sequence, destination, role="assistant", content="Some content.", confidence=90,
              patterns=False, correction=False, thread_id="t1"):
    message = Message(
        id=f"{thread_id}-m{sequence}",
        thread_id=thread_id,
        role=Role(role),
        content=content,
        created_at=1000.0 + sequence,
        sequence=sequence,
        confidence=ConfidenceScore(overall=confidence, has_correction=correction),
    )
    observations = (
        [PatternObservation(type=PatternType.TONE_DRIFT, severity=40, description="x")] if patterns else []
    )
    return MessageDriftAnalysis(
        message=message, drift_score=40.0 if patterns else 0.0, destination=destination, observations=observations
    )


def _thread(analyses, strategy=IntegrationStrategy.FULL, thread_id="t1"):
    return ThreadAnalysis(
        thread=ParsedThread(id=thread_id, title="t", messages=[a.message for a in analyses]),
        profile=ThreadDriftProfile(thread_id=thread_id, strategy=strategy, message_count=len(analyses)),
        analyses=list(analyses),
    )


def _analyzed(conversation):
    return DriftAnalyzer().analyze_thread(parse_export([conversation]).threads[0])


class TestApplyStrategy:
    def test_full_keeps_verdict(self):
        analysis = _analysis(0, Destination.PRIMARY, patterns=True)
        assert apply_strategy(analysis, IntegrationStrategy.FULL) == Destination.PRIMARY

    def test_filtered_demotes_flagged_primary(self):
        flagged = _analysis(0, Destination.PRIMARY, patterns=True)
        clean = _analysis(1, Destination.PRIMARY)
        assert apply_strategy(flagged, IntegrationStrategy.FILTERED) == Destination.SANDBOX
        assert apply_strategy(clean, IntegrationStrategy.FILTERED) == Destination.PRIMARY

    def test_filtered_keeps_corrections(self):
        correction = _analysis(0, Destination.PRIMARY, role="user", patterns=True, correction=True)
        assert apply_strategy(correction, IntegrationStrategy.FILTERED) == Destination.PRIMARY

    def test_sandbox_only(self):
        assert apply_strategy(_analysis(0, Destination.PRIMARY), IntegrationStrategy.SANDBOX_ONLY) == Destination.SANDBOX
        assert (
            apply_strategy(_analysis(0, Destination.QUARANTINE), IntegrationStrategy.SANDBOX_ONLY)
            == Destination.QUARANTINE
        )

    def test_reject_quarantines_everything(self):
        assert apply_strategy(_analysis(0, Destination.PRIMARY), IntegrationStrategy.REJECT) == Destination.QUARANTINE


class TestCommitBatch:
    def test_clean_thread(self, store, clean_conversation):
        router = MemoryRouter(store)
        result = router.commit_batch([_analyzed(clean_conversation)], "run:1")

        assert (result.primary, result.sandbox, result.quarantine) == (5, 0, 0)
        assert result.attempted == result.processed == 5
        assert result.processed_ratio == 1.0
        assert store.partition_counts() == {"primary": 5, "sandbox": 0, "quarantine": 0}
        # All three user messages score above the source-author threshold
        assert result.source_author == 3
        assert store.index_counts()["source_author"] == 3

    def test_rejected_thread(self, memory_store, drifting_conversation):
        router = MemoryRouter(memory_store)
        result = router.commit_batch([_analyzed(drifting_conversation)], "run:1")
        assert result.quarantine == 4
        assert result.rejected == 4
        assert result.primary == 0

    def test_relevance_index(self, memory_store, clean_conversation):
        router = MemoryRouter(memory_store)
        router.commit_batch([_analyzed(clean_conversation)], "run:1")
        entries = {e.message_id: e for e in memory_store.list_subject_relevance()}
        first = entries["conv-clean-m0"]
        assert first.keywords == ["memory", "architecture"]
        assert first.relevance_score == 20

    def test_keywords_match_whole_words(self, memory_store):
        router = MemoryRouter(memory_store, config=PipelineConfig(relevance_keywords=["audit"]))
        assert router.matched_keywords("auditing the audit trail") == ["audit"]
        assert router.matched_keywords("auditing only") == []

    def test_recommit_is_idempotent(self, store, clean_conversation):
        router = MemoryRouter(store)
        analysis = _analyzed(clean_conversation)
        first = router.commit_batch([analysis], "run:1")
        second = router.commit_batch([analysis], "run:2")
        assert first.changed == 5
        assert second.changed == 0
        assert store.partition_counts()["primary"] == 5

    def test_dry_run_writes_nothing(self, memory_store, clean_conversation):
        router = MemoryRouter(memory_store)
        result = router.commit_batch([_analyzed(clean_conversation)], "run:1", dry_run=True)
        assert result.dry_run is True
        assert result.primary == 5
        assert memory_store.partition_counts() == {"primary": 0, "sandbox": 0, "quarantine": 0}

    def test_failed_write_counted_not_dropped(self):
        store = MagicMock()
        store.commit_message.side_effect = [True, StorageError("disk full"), True]
        sink = AuditLog()
        router = MemoryRouter(store, sink=sink)
        thread = _thread([_analysis(i, Destination.PRIMARY) for i in range(3)])

        result = router.commit_batch([thread], "run:1")
        assert result.attempted == 3
        assert result.processed == 2
        assert result.not_processed == 1
        assert result.primary == 2
        assert result.threads[0].failed_message_ids == ["t1-m1"]
        assert sink.filter(event_type="message.commit_failed")

    def test_failed_index_write_leaves_no_record(self, clean_conversation):
        class SourceIndexFailingStore(InMemoryPartitionStore):
            def _put_entry(self, table, entry, undo=None):
                if table == "source_author_index":
                    raise StorageError("source-author index locked")
                return super()._put_entry(table, entry, undo)

        store = SourceIndexFailingStore()
        result = MemoryRouter(store).commit_batch([_analyzed(clean_conversation)], "run:1")

        assert result.not_processed == 3
        assert result.processed == 2
        # Store and routing counts agree: failed messages left nothing behind
        assert store.partition_counts() == {"primary": result.primary, "sandbox": 0, "quarantine": 0}
        assert store.index_counts()["source_author"] == 0
        committed = {r.message_id for r in store.query_partition(Destination.PRIMARY)}
        assert {e.message_id for e in store.list_subject_relevance()} <= committed
        assert store.revert_batch("run:1") == 2

    def test_unavailable_store_raises(self):
        store = MagicMock()
        store.commit_message.side_effect = StorageUnavailableError("gone")
        router = MemoryRouter(store)
        with pytest.raises(StorageUnavailableError):
            router.commit_batch([_thread([_analysis(0, Destination.PRIMARY)])], "run:1")

    def test_thread_committed_event(self, memory_store, clean_conversation):
        sink = AuditLog()
        MemoryRouter(memory_store, sink=sink).commit_batch([_analyzed(clean_conversation)], "run:1")
        (event,) = sink.filter(event_type="thread.committed")
        assert event.details["partitions"] == {"primary": 5, "sandbox": 0, "quarantine": 0}


class TestAnchors:
    def test_save_anchors_counts_new(self, memory_store, clean_conversation):
        router = MemoryRouter(memory_store)
        anchors = _analyzed(clean_conversation).anchors
        assert router.save_anchors(anchors) == 1
        assert router.save_anchors(anchors) == 0


class TestOverride:
    def test_override_moves_record(self, store, clean_conversation):
        sink = AuditLog()
        router = MemoryRouter(store, sink=sink)
        router.commit_batch([_analyzed(clean_conversation)], "run:1")

        updated = router.override("conv-clean-m1", Destination.SANDBOX, "needs review")
        assert updated.partition == Destination.SANDBOX
        assert store.get_record("conv-clean-m1").override_reason == "needs review"
        assert store.partition_counts() == {"primary": 4, "sandbox": 1, "quarantine": 0}
        (event,) = sink.filter(event_type="partition.override")
        assert event.details["previous"] == "primary"

    def test_unknown_message(self, memory_store):
        with pytest.raises(ValueError, match="No committed message"):
            MemoryRouter(memory_store).override("nope", Destination.SANDBOX, "r")

    def test_rejected_thread_cannot_reach_primary(self, memory_store, drifting_conversation):
        router = MemoryRouter(memory_store)
        router.commit_batch([_analyzed(drifting_conversation)], "run:1")
        with pytest.raises(ValueError, match="cannot be moved to primary"):
            router.override("conv-drift-m0", Destination.PRIMARY, "looks fine")
        # Moving within the allowed partitions still works
        assert router.override("conv-drift-m0", Destination.SANDBOX, "r").partition == Destination.SANDBOX


def test_relevance_score_caps():
    assert relevance_score([]) == 0
    assert relevance_score(["a", "b", "c"]) == 30
    assert relevance_score([str(i) for i in range(20)]) == 100


def test_empty_routing_result_ratio():
    assert RoutingResult(batch_key="k").processed_ratio == 1.0
