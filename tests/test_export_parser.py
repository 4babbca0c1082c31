"""Tests for the conversation export parser."""

import json

import pytest

from strata.audit import AuditLog
from strata.importers import ExportParser, decode_export, load_conversations, parse_export, review_status
from strata.protocols import InputError
from strata.sources import FileThreadSource
from strata.types import MarkerType, ReviewStatus, Role


class TestLoadConversations:
    def test_array_form(self, clean_conversation):
        assert load_conversations([clean_conversation]) == [clean_conversation]

    def test_object_form(self, clean_conversation):
        assert load_conversations({"conversations": [clean_conversation]}) == [clean_conversation]

    def test_single_conversation_object(self, clean_conversation):
        assert load_conversations(clean_conversation) == [clean_conversation]

    def test_rejects_other_shapes(self):
        with pytest.raises(InputError):
            load_conversations("just a string")
        with pytest.raises(InputError):
            load_conversations({"items": []})

    def test_invalid_json(self):
        with pytest.raises(InputError, match="not valid JSON"):
            decode_export("{not json")


class TestParseFromSource:
    def test_parses_file_source_output(self, export_file):
        conversations = FileThreadSource(export_file).fetch_threads()
        result = ExportParser().parse_conversations(conversations)
        assert len(result.threads) == 1
        assert result.message_count == 5
        assert result.skipped == []


class TestParseConversation:
    def test_messages_ordered_and_sequenced(self, clean_conversation):
        expected = [
            node["message"]["content"]["parts"][0]
            for node in clean_conversation["mapping"].values()
            if node["message"]
        ]
        thread = parse_export([clean_conversation]).threads[0]
        assert [m.sequence for m in thread.messages] == [0, 1, 2, 3, 4]
        assert [m.content for m in thread.messages] == expected
        assert thread.messages[0].id == "conv-clean-m0"
        assert thread.messages[0].created_at == clean_conversation["create_time"]
        assert thread.title == "Memory design"

    def test_sorts_by_create_time(self, make_conversation):
        conversation = make_conversation("c1", [("user", "first"), ("assistant", "second")])
        # Swap timestamps so the mapping order disagrees with time order
        conversation["mapping"]["n0"]["message"]["create_time"] += 10
        thread = parse_export([conversation]).threads[0]
        assert [m.content for m in thread.messages] == ["second", "first"]
        assert [m.sequence for m in thread.messages] == [0, 1]

    def test_every_message_is_scored(self, clean_conversation):
        thread = parse_export([clean_conversation]).threads[0]
        for message in thread.messages:
            assert message.confidence is not None
            assert 0 <= message.confidence.overall <= 100

    def test_correction_counted_for_user_messages(self, clean_conversation):
        thread = parse_export([clean_conversation]).threads[0]
        assert thread.correction_count == 1
        correction = thread.messages[2]
        assert correction.role == Role.USER
        assert correction.has_correction
        assert any(m.type == MarkerType.CREATOR_CORRECTION for m in correction.markers)

    def test_clean_thread_is_approved(self, clean_conversation):
        thread = parse_export([clean_conversation]).threads[0]
        assert thread.overall_confidence >= 80
        assert thread.review_status == ReviewStatus.APPROVED

    def test_skips_empty_and_unknown_roles(self, make_conversation):
        conversation = make_conversation(
            "c2", [("user", "hello there"), ("tool", "tool output"), ("assistant", "   ")]
        )
        thread = parse_export([conversation]).threads[0]
        assert [m.content for m in thread.messages] == ["hello there"]

    def test_empty_conversation_is_kept(self, make_conversation):
        thread = parse_export([make_conversation("c3", [])]).threads[0]
        assert thread.message_count == 0
        assert thread.overall_confidence == 0.0


class TestMalformedConversations:
    def test_malformed_conversation_skipped_and_audited(self, clean_conversation):
        sink = AuditLog()
        raw = [
            clean_conversation,
            {"id": "broken", "mapping": "not-a-dict"},
            "not even an object",
            {"title": "no id", "mapping": {}},
        ]
        result = parse_export(json.dumps(raw), sink=sink)
        assert [t.id for t in result.threads] == ["conv-clean"]
        assert len(result.skipped) == 3
        assert result.skipped[0].conversation_id == "broken"
        skipped_events = sink.filter(event_type="conversation.skipped")
        assert len(skipped_events) == 3
        assert all(e.severity.value == "high" for e in skipped_events)

    def test_bad_node_skips_whole_conversation(self, make_conversation):
        conversation = make_conversation("c4", [("user", "hello there")])
        conversation["mapping"]["bad"] = ["not", "a", "node"]
        result = parse_export([conversation])
        assert result.threads == []
        assert "bad" in result.skipped[0].reason


class TestParserAudit:
    def test_thread_parsed_event(self, clean_conversation):
        sink = AuditLog()
        parse_export([clean_conversation], sink=sink)
        (event,) = sink.filter(event_type="thread.parsed")
        assert event.details["thread_id"] == "conv-clean"
        assert event.details["corrections"] == 1

    def test_low_confidence_flag(self, make_conversation):
        sink = AuditLog()
        text = (
            "I remember we decided this is definitely the perfect solution. "
            "It always works and never fails, absolutely guaranteed."
        )
        parse_export([make_conversation("c5", [("assistant", text)])], sink=sink)
        assert sink.filter(event_type="message.low_confidence")

    def test_standard_level_drops_message_flags(self, clean_conversation):
        sink = AuditLog(level="standard")
        parse_export([clean_conversation], sink=sink)
        assert sink.filter(event_type="message.correction") == []
        assert sink.filter(event_type="thread.parsed")


class TestReviewStatus:
    @pytest.mark.parametrize(
        "confidence,markers,corrections,expected",
        [
            (85, 7, 1, ReviewStatus.APPROVED),
            (76, 2, 0, ReviewStatus.APPROVED),
            (76, 6, 0, ReviewStatus.REQUIRES_REVIEW),
            (50, 11, 0, ReviewStatus.REQUIRES_REVIEW),
            (50, 3, 0, ReviewStatus.FLAGGED),
        ],
    )
    def test_thresholds(self, confidence, markers, corrections, expected):
        assert review_status(confidence, markers, corrections) == expected
