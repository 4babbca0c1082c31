"""Conversation export parser.

Reads the JSON export of a chat service: either a top-level array of
conversations or an object with a ``conversations`` array. Each
conversation carries a ``mapping`` of node id to node; nodes may hold a
message with an author role, creation time and content parts.

Output is one ``ParsedThread`` per conversation, messages sorted by
creation time, each scored and scanned for drift markers. A malformed
conversation is audited and skipped; the rest of the export still parses.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Union

from strata.audit import AuditLog
from strata.config import DEFAULT_DOMAIN_TERMS
from strata.patterns import compile_terms
from strata.protocols import ConversationParseError, EventSink, InputError
from strata.scoring import compute_confidence, detect_markers
from strata.types import (
    AuditLevel,
    MarkerType,
    Message,
    ParsedThread,
    ReviewStatus,
    Role,
    Severity,
    Stage,
    VALID_ROLE_VALUES,
)

logger = logging.getLogger(__name__)

# Maximum export size accepted from disk (512MB)
MAX_EXPORT_SIZE = 512 * 1024 * 1024

LOW_CONFIDENCE_FLAG = 70
CRITICAL_CONFIDENCE_FLAG = 40
MULTIPLE_MARKERS_FLAG = 2


@dataclass
class SkippedConversation:
    """A conversation the parser could not read."""

    conversation_id: Optional[str]
    reason: str


@dataclass
class ParseResult:
    """Everything one parse pass produced."""

    threads: List[ParsedThread] = field(default_factory=list)
    skipped: List[SkippedConversation] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return sum(t.message_count for t in self.threads)


def load_conversations(data: Any) -> List[Any]:
    """Normalize a decoded export into a list of raw conversations.

    Raises:
        InputError: If ``data`` is neither a list nor an object
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        conversations = data.get("conversations")
        if isinstance(conversations, list):
            return conversations
        if "mapping" in data:
            return [data]
    raise InputError("Export must be a JSON array of conversations or an object with 'conversations'")


def decode_export(content: Union[str, bytes]) -> List[Any]:
    """Decode export JSON text into raw conversations."""
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InputError(f"Export is not valid JSON: {e}")
    return load_conversations(data)


def review_status(overall_confidence: float, marker_count: int, correction_count: int) -> ReviewStatus:
    """Parse-time review recommendation for a thread."""
    if (overall_confidence >= 80 and correction_count > 0) or (
        overall_confidence >= 75 and marker_count < 5
    ):
        return ReviewStatus.APPROVED
    if overall_confidence >= 60 or marker_count > 10:
        return ReviewStatus.REQUIRES_REVIEW
    return ReviewStatus.FLAGGED


def _content_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return " ".join(p for p in parts if isinstance(p, str))


def _create_time(node: Dict[str, Any]) -> float:
    message = node.get("message") or {}
    value = message.get("create_time")
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class ExportParser:
    """Parse decoded conversations into scored threads.

    Reading the export itself is left to a ``ThreadSource``; the parser only
    sees the raw conversation objects it returns.
    """

    def __init__(
        self,
        *,
        sink: Optional[EventSink] = None,
        domain_terms: Sequence[str] = DEFAULT_DOMAIN_TERMS,
    ):
        self.sink = sink if sink is not None else AuditLog()
        self.domain: Pattern[str] = compile_terms(domain_terms)

    def parse_conversations(self, conversations: Sequence[Any]) -> ParseResult:
        """Parse raw conversations, skipping (and auditing) malformed ones."""
        result = ParseResult()
        for index, raw in enumerate(conversations):
            conversation_id = raw.get("id") if isinstance(raw, dict) else None
            try:
                thread = self.parse_conversation(raw)
            except ConversationParseError as e:
                logger.warning(f"Skipping conversation {index}: {e}")
                result.skipped.append(SkippedConversation(conversation_id, e.reason))
                self.sink.record(
                    "conversation.skipped",
                    f"Malformed conversation skipped: {e.reason}",
                    stage=Stage.PARSER,
                    severity=Severity.HIGH,
                    conversation_id=conversation_id,
                    index=index,
                )
                continue
            result.threads.append(thread)

        logger.info(
            f"Parsed {len(result.threads)} threads ({result.message_count} messages), "
            f"skipped {len(result.skipped)}"
        )
        return result

    def parse_conversation(self, conversation: Any) -> ParsedThread:
        """Parse one raw conversation.

        Raises:
            ConversationParseError: If the conversation structure is invalid
        """
        if not isinstance(conversation, dict):
            raise ConversationParseError(None, "conversation is not an object")

        thread_id = conversation.get("id") or conversation.get("conversation_id")
        if not thread_id or not isinstance(thread_id, str):
            raise ConversationParseError(None, "missing conversation id")

        mapping = conversation.get("mapping")
        if not isinstance(mapping, dict):
            raise ConversationParseError(thread_id, "mapping is missing or not an object")

        nodes = []
        for node_id, node in mapping.items():
            if not isinstance(node, dict):
                raise ConversationParseError(thread_id, f"node {node_id} is not an object")
            message = node.get("message")
            if message is None:
                continue
            if not isinstance(message, dict):
                raise ConversationParseError(thread_id, f"node {node_id} message is not an object")
            nodes.append((node_id, node))

        # Stable sort keeps mapping order for equal timestamps
        nodes.sort(key=lambda item: _create_time(item[1]))

        messages: List[Message] = []
        for node_id, node in nodes:
            raw_message = node["message"]
            content = _content_text(raw_message)
            if not content.strip():
                continue

            author = raw_message.get("author") or {}
            role_value = author.get("role") if isinstance(author, dict) else None
            if role_value not in VALID_ROLE_VALUES:
                logger.debug(f"Thread {thread_id}: skipping node {node_id} with role {role_value!r}")
                continue

            role = Role(role_value)
            confidence = compute_confidence(content, role, self.domain)
            markers = tuple(detect_markers(content))
            message = Message(
                id=str(raw_message.get("id") or node_id),
                thread_id=thread_id,
                role=role,
                content=content,
                created_at=_create_time(node),
                sequence=len(messages),
                confidence=confidence,
                markers=markers,
            )
            messages.append(message)
            self._flag_message(message)

        return self._summarize(conversation, thread_id, messages)

    def _flag_message(self, message: Message) -> None:
        score = message.confidence.overall
        if score < LOW_CONFIDENCE_FLAG:
            self.sink.record(
                "message.low_confidence",
                f"Confidence {score} below {LOW_CONFIDENCE_FLAG}",
                stage=Stage.PARSER,
                severity=Severity.CRITICAL if score < CRITICAL_CONFIDENCE_FLAG else Severity.HIGH,
                level=AuditLevel.COMPREHENSIVE,
                message_id=message.id,
                thread_id=message.thread_id,
                confidence=score,
            )
        if len(message.markers) > MULTIPLE_MARKERS_FLAG:
            self.sink.record(
                "message.drift_markers",
                f"{len(message.markers)} drift markers detected",
                stage=Stage.PARSER,
                severity=Severity.MEDIUM,
                level=AuditLevel.COMPREHENSIVE,
                message_id=message.id,
                thread_id=message.thread_id,
                markers=[m.type.value for m in message.markers],
            )
        if message.role == Role.USER and message.has_correction:
            self.sink.record(
                "message.correction",
                "Correction present; candidate truth anchor",
                stage=Stage.PARSER,
                severity=Severity.LOW,
                level=AuditLevel.COMPREHENSIVE,
                message_id=message.id,
                thread_id=message.thread_id,
            )

    def _summarize(
        self, conversation: Dict[str, Any], thread_id: str, messages: List[Message]
    ) -> ParsedThread:
        overall = (
            sum(m.confidence.overall for m in messages) / len(messages) if messages else 0.0
        )
        marker_count = sum(len(m.markers) for m in messages)
        corrections = sum(
            1
            for m in messages
            if m.role == Role.USER
            and any(marker.type == MarkerType.CREATOR_CORRECTION for marker in m.markers)
        )
        status = review_status(overall, marker_count, corrections)
        thread = ParsedThread(
            id=thread_id,
            title=str(conversation.get("title") or "Untitled"),
            messages=messages,
            created_at=conversation.get("create_time"),
            updated_at=conversation.get("update_time"),
            overall_confidence=round(overall, 2),
            marker_count=marker_count,
            correction_count=corrections,
            review_status=status,
        )
        self.sink.record(
            "thread.parsed",
            f"Parsed {len(messages)} messages, review status {status.value}",
            stage=Stage.PARSER,
            severity=Severity.LOW if status == ReviewStatus.APPROVED else Severity.MEDIUM,
            level=AuditLevel.STANDARD,
            thread_id=thread_id,
            messages=len(messages),
            overall_confidence=thread.overall_confidence,
            drift_markers=marker_count,
            corrections=corrections,
        )
        return thread


def parse_export(
    content: Union[str, bytes, List[Any], Dict[str, Any]],
    *,
    sink: Optional[EventSink] = None,
    domain_terms: Sequence[str] = DEFAULT_DOMAIN_TERMS,
) -> ParseResult:
    """Parse an export given as JSON text or already-decoded data."""
    if isinstance(content, (str, bytes)):
        conversations = decode_export(content)
    else:
        conversations = load_conversations(content)
    parser = ExportParser(sink=sink, domain_terms=domain_terms)
    return parser.parse_conversations(conversations)
