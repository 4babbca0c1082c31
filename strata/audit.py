"""Append-only audit log.

The audit log is the record of every decision the pipeline makes. One
``AuditLog`` instance is passed into each component as its event sink.
Appends are serialized by a lock and ordered by a monotonic sequence
number, so concurrent analysis workers can record events safely.

When constructed with a path, every retained event is also appended to a
JSON-lines file (one object per line).

``DeferredSink`` holds a worker's events until its result is accepted.
"""

import itertools
import json
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from strata.protocols import EventSink, StorageError
from strata.types import AuditEvent, AuditLevel, Severity, Stage, utc_now

logger = logging.getLogger(__name__)

SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AuditLog:
    """Thread-safe, append-only event sink."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        level: AuditLevel = AuditLevel.COMPREHENSIVE,
        *,
        start_sequence: int = 1,
    ):
        self.path = Path(path).expanduser() if path else None
        self.level = AuditLevel(level)
        self._lock = threading.Lock()
        self._sequence = itertools.count(start_sequence)
        self._events: List[AuditEvent] = []

        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Cannot create audit log directory: {e}")
                raise StorageError(f"Cannot create audit log directory: {e}")

    def record(
        self,
        event_type: str,
        description: str,
        *,
        stage: Stage,
        severity: Severity = Severity.LOW,
        level: AuditLevel = AuditLevel.BASIC,
        **details: Any,
    ) -> Optional[AuditEvent]:
        """Append an event.

        Args:
            event_type: Dotted event name, e.g. ``batch.rolled_back``
            description: Human-readable summary
            stage: Component emitting the event
            severity: Event severity
            level: Lowest verbosity at which this event is retained
            **details: JSON-serializable context

        Returns:
            The recorded event, or None if the configured verbosity drops it
        """
        if AuditLevel(level).rank > self.level.rank:
            return None

        with self._lock:
            event = AuditEvent(
                sequence=next(self._sequence),
                timestamp=utc_now(),
                event_type=event_type,
                severity=Severity(severity),
                description=description,
                stage=Stage(stage),
                details=details,
            )
            if self.path is not None:
                self._write(event)
            self._events.append(event)
        return event

    def _write(self, event: AuditEvent) -> None:
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except OSError as e:
            logger.error(f"Cannot append to audit log {self.path}: {e}")
            raise StorageError(f"Cannot append to audit log: {e}")

    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._events[-1].sequence if self._events else 0

    def filter(
        self,
        *,
        stage: Optional[Stage] = None,
        event_type: Optional[str] = None,
        min_severity: Optional[Severity] = None,
        since_sequence: int = 0,
    ) -> List[AuditEvent]:
        """Return events matching all given criteria, in sequence order.

        ``event_type`` matches exactly or as a dotted prefix (``batch``
        matches ``batch.completed``).
        """
        selected = []
        for event in self.events():
            if event.sequence <= since_sequence:
                continue
            if stage is not None and event.stage != stage:
                continue
            if event_type is not None and not (
                event.event_type == event_type or event.event_type.startswith(event_type + ".")
            ):
                continue
            if min_severity is not None and SEVERITY_RANK[event.severity] < SEVERITY_RANK[min_severity]:
                continue
            selected.append(event)
        return selected

    def summary(self) -> Dict[str, Any]:
        """Counts by stage, severity and event type."""
        events = self.events()
        return {
            "total": len(events),
            "by_stage": dict(Counter(e.stage.value for e in events)),
            "by_severity": dict(Counter(e.severity.value for e in events)),
            "by_type": dict(Counter(e.event_type for e in events)),
        }

    @classmethod
    def load(cls, path: Union[str, Path], level: AuditLevel = AuditLevel.COMPREHENSIVE) -> "AuditLog":
        """Read a JSON-lines audit file back into an in-memory log.

        Unreadable lines are skipped with a warning. New events recorded on
        the returned log continue the stored sequence but are not written
        back to ``path``.
        """
        source = Path(path).expanduser()
        if not source.exists():
            raise FileNotFoundError(f"Audit log not found: {source}")

        loaded: List[AuditEvent] = []
        with open(source, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    loaded.append(AuditEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping audit line {line_number} in {source}: {e}")

        loaded.sort(key=lambda e: e.sequence)
        start = loaded[-1].sequence + 1 if loaded else 1
        log = cls(level=level, start_sequence=start)
        log._events = loaded
        return log


class DeferredSink:
    """Event sink that holds events until ``replay`` forwards them.

    A worker records against one of these so its events reach the audit log
    only if its result is kept. Nothing is retained in sequence order until
    replayed, so ``events`` is always empty.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: List[Tuple[str, str, Dict[str, Any]]] = []

    def record(
        self,
        event_type: str,
        description: str,
        *,
        stage: Stage,
        severity: Severity = Severity.LOW,
        level: AuditLevel = AuditLevel.BASIC,
        **details: Any,
    ) -> Optional[AuditEvent]:
        with self._lock:
            self._pending.append(
                (event_type, description, dict(details, stage=stage, severity=severity, level=level))
            )
        return None

    def events(self) -> List[AuditEvent]:
        return []

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def replay(self, sink: EventSink) -> int:
        """Forward held events to ``sink`` in recording order. Returns how many."""
        with self._lock:
            pending, self._pending = self._pending, []
        for event_type, description, kwargs in pending:
            sink.record(event_type, description, **kwargs)
        return len(pending)
