"""Pipeline configuration.

Settings come from (in increasing precedence) dataclass defaults, a JSON
config file, ``STRATA_*`` environment variables and CLI flags. Every value
is validated once, in ``__post_init__``; components receive a validated
``PipelineConfig`` and never re-check it.

The numeric thresholds are a default policy, not constants with inherent
meaning. ``DestinationPolicy`` and ``TierPolicy`` expose them so they can
be tuned against real data.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from strata.protocols import ConfigError
from strata.types import AuditLevel, OperatingMode

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE_KEYWORDS: Tuple[str, ...] = (
    "memory",
    "architecture",
    "framework",
    "identity",
    "strategy",
    "audit",
    "rollback",
    "checkpoint",
    "roadmap",
)

DEFAULT_DOMAIN_TERMS: Tuple[str, ...] = (
    "memory",
    "framework",
    "architecture",
    "pipeline",
    "protocol",
    "module",
    "agent",
    "system",
)


def _check_percent(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {type(value).__name__}")
    if not 0 <= value <= 100:
        raise ConfigError(f"{name} must be between 0 and 100, got {value}")
    return float(value)


def _check_positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {type(value).__name__}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _check_terms(value: Any, name: str) -> Tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigError(f"{name} must be a list of strings")
    terms = tuple(str(t).strip().lower() for t in value if str(t).strip())
    if not terms:
        raise ConfigError(f"{name} must contain at least one term")
    return terms


@dataclass
class DestinationPolicy:
    """Thresholds for the per-message destination decision."""

    correction_span: int = 2  # Sequence distance at which a user correction anchors a message
    correction_min_confidence: float = 60.0
    primary_max_drift: float = 30.0
    sandbox_min_confidence: float = 50.0
    sandbox_max_drift: float = 70.0
    anchor_span: int = 3  # Sequence distance for collecting nearby anchors

    def __post_init__(self):
        self.correction_span = _check_positive_int(self.correction_span, "correction_span")
        self.anchor_span = _check_positive_int(self.anchor_span, "anchor_span")
        for name in (
            "correction_min_confidence",
            "primary_max_drift",
            "sandbox_min_confidence",
            "sandbox_max_drift",
        ):
            setattr(self, name, _check_percent(getattr(self, name), name))
        if self.primary_max_drift > self.sandbox_max_drift:
            raise ConfigError("primary_max_drift cannot exceed sandbox_max_drift")


@dataclass
class TierPolicy:
    """Thresholds for the thread reliability tier."""

    quarantine_share: float = 0.20  # > share of quarantined messages -> quarantine
    low_mean_drift: float = 50.0
    low_min_primary_share: float = 0.60
    medium_mean_drift: float = 30.0
    medium_sandbox_share: float = 0.30

    def __post_init__(self):
        for name in ("quarantine_share", "low_min_primary_share", "medium_sandbox_share"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number")
            if not 0 <= value <= 1:
                raise ConfigError(f"{name} must be between 0 and 1, got {value}")
            setattr(self, name, float(value))
        for name in ("low_mean_drift", "medium_mean_drift"):
            setattr(self, name, _check_percent(getattr(self, name), name))


@dataclass
class PipelineConfig:
    """Validated settings for one pipeline run."""

    mode: OperatingMode = OperatingMode.BATCH
    batch_size: int = 15
    max_batch_drift: float = 35.0
    confidence_threshold: float = 75.0
    rollback_on_failure: bool = True
    audit_level: AuditLevel = AuditLevel.COMPREHENSIVE
    context_window: int = 10  # Total messages around the target, split evenly
    source_author_min_confidence: float = 70.0
    relevance_keywords: Tuple[str, ...] = DEFAULT_RELEVANCE_KEYWORDS
    domain_terms: Tuple[str, ...] = DEFAULT_DOMAIN_TERMS
    max_workers: int = 1
    thread_timeout_seconds: float = 30.0
    destination_policy: DestinationPolicy = field(default_factory=DestinationPolicy)
    tier_policy: TierPolicy = field(default_factory=TierPolicy)

    def __post_init__(self):
        try:
            self.mode = OperatingMode(self.mode)
        except ValueError:
            raise ConfigError(
                f"mode must be one of {[m.value for m in OperatingMode]}, got {self.mode!r}"
            )
        try:
            self.audit_level = AuditLevel(self.audit_level)
        except ValueError:
            raise ConfigError(
                f"audit_level must be one of {[a.value for a in AuditLevel]}, "
                f"got {self.audit_level!r}"
            )
        self.batch_size = _check_positive_int(self.batch_size, "batch_size")
        self.max_batch_drift = _check_percent(self.max_batch_drift, "max_batch_drift")
        self.confidence_threshold = _check_percent(
            self.confidence_threshold, "confidence_threshold"
        )
        self.source_author_min_confidence = _check_percent(
            self.source_author_min_confidence, "source_author_min_confidence"
        )
        if not isinstance(self.rollback_on_failure, bool):
            raise ConfigError("rollback_on_failure must be a boolean")
        self.context_window = _check_positive_int(self.context_window, "context_window")
        if self.context_window % 2:
            raise ConfigError(f"context_window must be even, got {self.context_window}")
        self.max_workers = _check_positive_int(self.max_workers, "max_workers")
        if isinstance(self.thread_timeout_seconds, bool) or not isinstance(
            self.thread_timeout_seconds, (int, float)
        ):
            raise ConfigError("thread_timeout_seconds must be a number")
        if self.thread_timeout_seconds <= 0:
            raise ConfigError("thread_timeout_seconds must be positive")
        self.relevance_keywords = _check_terms(self.relevance_keywords, "relevance_keywords")
        self.domain_terms = _check_terms(self.domain_terms, "domain_terms")
        if isinstance(self.destination_policy, dict):
            self.destination_policy = DestinationPolicy(**self.destination_policy)
        if isinstance(self.tier_policy, dict):
            self.tier_policy = TierPolicy(**self.tier_policy)

    @property
    def dry_run(self) -> bool:
        return self.mode == OperatingMode.DRY_RUN

    @property
    def half_window(self) -> int:
        return self.context_window // 2

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["audit_level"] = self.audit_level.value
        data["relevance_keywords"] = list(self.relevance_keywords)
        data["domain_terms"] = list(self.domain_terms)
        return data

    def replace(self, **overrides: Any) -> "PipelineConfig":
        """Return a new validated config with ``overrides`` applied (None values ignored)."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return PipelineConfig.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str) -> "PipelineConfig":
        """Load a JSON config file."""
        config_path = Path(path).expanduser()
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {config_path}")
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """Apply ``STRATA_*`` environment overrides on top of ``base``."""
        base = base or cls()
        overrides: Dict[str, Any] = {}
        env = os.environ

        if "STRATA_MODE" in env:
            overrides["mode"] = env["STRATA_MODE"].strip().lower()
        if "STRATA_AUDIT_LEVEL" in env:
            overrides["audit_level"] = env["STRATA_AUDIT_LEVEL"].strip().lower()
        for key, name, cast in (
            ("STRATA_BATCH_SIZE", "batch_size", int),
            ("STRATA_MAX_WORKERS", "max_workers", int),
            ("STRATA_MAX_BATCH_DRIFT", "max_batch_drift", float),
            ("STRATA_CONFIDENCE_THRESHOLD", "confidence_threshold", float),
            ("STRATA_THREAD_TIMEOUT", "thread_timeout_seconds", float),
        ):
            if key in env:
                try:
                    overrides[name] = cast(env[key])
                except ValueError:
                    raise ConfigError(f"{key} must be a number, got {env[key]!r}")
        if "STRATA_ROLLBACK_ON_FAILURE" in env:
            overrides["rollback_on_failure"] = env["STRATA_ROLLBACK_ON_FAILURE"].strip().lower() in (
                "1",
                "true",
                "yes",
                "on",
            )
        if "STRATA_RELEVANCE_KEYWORDS" in env:
            overrides["relevance_keywords"] = env["STRATA_RELEVANCE_KEYWORDS"].split(",")

        if overrides:
            logger.debug(f"Environment overrides: {sorted(overrides)}")
        return base.replace(**overrides)
