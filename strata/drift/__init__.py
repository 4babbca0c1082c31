"""Drift detection and thread profiling."""

from strata.drift.analyzer import AnchorIndex, DriftAnalyzer, score_drift
from strata.drift.detectors import default_detectors
from strata.protocols import DriftDetector

__all__ = ["AnchorIndex", "DriftAnalyzer", "DriftDetector", "default_detectors", "score_drift"]
