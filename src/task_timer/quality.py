"""Drift bookkeeping for the running timer."""

from __future__ import annotations

from .models import QualityReport

MAX_SAMPLES = 100
TRIMMED_SAMPLES = 50


class QualityMonitor:
    """Tracks tick drift and turns it into a quality score and interval tier."""

    def __init__(self, target_accuracy_ms: float = 50.0) -> None:
        self.target_accuracy_ms = target_accuracy_ms
        self._samples: list[float] = []
        self.average_drift_ms = 0.0
        self.max_drift_ms = 0.0
        self.correction_count = 0
        self.quality_score = 1.0

    def record_drift(self, drift_ms: float) -> None:
        self._samples.append(abs(drift_ms))
        if len(self._samples) > MAX_SAMPLES:
            del self._samples[:-TRIMMED_SAMPLES]
        self.average_drift_ms = sum(self._samples) / len(self._samples)
        self.max_drift_ms = max(self._samples)
        self.quality_score = min(
            self.target_accuracy_ms / (self.average_drift_ms + 1.0), 1.0
        )

    def record_correction(self) -> None:
        self.correction_count += 1

    def recommended_interval_ms(self) -> int:
        if self.average_drift_ms < 20:
            return 1000
        if self.average_drift_ms < 100:
            return 500
        return 250

    def status_label(self) -> str:
        if self.quality_score >= 0.9:
            return "excellent"
        if self.quality_score >= 0.7:
            return "good"
        if self.quality_score >= 0.5:
            return "fair"
        return "poor"

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def reset(self) -> None:
        self._samples.clear()
        self.average_drift_ms = 0.0
        self.max_drift_ms = 0.0
        self.correction_count = 0
        self.quality_score = 1.0

    def snapshot(self) -> QualityReport:
        return QualityReport(
            average_drift_ms=self.average_drift_ms,
            max_drift_ms=self.max_drift_ms,
            quality_score=self.quality_score,
            correction_count=self.correction_count,
            sample_count=len(self._samples),
            status=self.status_label(),
            recommended_interval_ms=self.recommended_interval_ms(),
        )
