"""Confidence calibration from human review outcomes.

Outcomes (predicted confidence, was the value correct) accumulate per
vendor and globally. Each scope gets a bucketed reliability curve that
shifts a raw confidence by the gap between what the resolver predicted
and what reviewers observed in that confidence band.

Readers use an immutable :class:`CalibrationSnapshot` that is swapped in
whole, so calibrating a confidence never waits on a writer. Outcomes are
queued and folded in by :meth:`ConfidenceCalibrator.flush`, called by the
optional maintenance thread or directly.
"""

import json
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from invoice_core.collaborators import ReviewOutcome
from invoice_core.utils.config import CalibrationConfig
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)

GLOBAL_SCOPE = "global"
IDENTITY_SCOPE = "identity"


@dataclass(frozen=True)
class ReliabilityCurve:
    """Per-bucket confidence offsets for one scope."""

    scope: str
    bucket_width: int
    offsets: tuple[float, ...]
    counts: tuple[int, ...]
    predicted: tuple[float | None, ...]
    observed: tuple[float | None, ...]
    samples: int

    def bucket(self, confidence: float) -> int:
        return min(int(confidence) // self.bucket_width, len(self.offsets) - 1)

    def apply(self, confidence: int) -> int:
        mapped = confidence + self.offsets[self.bucket(max(0, confidence))]
        return int(round(max(0.0, min(100.0, mapped))))

    def to_dict(self) -> dict[str, Any]:
        last = len(self.offsets) - 1
        return {
            "scope": self.scope,
            "bucket_width": self.bucket_width,
            "samples": self.samples,
            "buckets": [
                {
                    "range": [i * self.bucket_width, 100 if i == last else (i + 1) * self.bucket_width - 1],
                    "count": self.counts[i],
                    "mean_predicted": self.predicted[i],
                    "observed_accuracy": self.observed[i],
                    "offset": self.offsets[i],
                }
                for i in range(len(self.offsets))
            ],
        }


@dataclass(frozen=True)
class CalibrationSnapshot:
    """Everything readers need, published as one immutable value."""

    version: int = 0
    curves: Mapping[str, ReliabilityCurve] = field(default_factory=lambda: MappingProxyType({}))
    drift: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    needs_recalibration: frozenset[str] = frozenset()
    sample_counts: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    recalibrations: int = 0
    created_at: float = 0.0


class ConfidenceCalibrator:
    """Maps raw resolver confidence to calibrated confidence.

    Args:
        config: Calibration configuration.
        clock: Wall-clock source for snapshot timestamps.
    """

    def __init__(
        self,
        config: CalibrationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CalibrationConfig()
        self._clock = clock
        self._pending: queue.Queue[ReviewOutcome] = queue.Queue()
        self._windows: dict[str, deque[tuple[int, bool]]] = {}
        self._write_lock = threading.Lock()
        self._snapshot = CalibrationSnapshot(created_at=clock())
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def snapshot(self) -> CalibrationSnapshot:
        return self._snapshot

    @property
    def n_buckets(self) -> int:
        return -(-100 // self.config.bucket_width)

    def calibrate(self, confidence: int, bucket_id: str | None = None) -> tuple[int, str]:
        """Calibrate one confidence.

        Args:
            confidence: Raw confidence in [0, 100].
            bucket_id: Vendor calibration bucket, if known.

        Returns:
            Calibrated confidence and the scope whose curve produced it:
            the vendor's, then the global one, else identity.
        """
        snapshot = self._snapshot
        curve = None
        if bucket_id is not None:
            curve = snapshot.curves.get(_vendor_scope(bucket_id))
        if curve is None:
            curve = snapshot.curves.get(GLOBAL_SCOPE)
        if curve is None:
            return max(0, min(100, confidence)), IDENTITY_SCOPE
        return curve.apply(confidence), curve.scope

    def record_outcome(self, outcome: ReviewOutcome) -> None:
        """Queue a review outcome; it takes effect at the next flush."""
        self._pending.put(outcome)

    def flush(self) -> int:
        """Fold queued outcomes in, measure drift and regenerate drifting curves.

        Returns:
            Number of outcomes processed.
        """
        with self._write_lock:
            processed = 0
            while True:
                try:
                    outcome = self._pending.get_nowait()
                except queue.Empty:
                    break
                sample = (max(0, min(100, int(outcome.predicted_confidence))), bool(outcome.correct))
                self._window(GLOBAL_SCOPE).append(sample)
                if outcome.vendor:
                    self._window(_vendor_scope(outcome.vendor)).append(sample)
                processed += 1
            if processed == 0:
                return 0

            current = self._snapshot
            curves = dict(current.curves)
            drift: dict[str, float] = {}
            flagged = set()
            regenerated = 0
            for scope, window in self._windows.items():
                curve = curves.get(scope)
                drift[scope] = self._drift(window, curve)
                if drift[scope] > self.config.drift_threshold:
                    flagged.add(scope)
                if len(window) < self.config.min_samples:
                    continue
                if curve is None or scope in flagged:
                    curves[scope] = self._build_curve(scope, window)
                    regenerated += 1
                    logger.info(
                        "Regenerated %s calibration curve (drift %.1f, %d samples)",
                        scope,
                        drift[scope],
                        len(window),
                    )

            self._snapshot = CalibrationSnapshot(
                version=current.version + 1,
                curves=MappingProxyType(curves),
                drift=MappingProxyType(drift),
                needs_recalibration=frozenset(flagged),
                sample_counts=MappingProxyType({s: len(w) for s, w in self._windows.items()}),
                recalibrations=current.recalibrations + regenerated,
                created_at=self._clock(),
            )
        if flagged:
            logger.warning("Calibration drift above threshold for %s", ", ".join(sorted(flagged)))
        logger.debug("Folded %d review outcomes into calibration", processed)
        return processed

    def start(self) -> None:
        """Run :meth:`flush` periodically on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._maintain, name="calibration", daemon=True)
        self._thread.start()
        logger.info("Calibration maintenance every %.0fs", self.config.maintenance_interval_s)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.flush()

    def export(self) -> dict[str, Any]:
        """Curves, drift status and sample counts for audit."""
        snapshot = self._snapshot
        return {
            "version": snapshot.version,
            "created_at": snapshot.created_at,
            "drift_threshold": self.config.drift_threshold,
            "drift": dict(snapshot.drift),
            "needs_recalibration": sorted(snapshot.needs_recalibration),
            "recalibrations": snapshot.recalibrations,
            "sample_counts": dict(snapshot.sample_counts),
            "curves": {scope: curve.to_dict() for scope, curve in sorted(snapshot.curves.items())},
        }

    def export_json(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.export(), f, indent=2)
        logger.info("Exported calibration state to %s", path)
        return path

    def _maintain(self) -> None:
        while not self._stop.wait(self.config.maintenance_interval_s):
            self.flush()

    def _window(self, scope: str) -> deque[tuple[int, bool]]:
        if scope not in self._windows:
            self._windows[scope] = deque(maxlen=self.config.window_size)
        return self._windows[scope]

    def _bucket_stats(self, window) -> tuple[list[int], list[float], list[float]]:
        n = self.n_buckets
        counts, predicted_sum, correct_sum = [0] * n, [0.0] * n, [0.0] * n
        for confidence, correct in window:
            index = min(confidence // self.config.bucket_width, n - 1)
            counts[index] += 1
            predicted_sum[index] += confidence
            correct_sum[index] += 100.0 if correct else 0.0
        return counts, predicted_sum, correct_sum

    def _build_curve(self, scope: str, window) -> ReliabilityCurve:
        counts, predicted_sum, correct_sum = self._bucket_stats(window)
        offsets, predicted, observed = [], [], []
        for count, p_sum, c_sum in zip(counts, predicted_sum, correct_sum):
            if count == 0:
                predicted.append(None)
                observed.append(None)
                offsets.append(0.0)
                continue
            mean_p, accuracy = p_sum / count, c_sum / count
            predicted.append(round(mean_p, 2))
            observed.append(round(accuracy, 2))
            # Sparse buckets keep the identity mapping.
            offsets.append(round(accuracy - mean_p, 2) if count >= self.config.min_bucket_samples else 0.0)
        return ReliabilityCurve(
            scope=scope,
            bucket_width=self.config.bucket_width,
            offsets=tuple(offsets),
            counts=tuple(counts),
            predicted=tuple(predicted),
            observed=tuple(observed),
            samples=len(window),
        )

    def _drift(self, window, curve: ReliabilityCurve | None) -> float:
        """Sample-weighted mean gap between mapped confidence and observed accuracy."""
        if not window:
            return 0.0
        counts, predicted_sum, correct_sum = self._bucket_stats(window)
        total = 0.0
        for index, count in enumerate(counts):
            if count == 0:
                continue
            mean_p = predicted_sum[index] / count
            mapped = mean_p + curve.offsets[index] if curve is not None else mean_p
            total += count * abs(mapped - correct_sum[index] / count)
        return round(total / len(window), 3)


def _vendor_scope(bucket_id: str) -> str:
    return f"vendor:{bucket_id}"
