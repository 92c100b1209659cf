"""Budgeted, prioritized multi-pass OCR over (variant, zone, profile) units.

Units run on a bounded thread pool in priority order: best variant
first, then zone importance, then profile order. A unit whose OCR
artifact already exists in the store is a cache hit and is not run
again. Scheduling stops when the document deadline passes, when every
critical field is settled, or when the caller cancels. Units already
running always finish and register their artifacts, even after
:meth:`OcrOrchestrator.run` has returned.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from invoice_core.artifacts.models import (
    OcrArtifact,
    VariantArtifact,
    ZoneArtifact,
    ocr_artifact_id,
)
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.errors import (
    EngineTimeoutError,
    InvoiceCoreError,
    UnknownArtifactError,
)
from invoice_core.ocr.early_stop import EarlyStopMonitor
from invoice_core.ocr.engines import EngineRegistry
from invoice_core.ocr.profiles import OcrProfile, ProfileSet
from invoice_core.ocr.retry import Deadline, RetryPolicy
from invoice_core.utils.config import OrchestratorConfig
from invoice_core.utils.logger import get_logger
from invoice_core.zones.cropper import tokens_to_page

logger = get_logger(__name__)

_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class WorkUnit:
    """One recognition pass: a profile applied to a zone of a variant."""

    variant: VariantArtifact
    zone: ZoneArtifact
    profile: OcrProfile
    variant_rank: int
    profile_order: int

    @property
    def artifact_id(self) -> str:
        return ocr_artifact_id(self.zone.artifact_id, self.profile.fingerprint)

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.variant_rank, self.zone.zone_type.priority, self.profile_order)


@dataclass(frozen=True)
class UnitFailure:
    """A unit abandoned after its retries were exhausted."""

    artifact_id: str
    zone_id: str
    profile: str
    reason: str
    stage: str = "ocr"

    def to_dict(self) -> dict[str, str]:
        return {
            "artifact_id": self.artifact_id,
            "zone_id": self.zone_id,
            "profile": self.profile,
            "reason": self.reason,
            "stage": self.stage,
        }


@dataclass
class OcrRunResult:
    """Artifacts and bookkeeping from one orchestrated run."""

    artifacts: list[OcrArtifact] = field(default_factory=list)
    failures: list[UnitFailure] = field(default_factory=list)
    planned: int = 0
    cache_hits: int = 0
    executed: int = 0
    skipped: int = 0
    partial: bool = False
    early_stopped: bool = False
    cancelled: bool = False
    elapsed_ms: float = 0.0


class OcrOrchestrator:
    """Schedules recognition units under time and concurrency limits.

    Args:
        config: Orchestration configuration.
        store: Artifact store used for cache lookups and registration.
        engines: Available recognition engines.
        retry_policy: Retry behavior for transient engine failures.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        store: ArtifactStore,
        engines: EngineRegistry,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.engines = engines
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.retry_max_attempts,
            backoff=tuple(config.retry_backoff_s),
        )

    def plan(
        self,
        zones_by_variant: list[tuple[VariantArtifact, list[ZoneArtifact]]],
        profiles: ProfileSet,
        vendor_fingerprint: str | None = None,
    ) -> list[WorkUnit]:
        """Build the prioritized unit list.

        Args:
            zones_by_variant: Selected variants in rank order with their zones.
            profiles: Profile set for per-zone profile selection.
            vendor_fingerprint: Vendor whose profile overrides apply.

        Returns:
            Units sorted by priority; masked zones are skipped.
        """
        units = []
        for rank, (variant, zones) in enumerate(zones_by_variant):
            for zone in zones:
                if zone.masked:
                    continue
                selected = profiles.profiles_for(
                    zone.zone_type, vendor_fingerprint, limit=self.config.max_passes_per_zone
                )
                for order, profile in enumerate(selected):
                    units.append(WorkUnit(variant, zone, profile, rank, order))
        units.sort(key=lambda u: u.sort_key)
        return units

    def run(
        self,
        units: list[WorkUnit],
        deadline: Deadline | None = None,
        monitor: EarlyStopMonitor | None = None,
        cancel: threading.Event | None = None,
    ) -> OcrRunResult:
        """Execute units until done, out of budget, settled, or cancelled.

        Args:
            units: Units in priority order.
            deadline: Document deadline; defaults to the configured budget.
            monitor: Early-stop tracker fed with every artifact.
            cancel: Set by the caller to abort scheduling.

        Returns:
            Artifacts registered before returning, with run flags.
        """
        started = time.monotonic()
        deadline = deadline or Deadline(self.config.document_budget_s)
        cancel = cancel or threading.Event()
        stop = threading.Event()
        if not self.config.early_stop_enabled:
            monitor = None
        if monitor is not None and monitor.satisfied:
            stop.set()

        result = OcrRunResult(planned=len(units))
        lock = threading.Lock()
        slots = threading.BoundedSemaphore(self.config.max_concurrent)
        futures: list[Future] = []
        collected: list[OcrArtifact] = []
        failures: list[UnitFailure] = []

        def collect(artifact: OcrArtifact) -> None:
            with lock:
                collected.append(artifact)
            if monitor is not None and monitor.observe(artifact):
                stop.set()

        def on_done(unit: WorkUnit, future: Future) -> None:
            slots.release()
            exc = future.exception()
            if exc is None:
                collect(future.result())
                return
            reason = str(exc)
            logger.warning("Unit %s/%s failed: %s", unit.zone.zone_type.value, unit.profile.name, reason)
            with lock:
                failures.append(
                    UnitFailure(unit.artifact_id, unit.zone.artifact_id, unit.profile.name, reason)
                )

        executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent, thread_name_prefix="ocr-unit"
        )
        try:
            for index, unit in enumerate(units):
                if self._should_halt(result, deadline, stop, cancel):
                    result.skipped = len(units) - index
                    break

                cached = self.store.get(unit.artifact_id)
                if isinstance(cached, OcrArtifact):
                    result.cache_hits += 1
                    collect(cached)
                    continue

                if not self._acquire(slots, deadline, stop, cancel):
                    self._should_halt(result, deadline, stop, cancel)
                    result.skipped = len(units) - index
                    break

                result.executed += 1
                future = executor.submit(self._execute, unit, deadline)
                future.add_done_callback(lambda f, u=unit: on_done(u, f))
                futures.append(future)

            _, pending = wait(futures, timeout=deadline.remaining())
            if pending:
                result.partial = True
                logger.warning("Budget exhausted with %d units still running", len(pending))
        finally:
            executor.shutdown(wait=False)

        with lock:
            # Units finishing later still land in the store, not in this result.
            result.artifacts = sorted(collected, key=lambda a: a.artifact_id)
            result.failures = list(failures)
        result.elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "OCR run: %d planned, %d cached, %d executed, %d skipped, %d failed%s%s%s",
            result.planned,
            result.cache_hits,
            result.executed,
            result.skipped,
            len(result.failures),
            " (partial)" if result.partial else "",
            " (early stop)" if result.early_stopped else "",
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def _should_halt(
        self,
        result: OcrRunResult,
        deadline: Deadline,
        stop: threading.Event,
        cancel: threading.Event,
    ) -> bool:
        if cancel.is_set():
            result.cancelled = True
        elif stop.is_set():
            result.early_stopped = True
        elif deadline.expired():
            result.partial = True
        else:
            return False
        return True

    def _acquire(
        self,
        slots: threading.BoundedSemaphore,
        deadline: Deadline,
        stop: threading.Event,
        cancel: threading.Event,
    ) -> bool:
        while not slots.acquire(timeout=_POLL_SECONDS):
            if cancel.is_set() or stop.is_set() or deadline.expired():
                return False
        if cancel.is_set() or stop.is_set() or deadline.expired():
            slots.release()
            return False
        return True

    def _execute(self, unit: WorkUnit, deadline: Deadline) -> OcrArtifact:
        image = self.store.payload(unit.zone.artifact_id)
        if image is None:
            raise UnknownArtifactError(
                "Zone pixels are no longer cached", stage="ocr", artifact_id=unit.zone.artifact_id
            )
        engine = self.engines.get(unit.profile.engine)

        def attempt():
            timeout = min(
                unit.profile.timeout_seconds, self.config.per_call_timeout_s, deadline.remaining()
            )
            if timeout <= 0:
                raise EngineTimeoutError("Document budget exhausted", stage="ocr")
            return engine.run(image, unit.profile, timeout=timeout)

        started = time.monotonic()
        try:
            tokens = self.retry_policy.call(attempt, deadline)
        except InvoiceCoreError as exc:
            exc.artifact_id = exc.artifact_id or unit.artifact_id
            raise

        artifact = OcrArtifact(
            zone_id=unit.zone.artifact_id,
            variant_id=unit.variant.artifact_id,
            zone_type=unit.zone.zone_type,
            engine=engine.name,
            profile_name=unit.profile.name,
            profile_fingerprint=unit.profile.fingerprint,
            tokens=tuple(tokens_to_page(tokens, unit.zone.crop_box)),
            elapsed_ms=(time.monotonic() - started) * 1000,
        )
        stored = self.store.put(artifact)
        logger.debug(
            "%s/%s on %s: %d tokens in %.0fms",
            unit.zone.zone_type.value,
            unit.profile.name,
            unit.variant.transform,
            len(artifact.tokens),
            artifact.elapsed_ms,
        )
        return stored
