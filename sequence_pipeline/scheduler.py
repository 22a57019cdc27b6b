from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from .catalog import Catalog, is_safe_id
from .circuit_breaker import CircuitBreaker
from .config import PipelineConfig
from .errors import AdmissionError, FatalJobError, TransientWorkUnitError
from .job_manager import JobManager, ProgressCallback
from .models import PROCESSING, STOPPED, GenerationRequest, GenerationSettings, JobRecord, SchedulerMetrics, WorkUnit
from .rendering import Encoder, PillowEncoder, Renderer, TrimeshRenderer
from .resource_monitor import ResourceMonitor
from .schemas import parse_generate_payload
from .sequence_store import SequenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag, checked once per work unit."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class JobScheduler:
    """Admits generation requests and runs them on a bounded worker pool.

    Work units inside one job run strictly in order on a single worker; up to
    ``max_concurrent_jobs`` jobs process at once and the rest wait, FIFO, in
    the executor's queue. Job state lives in the ``JobManager``; callers only
    ever see copies.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: SequenceStore | None = None,
        catalog: Catalog | None = None,
        monitor: ResourceMonitor | None = None,
        renderer: Renderer | None = None,
        encoder: Encoder | None = None,
        jobs: JobManager | None = None,
    ):
        self.config = config
        self.store = store or SequenceStore(config.sequences_dir)
        self.catalog = catalog or Catalog(config.models_dir, self.store, config.default_materials)
        self.monitor = monitor or ResourceMonitor(config)
        self.renderer = renderer or TrimeshRenderer(config.models_dir)
        self.encoder = encoder or PillowEncoder()
        self.jobs = jobs or JobManager(config.max_retained_jobs, config.job_retention_hours)
        self.breaker = CircuitBreaker(config.circuit_failure_threshold, config.circuit_reset_seconds)

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.max_concurrent_jobs),
            thread_name_prefix="sequence-job",
        )
        self._lock = threading.RLock()
        self._futures: dict[str, Future] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._callbacks: dict[str, list[ProgressCallback]] = {}
        self._closed = False

    # -- submission -------------------------------------------------------

    def submit(self, request: GenerationRequest | dict[str, Any]) -> str:
        if not isinstance(request, GenerationRequest):
            request = GenerationRequest.from_payload(parse_generate_payload(request), self.config)
        self.validate(request)

        self.monitor.preflight_optimize()
        snapshot = self.monitor.snapshot(refresh=True)
        if snapshot.is_critical:
            logger.warning("Rejecting request under critical pressure: %s", snapshot.pressure_details())
            raise AdmissionError(
                "System resources are critically low. Please try again later.",
                details=snapshot.pressure_details(),
            )

        with self._lock:
            if self._closed:
                raise AdmissionError("Scheduler is shutting down")
            queued = self.jobs.pending_count()
            if queued >= self.config.max_queue_size:
                raise AdmissionError(
                    "Generation queue is full. Please try again later.",
                    details={"queueSize": queued, "maxQueueSize": self.config.max_queue_size},
                )
            record = self.jobs.create_job(request)
            token = CancellationToken()
            self._tokens[record.id] = token
            self._futures[record.id] = self._executor.submit(self._run_job, record.id, token)

        logger.info(
            "Queued job %s: %d model(s) x %d material(s) x %d frame(s) x %d format(s)",
            record.id,
            len(request.model_ids),
            len(request.materials),
            request.settings.frame_count,
            len(request.settings.formats),
        )
        self.jobs.cleanup_expired()
        return record.id

    def validate(self, request: GenerationRequest) -> None:
        settings = request.settings

        def reject(message: str, **details: Any) -> None:
            raise AdmissionError(message, details=details, status_code=400)

        if not request.model_ids:
            reject("At least one model id is required")
        if len(request.model_ids) > self.config.max_models_per_request:
            reject("Too many models in one request", limit=self.config.max_models_per_request)
        if not request.materials:
            reject("At least one material is required")
        if not settings.formats:
            reject("At least one output format is required")
        if len(set(request.model_ids)) != len(request.model_ids) or len(set(request.materials)) != len(request.materials):
            reject("Model ids and materials must not repeat")
        if len(set(settings.formats)) != len(settings.formats):
            reject("Output formats must not repeat")

        bad_ids = [value for value in (*request.model_ids, *request.materials) if not is_safe_id(value)]
        bad_ids += [fmt for fmt in settings.formats if not fmt.isalnum()]
        if bad_ids:
            reject("Invalid identifiers in request", invalid=bad_ids)

        unsupported = [fmt for fmt in settings.formats if not self.encoder.supports(fmt)]
        if unsupported:
            reject("Unsupported output format(s)", unsupportedFormats=unsupported)

        if not 0 < settings.frame_count <= self.config.max_frame_count:
            reject("Frame count out of range", imageCount=settings.frame_count, max=self.config.max_frame_count)

        size = settings.image_size
        limit = self.config.max_image_dimension
        if not (0 < size.width <= limit and 0 < size.height <= limit):
            reject("Image size out of range", imageSize=size.to_dict(), maxDimension=limit)

        for fmt in settings.formats:
            value = settings.quality.get(fmt, self.config.quality_for(fmt))
            if not 1 <= int(value) <= 100:
                reject("Quality must be between 1 and 100", format=fmt, quality=value)

        unknown = [model_id for model_id in request.model_ids if not self.catalog.has_model(model_id)]
        if unknown:
            reject("Unknown model(s)", unknownModels=unknown)

    # -- queries ----------------------------------------------------------

    def status(self, job_id: str) -> JobRecord:
        return self.jobs.require(job_id)

    def list_jobs(self, limit: int | None = None) -> list[JobRecord]:
        return self.jobs.list_jobs(limit=limit)

    def metrics(self) -> SchedulerMetrics:
        return replace(self.jobs.metrics(), circuit_breaker_state=self.breaker.state)

    # -- control ----------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        never_started = False
        with self._lock:
            record = self.jobs.request_cancel(job_id)
            if record is None:
                return False
            token = self._tokens.get(job_id)
            if token is not None:
                token.cancel()
            future = self._futures.get(job_id)
            if record.status == STOPPED and future is not None and future.cancel():
                self._futures.pop(job_id, None)
                self._tokens.pop(job_id, None)
                never_started = True
        logger.info("Cancellation requested for job %s (%s)", job_id, record.status)
        if never_started:
            self._finish_callbacks(job_id)
        return True

    def add_progress_callback(self, job_id: str, callback: ProgressCallback) -> None:
        with self._lock:
            record = self.jobs.get(job_id)
            if record is None or record.is_terminal:
                return
            self._callbacks.setdefault(job_id, []).append(callback)

    def remove_progress_callbacks(self, job_id: str) -> None:
        with self._lock:
            self._callbacks.pop(job_id, None)

    def delete_model(self, model_id: str) -> list[str]:
        removed = self.catalog.delete_model(model_id)
        forget = getattr(self.renderer, "forget", None)
        if callable(forget):
            forget(model_id)
        return removed

    def cleanup_expired(self) -> int:
        return self.jobs.cleanup_expired()

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            job_ids = list(self._tokens)
        for job_id in job_ids:
            self.cancel(job_id)
        self._executor.shutdown(wait=wait, cancel_futures=True)

    # -- execution --------------------------------------------------------

    def _run_job(self, job_id: str, token: CancellationToken) -> None:
        try:
            record = self.jobs.get(job_id)
            if record is None or record.is_terminal:
                return
            if token.cancelled:
                self.jobs.set_stopped(job_id, reason="Cancelled before start")
                return

            record = self.jobs.set_processing(job_id)
            if record.status != PROCESSING:
                return
            logger.info("Processing job %s", job_id)
            self._execute(record, token)

        except FatalJobError as exc:
            logger.error("Job %s failed: %s", job_id, exc)
            self.jobs.set_failed(job_id, str(exc))
        except Exception as exc:
            logger.exception("Job %s failed unexpectedly", job_id)
            self.jobs.set_failed(job_id, f"{type(exc).__name__}: {exc}")
        finally:
            with self._lock:
                self._futures.pop(job_id, None)
                self._tokens.pop(job_id, None)
            self._finish_callbacks(job_id)

    def _execute(self, record: JobRecord, token: CancellationToken) -> None:
        job_id = record.id
        settings = record.request.settings

        pairs: list[tuple[str, str]] = []
        skipped: list[str] = []
        for model_id, material_id in record.request.pairs():
            if self.store.exists(model_id, material_id, settings.frame_count, settings.formats):
                skipped.append(self.store.sequence_id(model_id, material_id))
            else:
                pairs.append((model_id, material_id))

        total = len(pairs) * settings.frame_count
        self.jobs.set_plan(job_id, total, skipped)
        if skipped:
            logger.info("Job %s: skipping %d complete sequence(s): %s", job_id, len(skipped), ", ".join(skipped))

        done = 0
        started = time.monotonic()
        for model_id, material_id in pairs:
            for frame_index in range(settings.frame_count):
                if token.cancelled:
                    self.jobs.set_stopped(job_id)
                    logger.info("Job %s stopped after %d/%d units", job_id, done, total)
                    return

                unit = WorkUnit(
                    model_id=model_id,
                    material_id=material_id,
                    frame_index=frame_index,
                    angle=frame_index * settings.rotation_increment,
                )
                self.breaker.call(lambda: self._process_unit(unit, settings))

                done += 1
                remaining = (time.monotonic() - started) / done * (total - done)
                eta = datetime.now(timezone.utc) + timedelta(seconds=remaining)
                self.jobs.record_progress(job_id, model_id, material_id, frame_index, done, eta)
                self._notify(job_id)

            self._write_manifest(job_id, model_id, material_id, settings)

        self.jobs.set_completed(job_id)
        logger.info("Job %s completed: %d unit(s), %d skipped sequence(s)", job_id, total, len(skipped))

    def _process_unit(self, unit: WorkUnit, settings: GenerationSettings) -> None:
        image = self._attempt(
            unit,
            "render",
            lambda: self.renderer.render(
                unit.model_id,
                unit.material_id,
                unit.frame_index,
                settings.image_size,
                angle=unit.angle,
            ),
        )
        for fmt in settings.formats:
            quality = settings.quality.get(fmt, self.config.quality_for(fmt))
            data = self._attempt(unit, f"encode {fmt}", lambda fmt=fmt: self.encoder.encode(image, fmt, quality))
            try:
                self.store.write(unit.model_id, unit.material_id, unit.frame_index, fmt, data)
            except OSError as exc:
                raise FatalJobError(
                    f"Could not write {self.store.sequence_id(unit.model_id, unit.material_id)}/"
                    f"{unit.frame_index}.{fmt}: {exc}"
                ) from exc

    def _attempt(self, unit: WorkUnit, what: str, call: Callable[[], T]) -> T:
        label = f"{unit.model_id}-{unit.material_id} frame {unit.frame_index}"
        attempts = 0
        while True:
            try:
                return call()
            except TransientWorkUnitError as exc:
                attempts += 1
                if attempts > self.config.retry_attempts:
                    raise FatalJobError(f"{what} failed for {label} after {attempts} attempts: {exc}") from exc
                self.jobs.record_retry()
                logger.warning("Retrying %s for %s (attempt %d): %s", what, label, attempts + 1, exc)
            except FatalJobError:
                raise
            except Exception as exc:
                raise FatalJobError(f"{what} failed for {label}: {type(exc).__name__}: {exc}") from exc

    def _write_manifest(self, job_id: str, model_id: str, material_id: str, settings: GenerationSettings) -> None:
        metadata = {
            "frameCount": settings.frame_count,
            "rotationIncrement": settings.rotation_increment,
            "formats": list(settings.formats),
            "imageSize": settings.image_size.to_dict(),
            "quality": {fmt: settings.quality.get(fmt, self.config.quality_for(fmt)) for fmt in settings.formats},
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "generator": self.config.generator_name,
            "jobId": job_id,
        }
        try:
            self.store.write_manifest(model_id, material_id, metadata)
        except OSError as exc:
            raise FatalJobError(f"Could not write manifest for {model_id}-{material_id}: {exc}") from exc
        self.jobs.mark_sequence_completed(job_id, self.store.sequence_id(model_id, material_id))

    def _notify(self, job_id: str) -> None:
        with self._lock:
            callbacks = list(self._callbacks.get(job_id, ()))
        if not callbacks:
            return
        record = self.jobs.get(job_id)
        if record is None:
            return
        payload = record.to_dict()
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Progress callback failed for job %s", job_id)

    def _finish_callbacks(self, job_id: str) -> None:
        """Deliver the terminal state, then forget the job's callbacks."""
        self._notify(job_id)
        with self._lock:
            self._callbacks.pop(job_id, None)
