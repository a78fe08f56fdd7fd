import asyncio
import math
from typing import Callable

from ..config import ServiceConfig
from ..log_utils import get_logger
from .batch import BatchOrchestrator
from .broadcaster import ProgressBroadcaster
from .cache import ConversionCache
from .errors import ConflictError, NotFoundError, ValidationError
from .interfaces import DocumentStore, RasterizeOptions, Rasterizer
from .metrics import MetricsCollector
from .models import (
    BatchProgress,
    BatchRequest,
    ConversionJob,
    DocumentRecord,
    JobMetadata,
    Priority,
    Submission,
    iso,
)
from .registry import JobRegistry
from .scheduler import PriorityScheduler

logger = get_logger(__name__)

# Floor and fallback for per-job time used in wait estimates, in seconds.
_MIN_ESTIMATE_SEC = 30.0
_DEFAULT_ESTIMATE_SEC = 60.0


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return "Less than 1 second"

    def plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'' if n == 1 else 's'}"

    total = round(seconds)
    if total < 60:
        return plural(total, "second")
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return plural(minutes, "minute") + (f" {plural(secs, 'second')}" if secs else "")
    hours, minutes = divmod(minutes, 60)
    return plural(hours, "hour") + (f" {plural(minutes, 'minute')}" if minutes else "")


class ConversionService:
    """Core domain service orchestrating page conversion jobs.

    This service is framework-agnostic. It wires the cache, registry,
    scheduler, batch orchestrator, broadcaster and metrics together, and
    exposes the async operations the HTTP layer calls. Construct one per
    process and pass it to the web app.
    """

    def __init__(
        self,
        documents: DocumentStore,
        rasterizer: Rasterizer,
        *,
        config: ServiceConfig | None = None,
        job_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._config = config or ServiceConfig()
        self._documents = documents
        self.cache = ConversionCache(max_entries=self._config.cache_max_entries)
        self.metrics = MetricsCollector(
            window=self._config.metrics_window,
            horizon_sec=self._config.metrics_horizon_sec,
        )
        self.broadcaster = ProgressBroadcaster(
            ping_interval=self._config.ping_interval_sec,
            ping_timeout=self._config.ping_timeout_sec,
            queue_size=self._config.subscriber_queue_size,
        )
        self.registry = JobRegistry(
            self.cache,
            self.metrics,
            self.broadcaster,
            retention_sec=self._config.job_retention_sec,
            id_factory=job_id_factory,
        )
        self.scheduler = PriorityScheduler(
            self.registry,
            self.cache,
            rasterizer,
            documents,
            workers=self._config.workers,
            timeout=self._config.job_timeout_sec,
            raster_options=RasterizeOptions(
                scale=self._config.raster_scale,
                quality=self._config.raster_quality,
            ),
        )
        self.batches = BatchOrchestrator(
            self.registry,
            self.scheduler,
            self.submit,
            self.metrics,
            max_batch_size=self._config.max_batch_size,
            max_concurrency=self._config.max_batch_concurrency,
        )
        self._maintenance: asyncio.Task | None = None

    @property
    def config(self) -> ServiceConfig:
        return self._config

    async def start(self) -> None:
        await self.scheduler.start()
        await self.broadcaster.start()
        if self._maintenance is None:
            self._maintenance = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        if self._maintenance is not None:
            self._maintenance.cancel()
            self._maintenance = None
        await self.broadcaster.stop()
        await self.scheduler.stop()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.maintenance_interval_sec)
            self.evict_expired()

    def evict_expired(self) -> int:
        evicted = self.registry.evict_expired()
        evicted += self.batches.evict_completed(self._config.job_retention_sec)
        return evicted

    # Single documents

    async def _load_document(self, document_id: str, owner_id: str) -> DocumentRecord:
        document = await asyncio.to_thread(self._documents.get_document, document_id)
        if document is None or document.owner_id != owner_id:
            raise NotFoundError("Document not found or access denied", documentId=document_id)
        return document

    async def submit(
        self,
        document_id: str,
        owner_id: str,
        priority: str = Priority.NORMAL,
        force: bool = False,
        metadata: dict[str, object] | None = None,
    ) -> Submission:
        """Queue a conversion, or answer from the cache.

        Raises ``ValidationError`` for a bad priority or a non-PDF document,
        ``NotFoundError`` for an unknown document and ``ConflictError`` when
        the document already has a queued or processing job.
        """
        if priority not in Priority.ALL:
            raise ValidationError(f"Invalid priority '{priority}'", field="priority", allowed=list(Priority.ALL))
        document = await self._load_document(document_id, owner_id)
        if not document.is_pdf:
            raise ValidationError(
                "Document type not supported for conversion",
                kind="unsupported_content_type",
                documentType=document.content_type,
            )

        if not force and self.cache.is_stale(document_id, document.fingerprint):
            logger.info("Cached pages for document %s are stale; reconverting", document_id)
            self.cache.invalidate(document_id)

        # Pages persisted by an earlier process but not cached in this one
        if not force and not self.cache.has_cached(document_id):
            # A running reconversion wins over the persisted pages it replaces
            self.registry.check_active(document_id)
            existing_pages = await asyncio.to_thread(self._documents.count_pages, document_id)
            if existing_pages > 0:
                self.registry.check_active(document_id)
                raise ConflictError(
                    "Document already converted",
                    kind="already_converted",
                    existingPages=existing_pages,
                    suggestion='Add "force": true to the request body to reconvert',
                )

        submission = self.registry.submit(
            document_id,
            owner_id,
            priority,
            JobMetadata.from_dict(metadata),
            force,
        )
        if submission.cached is not None:
            self.metrics.record("", document_id, 0.0, success=True, from_cache=True)
            self.broadcaster.publish_complete(
                document_id,
                success=True,
                total_pages=submission.cached.page_count,
                cached=True,
            )
            return submission

        await self.scheduler.enqueue(submission.job)
        position = self.scheduler.queue_position(submission.job.job_id)
        if position is not None:
            submission.queue_position = position
            submission.estimated_wait_time = self.estimate_wait_time(position)
        else:
            # Already picked up by a worker
            submission.queue_position = 0
            submission.estimated_wait_time = 0.0
        return submission

    def cancel_job(self, document_id: str) -> bool:
        job = self.registry.get(document_id)
        if job is None or not job.is_active:
            return False
        return self.scheduler.cancel(job.job_id)

    def get_job(self, job_id: str) -> ConversionJob:
        job = self.registry.get_by_job_id(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", jobId=job_id)
        return job

    def estimate_wait_time(self, position: int) -> float:
        if position <= 1:
            return 0.0
        _, processing = self.registry.counts()
        capacity = max(1, self.scheduler.workers - processing)
        average = self.metrics.average_processing_time() or _DEFAULT_ESTIMATE_SEC
        return math.ceil(position / capacity) * max(average, _MIN_ESTIMATE_SEC)

    async def status(self, document_id: str, owner_id: str) -> dict[str, object]:
        document = await self._load_document(document_id, owner_id)
        existing_pages = await asyncio.to_thread(self._documents.count_pages, document_id)
        if not existing_pages and self.cache.has_cached(document_id):
            existing_pages = self.cache.peek(document_id).page_count
        job = self.registry.get(document_id)
        metrics = self.registry.metrics()
        return {
            "documentId": document_id,
            "documentTitle": document.title,
            "contentType": document.content_type,
            "convertible": document.is_pdf,
            "existingPages": existing_pages,
            "hasPages": existing_pages > 0,
            "currentConversion": (
                {
                    "jobId": job.job_id,
                    "status": job.status,
                    "stage": job.stage,
                    "progress": job.progress,
                    "estimatedCompletion": iso(job.estimated_completion),
                    "startedAt": iso(job.started_at),
                    "error": job.error,
                }
                if job
                else None
            ),
            "queue": {
                "depth": metrics["queueDepth"],
                "activeJobs": metrics["activeJobs"],
                "averageProcessingTime": metrics["averageProcessingTime"],
                "estimatedWaitTime": self.estimate_wait_time(metrics["queueDepth"] + 1),
            },
            "options": {
                "availablePriorities": list(Priority.ALL),
                "canForceReconvert": existing_pages > 0,
                "recommendedPriority": Priority.NORMAL if existing_pages > 0 else Priority.HIGH,
            },
        }

    # Batches

    async def submit_batch(
        self,
        document_ids: list[str],
        owner_id: str,
        priority: str = Priority.NORMAL,
        max_concurrent: int | None = None,
        metadata: dict[str, object] | None = None,
    ) -> BatchRequest:
        return await self.batches.queue_batch(document_ids, owner_id, priority, max_concurrent, metadata)

    def batch_status(self, batch_id: str) -> tuple[BatchProgress, BatchRequest]:
        progress = self.batches.progress(batch_id)
        result = self.batches.result(batch_id)
        if progress is None or result is None:
            raise NotFoundError(f"Batch {batch_id} not found", batchId=batch_id)
        return progress, result

    def cancel_batch(self, batch_id: str) -> bool:
        return self.batches.cancel(batch_id)

    # Cache and monitoring

    def cache_stats(self) -> dict[str, object]:
        return self.cache.stats()

    def invalidate_cache(self, document_ids: list[str]) -> int:
        return self.cache.invalidate_many(document_ids)

    async def warm_cache(self, document_ids: list[str], owner_id: str) -> int:
        """Queue low-priority conversions for documents that are not cached yet.

        At most ``max_warming_batch`` ids are considered. Cached, in-flight,
        missing and already converted documents are skipped. Returns the number
        of jobs queued.
        """
        warmed = 0
        for document_id in list(dict.fromkeys(document_ids))[: self._config.max_warming_batch]:
            if self.cache.has_cached(document_id):
                continue
            try:
                submission = await self.submit(
                    document_id,
                    owner_id,
                    Priority.LOW,
                    metadata={"reason": "cache_warming"},
                )
            except (ConflictError, NotFoundError, ValidationError) as exc:
                logger.info("Skipping cache warming for document %s: %s", document_id, exc.message)
                continue
            if submission.job is not None:
                warmed += 1
        logger.info("Cache warming queued %d of %d documents", warmed, len(document_ids))
        return warmed

    def queue_overview(self) -> dict[str, object]:
        overview = self.registry.metrics()
        overview["queue"] = self.scheduler.queue_stats()
        overview["activeBatches"] = self.batches.active_count()
        overview["metrics"] = self.metrics.snapshot()
        overview["recent"] = [s.to_dict() for s in self.metrics.recent()]
        return overview
