import asyncio
import heapq
import time
from collections import Counter
from datetime import timedelta

from ..log_utils import get_logger
from .cache import ConversionCache
from .errors import ExternalFailure, NotFoundError
from .interfaces import DocumentStore, RasterizeOptions, Rasterizer
from .models import ConversionJob, JobStatus, Priority, Stage, utcnow
from .registry import JobRegistry

logger = get_logger(__name__)

# Rasterizer page progress is mapped into this band of the job's 0-100 scale.
_RASTER_PROGRESS_FLOOR = 10
_RASTER_PROGRESS_CEIL = 90


class PriorityScheduler:
    """Bounded worker pool over a single priority queue.

    ``workers`` tasks pull the highest-priority queued job (FIFO inside a
    priority band) and run the blocking rasterizer in a thread under a hard
    timeout. Jobs tagged with a batch id may additionally be held back by a
    per-batch concurrency limit; a held-back job is skipped in favour of the
    next eligible one.
    """

    def __init__(
        self,
        registry: JobRegistry,
        cache: ConversionCache,
        rasterizer: Rasterizer,
        documents: DocumentStore,
        *,
        workers: int = 3,
        timeout: float = 1800.0,
        raster_options: RasterizeOptions | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._registry = registry
        self._cache = cache
        self._rasterizer = rasterizer
        self._documents = documents
        self._workers = workers
        self._timeout = timeout
        self._raster_options = raster_options or RasterizeOptions()
        # (priority rank, sequence, job_id); cancelled entries are skipped lazily
        self._heap: list[tuple[int, int, str]] = []
        self._queued: dict[str, ConversionJob] = {}
        self._running: dict[str, ConversionJob] = {}
        self._batch_limits: dict[str, int] = {}
        self._batch_running: Counter[str] = Counter()
        # Jobs past the point of no return: pages are being saved
        self._finalizing: set[str] = set()
        self._changed = asyncio.Condition()
        self._tasks: list[asyncio.Task] = []
        self._stopping = False

    @property
    def workers(self) -> int:
        return self._workers

    async def start(self) -> None:
        self._stopping = False
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        logger.info("Started %d conversion workers", self._workers)

    async def stop(self) -> None:
        self._stopping = True
        for t in self._tasks:
            t.cancel()
        # Workers that lost their cancellation still see the flag on wake-up
        async with self._changed:
            self._changed.notify_all()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def enqueue(self, job: ConversionJob) -> None:
        async with self._changed:
            if self._registry.status_of(job.job_id) != JobStatus.QUEUED:
                # Cancelled between registration and enqueue
                return
            self._queued[job.job_id] = job
            heapq.heappush(self._heap, (Priority.RANK[job.priority], job.sequence, job.job_id))
            self._changed.notify_all()

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or processing job.

        A queued job leaves the queue and never starts. A processing job is
        marked cancelled; its rasterizer call keeps running and the result is
        discarded when it arrives. A job already saving its pages can no
        longer be cancelled.
        """
        if job_id in self._finalizing:
            return False
        job = self._queued.pop(job_id, None)
        if job is None and job_id not in self._running:
            # Registered but not handed to enqueue yet
            if self._registry.status_of(job_id) != JobStatus.QUEUED:
                return False
        updated = self._registry.transition(job_id, JobStatus.CANCELLED)
        if updated is None:
            return False
        logger.info("Cancelled %s job %s", "running" if job_id in self._running else "queued", job_id)
        return True

    def set_batch_limit(self, batch_id: str, max_concurrent: int) -> None:
        self._batch_limits[batch_id] = max(1, min(max_concurrent, self._workers))

    def clear_batch_limit(self, batch_id: str) -> None:
        self._batch_limits.pop(batch_id, None)

    def queue_position(self, job_id: str) -> int | None:
        """1-based position among queued jobs, or None if not queued."""
        if job_id not in self._queued:
            return None
        ordered = sorted(entry for entry in self._heap if entry[2] in self._queued)
        for position, entry in enumerate(ordered, start=1):
            if entry[2] == job_id:
                return position
        return None

    def queue_stats(self) -> dict[str, object]:
        now = utcnow()
        queued = list(self._queued.values())
        by_priority = {p: 0 for p in Priority.ALL}
        for job in queued:
            by_priority[job.priority] += 1
        waits = [(now - job.created_at).total_seconds() for job in queued]
        return {
            "totalQueued": len(queued),
            "processing": len(self._running),
            "byPriority": by_priority,
            "averageWaitTime": sum(waits) / len(waits) if waits else 0.0,
            "workers": self._workers,
            "batchLimits": dict(self._batch_limits),
        }

    def _eligible(self, job: ConversionJob) -> bool:
        batch_id = job.metadata.batch_id
        if batch_id is None or batch_id not in self._batch_limits:
            return True
        return self._batch_running[batch_id] < self._batch_limits[batch_id]

    def _has_eligible(self) -> bool:
        return any(self._eligible(job) for job in self._queued.values())

    def _pop_eligible(self) -> ConversionJob | None:
        deferred = []
        found = None
        while self._heap:
            entry = heapq.heappop(self._heap)
            job = self._queued.get(entry[2])
            if job is None:
                continue
            if self._eligible(job):
                found = self._queued.pop(entry[2])
                break
            deferred.append(entry)
        for entry in deferred:
            heapq.heappush(self._heap, entry)
        return found

    async def _worker_loop(self, name: str) -> None:
        while not self._stopping:
            async with self._changed:
                await self._changed.wait_for(lambda: self._stopping or self._has_eligible())
                if self._stopping:
                    return
                job = self._pop_eligible()
                if job is None:
                    continue
                self._running[job.job_id] = job
                if job.metadata.batch_id is not None:
                    self._batch_running[job.metadata.batch_id] += 1
            try:
                await self._process(name, job)
            except Exception:
                # Job state is already recorded by _process; keep the worker alive
                logger.exception("%s: unexpected error while processing job %s", name, job.job_id)
            finally:
                async with self._changed:
                    self._running.pop(job.job_id, None)
                    batch_id = job.metadata.batch_id
                    if batch_id is not None:
                        self._batch_running[batch_id] -= 1
                        if self._batch_running[batch_id] <= 0:
                            del self._batch_running[batch_id]
                    self._changed.notify_all()

    async def _process(self, name: str, job: ConversionJob) -> None:
        average = self._registry.metrics()["averageProcessingTime"]
        estimated = utcnow() + timedelta(seconds=average) if average else None
        started = self._registry.transition(
            job.job_id,
            JobStatus.PROCESSING,
            stage=Stage.INITIALIZING,
            estimated_completion=estimated,
        )
        if started is None:
            return
        logger.info("%s: converting document %s (job %s)", name, job.document_id, job.job_id)

        t0 = time.monotonic()
        try:
            page_urls, fingerprint = await self._convert(job)
        except ExternalFailure as e:
            self._fail(job, e.message, e.kind, e.retryable)
            return
        except Exception as e:
            logger.exception("%s: conversion of document %s crashed", name, job.document_id)
            self._fail(job, str(e) or e.__class__.__name__, "internal", True)
            return

        # Check and claim happen without an await in between, so a cancel
        # either lands before the claim or is refused.
        if self._registry.status_of(job.job_id) != JobStatus.PROCESSING:
            logger.info("Discarding result of job %s; it is no longer processing", job.job_id)
            return
        self._finalizing.add(job.job_id)
        try:
            self._registry.update_progress(job.job_id, _RASTER_PROGRESS_CEIL, Stage.UPLOADING)
            try:
                await asyncio.to_thread(self._documents.save_pages, job.document_id, page_urls)
            except Exception as e:
                logger.exception("Saving page records for document %s failed", job.document_id)
                self._fail(job, f"Storage error: {e}", "storage", True)
                return

            self._cache.put(job.document_id, page_urls, fingerprint)
            self._registry.transition(
                job.job_id,
                JobStatus.COMPLETED,
                progress=100,
                total_pages=len(page_urls),
                processing_time=time.monotonic() - t0,
            )
        finally:
            self._finalizing.discard(job.job_id)
        logger.info("%s: document %s converted (%d pages)", name, job.document_id, len(page_urls))

    async def _convert(self, job: ConversionJob) -> tuple[list[str], str | None]:
        document = await asyncio.to_thread(self._documents.get_document, job.document_id)
        if document is None:
            raise ExternalFailure(
                f"Document {job.document_id} not found",
                retryable=False,
                kind=NotFoundError.kind,
            )

        loop = asyncio.get_running_loop()
        span = _RASTER_PROGRESS_CEIL - _RASTER_PROGRESS_FLOOR

        def on_progress(done: int, total: int) -> None:
            pct = _RASTER_PROGRESS_FLOOR + (span * done // total if total else 0)
            loop.call_soon_threadsafe(self._registry.update_progress, job.job_id, pct, Stage.CONVERTING)

        options = RasterizeOptions(
            scale=self._raster_options.scale,
            quality=self._raster_options.quality,
            image_format=self._raster_options.image_format,
            on_progress=on_progress,
        )
        self._registry.update_progress(job.job_id, _RASTER_PROGRESS_FLOOR, Stage.CONVERTING)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._rasterizer.convert,
                    job.document_id,
                    job.owner_id,
                    document.storage_path,
                    options,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise ExternalFailure(
                f"Conversion timed out after {self._timeout:g}s",
                kind="timeout",
                retryable=True,
            ) from None
        except ExternalFailure:
            raise
        except Exception as e:
            raise ExternalFailure(f"Rasterizer error: {e}", kind="rasterizer", retryable=True) from e

        if not result.success:
            raise ExternalFailure(result.error or "Conversion failed", kind="rasterizer", retryable=True)
        if not result.page_urls:
            raise ExternalFailure("Conversion produced no pages", kind="rasterizer", retryable=False)
        return result.page_urls, document.fingerprint

    def _fail(self, job: ConversionJob, message: str, code: str, retryable: bool) -> None:
        failed = self._registry.transition(job.job_id, JobStatus.FAILED, error=message)
        if failed is None:
            return
        logger.warning("Job %s for document %s failed: %s", job.job_id, job.document_id, message)
        broadcaster = self._registry.broadcaster
        if broadcaster is not None:
            broadcaster.publish_error(job.document_id, message, code.upper(), retryable)
