import uuid
from datetime import timedelta
from typing import Awaitable, Callable

from ..log_utils import get_logger
from .errors import ConflictError, NotFoundError, ValidationError
from .metrics import MetricsCollector
from .models import (
    BatchProgress,
    BatchRequest,
    ConversionJob,
    ConversionResult,
    JobStatus,
    Priority,
    Submission,
    utcnow,
)
from .registry import JobRegistry
from .scheduler import PriorityScheduler

logger = get_logger(__name__)

Submitter = Callable[..., Awaitable[Submission]]


def _new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex}"


class BatchOrchestrator:
    """Tracks groups of per-document jobs submitted together.

    Members go through the normal submission path, so a batch never bypasses
    the single-active-job rule: a document that is already converting is
    joined, a cached document is an immediate success. One failing member
    never fails the batch.
    """

    def __init__(
        self,
        registry: JobRegistry,
        scheduler: PriorityScheduler,
        submit: Submitter,
        metrics: MetricsCollector,
        *,
        max_batch_size: int = 50,
        max_concurrency: int = 10,
        id_factory: Callable[[], str] = _new_batch_id,
    ) -> None:
        self._registry = registry
        self._scheduler = scheduler
        self._submit = submit
        self._metrics = metrics
        self._max_batch_size = max_batch_size
        self._max_concurrency = max_concurrency
        self._new_id = id_factory
        self._batches: dict[str, BatchRequest] = {}
        self._by_job: dict[str, set[str]] = {}
        # Batches whose members are still being submitted
        self._submitting: set[str] = set()
        registry.add_listener(self._on_job_finished)

    async def queue_batch(
        self,
        document_ids: list[str],
        owner_id: str,
        priority: str = Priority.NORMAL,
        max_concurrent: int | None = None,
        metadata: dict[str, object] | None = None,
    ) -> BatchRequest:
        if not document_ids:
            raise ValidationError("At least one document is required", field="documentIds")
        if len(document_ids) > self._max_batch_size:
            raise ValidationError(
                f"A batch may contain at most {self._max_batch_size} documents",
                field="documentIds",
            )
        if priority not in Priority.ALL:
            raise ValidationError(f"Invalid priority '{priority}'", field="priority", allowed=list(Priority.ALL))
        if max_concurrent is not None and not 1 <= max_concurrent <= self._max_concurrency:
            raise ValidationError(
                f"maxConcurrent must be between 1 and {self._max_concurrency}",
                field="maxConcurrent",
            )

        unique_ids = list(dict.fromkeys(document_ids))
        batch = BatchRequest(
            batch_id=self._new_id(),
            owner_id=owner_id,
            document_ids=unique_ids,
            priority=priority,
            max_concurrent=max_concurrent,
        )
        self._batches[batch.batch_id] = batch
        if max_concurrent is not None:
            self._scheduler.set_batch_limit(batch.batch_id, max_concurrent)
        logger.info(
            "Starting batch %s for %d documents (priority=%s, maxConcurrent=%s)",
            batch.batch_id,
            len(unique_ids),
            priority,
            max_concurrent,
        )

        self._submitting.add(batch.batch_id)
        member_meta = dict(metadata or {})
        member_meta["batchId"] = batch.batch_id
        member_meta["batchSize"] = len(unique_ids)
        for document_id in unique_ids:
            if batch.cancelled:
                batch.failed.append(
                    ConversionResult(document_id=document_id, success=False, error="Conversion cancelled")
                )
                continue
            try:
                submission = await self._submit(document_id, owner_id, priority, metadata=dict(member_meta))
            except ConflictError as e:
                if e.job_id is None:
                    # Converted earlier; the pages are already there
                    batch.successful.append(
                        ConversionResult(
                            document_id=document_id,
                            success=True,
                            page_count=e.context.get("existingPages"),  # type: ignore[arg-type]
                            from_cache=True,
                        )
                    )
                    continue
                if batch.cancelled:
                    batch.failed.append(
                        ConversionResult(document_id=document_id, success=False, error="Conversion cancelled")
                    )
                    continue
                logger.info("Batch %s: joining in-flight job %s for document %s", batch.batch_id, e.job_id, document_id)
                self._track(batch, document_id, str(e.job_id))
            except (ValidationError, NotFoundError) as e:
                batch.failed.append(ConversionResult(document_id=document_id, success=False, error=e.message))
            else:
                if submission.cached is not None:
                    batch.successful.append(
                        ConversionResult(
                            document_id=document_id,
                            success=True,
                            page_count=submission.cached.page_count,
                            from_cache=True,
                        )
                    )
                elif submission.job is not None:
                    self._track(batch, document_id, submission.job.job_id)
                    if batch.cancelled:
                        # Cancelled while this member was being submitted
                        self._scheduler.cancel(submission.job.job_id)

        self._submitting.discard(batch.batch_id)
        self._maybe_complete(batch)
        return batch.snapshot()

    def get(self, batch_id: str) -> BatchRequest | None:
        batch = self._batches.get(batch_id)
        return batch.snapshot() if batch else None

    def result(self, batch_id: str) -> BatchRequest | None:
        return self.get(batch_id)

    def progress(self, batch_id: str) -> BatchProgress | None:
        """Current counts, read from member job statuses."""
        batch = self._batches.get(batch_id)
        if batch is None:
            return None

        completed = len(batch.successful)
        failed = len(batch.failed)
        processing = queued = 0
        for job_id in batch.pending.values():
            status = self._registry.status_of(job_id)
            if status == JobStatus.PROCESSING:
                processing += 1
            elif status == JobStatus.QUEUED:
                queued += 1
            elif status == JobStatus.COMPLETED:
                completed += 1
            elif status in JobStatus.TERMINAL:
                failed += 1

        total = batch.total_documents
        finished = completed + failed
        remaining = total - finished
        return BatchProgress(
            batch_id=batch.batch_id,
            total_documents=total,
            completed=completed,
            failed=failed,
            processing=processing,
            queued=queued,
            progress=round(finished / total * 100) if total else 100,
            estimated_time_remaining=0.0 if batch.completed or remaining <= 0 else self._eta(batch, remaining),
        )

    def cancel(self, batch_id: str) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None or batch.completed or batch.cancelled:
            return False

        batch.cancelled = True
        for document_id, job_id in list(batch.pending.items()):
            self._scheduler.cancel(job_id)
            # Cancelling fires the registry listener; members it did not fold
            # are settled here.
            if batch.pending.get(document_id) == job_id:
                job = self._registry.get_by_job_id(job_id)
                if job is not None and job.is_terminal:
                    self._fold(batch, job)
                elif job is not None:
                    # Folded by the listener once its pages are saved
                    continue
                else:
                    del batch.pending[document_id]
                    batch.failed.append(
                        ConversionResult(document_id=document_id, success=False, job_id=job_id, error="Conversion cancelled")
                    )
        self._maybe_complete(batch)
        logger.info(
            "Cancelled batch %s: %d successful, %d failed",
            batch_id,
            len(batch.successful),
            len(batch.failed),
        )
        return True

    def evict_completed(self, older_than_sec: float) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_sec)
        expired = [
            batch_id
            for batch_id, batch in self._batches.items()
            if batch.completed and batch.created_at + timedelta(seconds=batch.total_processing_time) < cutoff
        ]
        for batch_id in expired:
            del self._batches[batch_id]
        return len(expired)

    def active_count(self) -> int:
        return sum(1 for batch in self._batches.values() if not batch.completed)

    def _track(self, batch: BatchRequest, document_id: str, job_id: str) -> None:
        batch.pending[document_id] = job_id
        self._by_job.setdefault(job_id, set()).add(batch.batch_id)
        # The job may have finished while we were still submitting other members.
        job = self._registry.get_by_job_id(job_id)
        if job is None:
            del batch.pending[document_id]
            batch.failed.append(
                ConversionResult(document_id=document_id, success=False, job_id=job_id, error="Job is no longer tracked")
            )
        elif job.is_terminal:
            self._fold(batch, job)

    def _on_job_finished(self, job: ConversionJob) -> None:
        for batch_id in self._by_job.pop(job.job_id, set()):
            batch = self._batches.get(batch_id)
            if batch is not None:
                self._fold(batch, job)

    def _fold(self, batch: BatchRequest, job: ConversionJob) -> None:
        if batch.pending.get(job.document_id) != job.job_id:
            return
        del batch.pending[job.document_id]
        if job.status == JobStatus.COMPLETED:
            batch.successful.append(
                ConversionResult(
                    document_id=job.document_id,
                    success=True,
                    job_id=job.job_id,
                    page_count=job.total_pages,
                    processing_time=job.processing_time or 0.0,
                )
            )
        else:
            error = job.error or ("Conversion cancelled" if job.status == JobStatus.CANCELLED else "Conversion failed")
            batch.failed.append(
                ConversionResult(
                    document_id=job.document_id,
                    success=False,
                    job_id=job.job_id,
                    processing_time=job.processing_time or 0.0,
                    error=error,
                )
            )
        self._maybe_complete(batch)

    def _maybe_complete(self, batch: BatchRequest) -> None:
        if batch.completed or batch.pending or batch.batch_id in self._submitting:
            return
        batch.completed = True
        batch.total_processing_time = (utcnow() - batch.created_at).total_seconds()
        self._scheduler.clear_batch_limit(batch.batch_id)
        logger.info(
            "Batch %s completed: %d successful, %d failed",
            batch.batch_id,
            len(batch.successful),
            len(batch.failed),
        )

    def _eta(self, batch: BatchRequest, remaining: int) -> float | None:
        own = [r.processing_time for r in batch.successful if not r.from_cache and r.processing_time]
        average = sum(own) / len(own) if own else self._metrics.average_processing_time()
        if not average:
            return None
        workers = self._scheduler.workers
        effective = min(batch.max_concurrent or workers, workers)
        return average * remaining / effective
