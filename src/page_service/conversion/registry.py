import threading
import uuid
from datetime import timedelta
from typing import Callable

from ..log_utils import get_logger
from .broadcaster import ProgressBroadcaster
from .cache import ConversionCache
from .errors import ConflictError, NotFoundError, ValidationError
from .metrics import MetricsCollector
from .models import (
    STAGE_PROGRESS,
    ConversionJob,
    JobMetadata,
    JobStatus,
    Priority,
    Stage,
    Submission,
    iso,
    utcnow,
)

logger = get_logger(__name__)

JobListener = Callable[[ConversionJob], None]

_STAGE_FOR_STATUS = {
    JobStatus.QUEUED: Stage.QUEUED,
    JobStatus.PROCESSING: Stage.INITIALIZING,
    JobStatus.COMPLETED: Stage.COMPLETED,
    JobStatus.FAILED: Stage.FAILED,
    JobStatus.CANCELLED: Stage.CANCELLED,
}

# Failed and cancelled jobs keep the progress they reached.
_STAGE_DRIVES_PROGRESS = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.COMPLETED})


def _new_job_id() -> str:
    return str(uuid.uuid4())


class JobRegistry:
    """In-memory document -> job state.

    Holds every active job plus terminal jobs for ``retention_sec``. The
    check-existing/create-new step of ``submit`` runs under one lock, which is
    what keeps a document to a single queued or processing job.
    """

    def __init__(
        self,
        cache: ConversionCache,
        metrics: MetricsCollector,
        broadcaster: ProgressBroadcaster | None = None,
        *,
        retention_sec: float = 3600.0,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._cache = cache
        self._metrics = metrics
        self._broadcaster = broadcaster
        self._retention = timedelta(seconds=retention_sec)
        self._new_id = id_factory or _new_job_id
        self._lock = threading.Lock()
        self._jobs: dict[str, ConversionJob] = {}
        self._active: dict[str, str] = {}
        self._latest: dict[str, str] = {}
        self._sequence = 0
        self._listeners: list[JobListener] = []

    @property
    def broadcaster(self) -> ProgressBroadcaster | None:
        return self._broadcaster

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def submit(
        self,
        document_id: str,
        owner_id: str,
        priority: str = Priority.NORMAL,
        metadata: JobMetadata | None = None,
        force: bool = False,
    ) -> Submission:
        if priority not in Priority.ALL:
            raise ValidationError(
                f"Invalid priority '{priority}'",
                field="priority",
                allowed=list(Priority.ALL),
            )
        metadata = metadata or JobMetadata()
        metadata.force = force

        with self._lock:
            if not force:
                cached = self._cache.get(document_id)
                if cached is not None:
                    logger.info("Cache hit for document %s", document_id)
                    return Submission(cached=cached)

            self._raise_if_active(document_id)

            if force:
                self._cache.invalidate(document_id)

            self._sequence += 1
            job = ConversionJob(
                document_id=document_id,
                job_id=self._new_id(),
                owner_id=owner_id,
                priority=priority,
                metadata=metadata,
                sequence=self._sequence,
            )
            self._jobs[job.job_id] = job
            self._active[document_id] = job.job_id
            self._latest[document_id] = job.job_id
            snapshot = job.snapshot()

        logger.info(
            "Queued job %s for document %s (priority=%s, force=%s)",
            snapshot.job_id,
            document_id,
            priority,
            force,
        )
        if self._broadcaster is not None:
            self._broadcaster.publish_progress(snapshot)
        return Submission(job=snapshot)

    def check_active(self, document_id: str) -> None:
        """Raise ``ConflictError`` if the document has a queued or processing job."""
        with self._lock:
            self._raise_if_active(document_id)

    def _raise_if_active(self, document_id: str) -> None:
        existing_id = self._active.get(document_id)
        if existing_id is None:
            return
        existing = self._jobs[existing_id]
        raise ConflictError(
            "Conversion already in progress",
            jobId=existing.job_id,
            progress=existing.progress,
            status=existing.status,
            estimatedCompletion=iso(existing.estimated_completion),
        )

    def get(self, document_id: str) -> ConversionJob | None:
        with self._lock:
            job_id = self._active.get(document_id) or self._latest.get(document_id)
            job = self._jobs.get(job_id) if job_id else None
            return job.snapshot() if job else None

    def get_by_job_id(self, job_id: str) -> ConversionJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def status_of(self, job_id: str) -> str | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.status if job else None

    def transition(self, job_id: str, new_status: str, **fields: object) -> ConversionJob | None:
        """Apply a status change and the given field updates.

        Returns the updated job, or None when the job is already terminal
        (terminal jobs never change again). Unknown job ids raise
        ``NotFoundError``.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", jobId=job_id)
            if job.is_terminal:
                return None

            previous = job.status
            now = utcnow()
            job.status = new_status
            for name, value in fields.items():
                setattr(job, name, value)
            if "stage" not in fields and new_status != previous:
                job.stage = _STAGE_FOR_STATUS[new_status]
            if "progress" not in fields and new_status in _STAGE_DRIVES_PROGRESS and new_status != previous:
                job.progress = STAGE_PROGRESS[job.stage]
            if new_status == JobStatus.PROCESSING and job.started_at is None:
                job.started_at = now
            if new_status in JobStatus.TERMINAL:
                job.completed_at = now
                if job.started_at is not None and job.processing_time is None:
                    job.processing_time = (now - job.started_at).total_seconds()
                if self._active.get(job.document_id) == job_id:
                    del self._active[job.document_id]
            snapshot = job.snapshot()

        if new_status != previous:
            logger.info("Job %s: %s -> %s", job_id, previous, new_status)
        self._emit(snapshot, previous)
        return snapshot

    def update_progress(self, job_id: str, progress: int, stage: str | None = None) -> ConversionJob | None:
        """Progress-only update for a processing job; ignored otherwise."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            job.progress = max(job.progress, min(100, int(progress)))
            if stage is not None:
                job.stage = stage
            snapshot = job.snapshot()
        if self._broadcaster is not None:
            self._broadcaster.publish_progress(snapshot)
        return snapshot

    def _emit(self, job: ConversionJob, previous: str) -> None:
        if self._broadcaster is not None:
            self._broadcaster.publish_progress(job)
            if job.status == JobStatus.COMPLETED:
                self._broadcaster.publish_complete(job.document_id, success=True, total_pages=job.total_pages)
            elif job.status == JobStatus.FAILED:
                self._broadcaster.publish_complete(
                    job.document_id, success=False, error=job.error or "Conversion failed"
                )
            elif job.status == JobStatus.CANCELLED:
                self._broadcaster.publish_complete(
                    job.document_id, success=False, error="Conversion cancelled"
                )

        if job.status in (JobStatus.COMPLETED, JobStatus.FAILED) and previous != job.status:
            self._metrics.record(
                job.job_id,
                job.document_id,
                job.processing_time or 0.0,
                success=job.status == JobStatus.COMPLETED,
            )

        if job.is_terminal:
            for listener in self._listeners:
                try:
                    listener(job)
                except Exception:
                    logger.exception("Job listener failed for job %s", job.job_id)

    def active_jobs(self) -> list[ConversionJob]:
        with self._lock:
            return [self._jobs[job_id].snapshot() for job_id in self._active.values()]

    def counts(self) -> tuple[int, int]:
        """(queued, processing) job counts."""
        with self._lock:
            statuses = [self._jobs[job_id].status for job_id in self._active.values()]
        return statuses.count(JobStatus.QUEUED), statuses.count(JobStatus.PROCESSING)

    def metrics(self) -> dict[str, object]:
        queued, processing = self.counts()
        snapshot = self._metrics.snapshot()
        return {
            "queueDepth": queued,
            "activeJobs": processing,
            "averageProcessingTime": snapshot["averageProcessingTime"],
            "successRate": snapshot["successRate"],
            "failureRate": snapshot["failureRate"],
        }

    def evict_expired(self) -> int:
        cutoff = utcnow() - self._retention
        with self._lock:
            expired = [
                job
                for job in self._jobs.values()
                if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job in expired:
                del self._jobs[job.job_id]
                if self._latest.get(job.document_id) == job.job_id:
                    del self._latest[job.document_id]
        if expired:
            logger.info("Evicted %d expired jobs", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
