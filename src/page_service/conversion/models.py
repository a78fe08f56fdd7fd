from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.isoformat().replace("+00:00", "Z")


class JobStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ACTIVE = frozenset({QUEUED, PROCESSING})
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


class Priority:
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    ALL = (HIGH, NORMAL, LOW)
    # Lower rank dequeues first.
    RANK = {HIGH: 0, NORMAL: 1, LOW: 2}


class Stage:
    QUEUED = "queued"
    INITIALIZING = "initializing"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_PROGRESS: dict[str, int] = {
    Stage.QUEUED: 0,
    Stage.INITIALIZING: 10,
    Stage.CONVERTING: 30,
    Stage.UPLOADING: 90,
    Stage.COMPLETED: 100,
    Stage.FAILED: 0,
    Stage.CANCELLED: 0,
}

STAGE_MESSAGES: dict[str, str] = {
    Stage.QUEUED: "Waiting in conversion queue",
    Stage.INITIALIZING: "Preparing document for conversion",
    Stage.CONVERTING: "Converting pages to images",
    Stage.UPLOADING: "Saving page images",
    Stage.COMPLETED: "Conversion complete",
    Stage.FAILED: "Conversion failed",
    Stage.CANCELLED: "Conversion cancelled",
}


@dataclass
class JobMetadata:
    """Known job metadata fields plus an open extension map.

    Serialized in camelCase so it round-trips with the JSON API; unknown keys
    land in ``extra`` and are written back unchanged.
    """

    manual_trigger: bool = False
    force: bool = False
    reason: str | None = None
    batch_id: str | None = None
    extra: dict[str, object] = field(default_factory=dict)

    _KNOWN = {"manualTrigger": "manual_trigger", "force": "force", "reason": "reason", "batchId": "batch_id"}

    @classmethod
    def from_dict(cls, data: dict[str, object] | None) -> "JobMetadata":
        meta = cls()
        for key, value in (data or {}).items():
            attr = cls._KNOWN.get(key)
            if attr is None:
                meta.extra[key] = value
            elif attr in ("manual_trigger", "force"):
                setattr(meta, attr, bool(value))
            else:
                setattr(meta, attr, None if value is None else str(value))
        return meta

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = dict(self.extra)
        data["manualTrigger"] = self.manual_trigger
        data["force"] = self.force
        if self.reason is not None:
            data["reason"] = self.reason
        if self.batch_id is not None:
            data["batchId"] = self.batch_id
        return data


@dataclass
class ConversionJob:
    document_id: str
    job_id: str
    owner_id: str
    priority: str = Priority.NORMAL
    status: str = JobStatus.QUEUED
    stage: str = Stage.QUEUED
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None
    error: str | None = None
    total_pages: int | None = None
    processing_time: float | None = None
    metadata: JobMetadata = field(default_factory=JobMetadata)
    sequence: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in JobStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @property
    def message(self) -> str:
        return STAGE_MESSAGES.get(self.stage, "")

    def snapshot(self) -> "ConversionJob":
        return replace(self, metadata=replace(self.metadata, extra=dict(self.metadata.extra)))

    def to_dict(self) -> dict[str, object]:
        return {
            "jobId": self.job_id,
            "documentId": self.document_id,
            "ownerId": self.owner_id,
            "priority": self.priority,
            "status": self.status,
            "stage": self.stage,
            "message": self.message,
            "progress": self.progress,
            "createdAt": iso(self.created_at),
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "estimatedCompletion": iso(self.estimated_completion),
            "error": self.error,
            "totalPages": self.total_pages,
            "processingTime": self.processing_time,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class CacheEntry:
    document_id: str
    page_urls: list[str]
    converted_at: datetime = field(default_factory=utcnow)
    source_fingerprint: str | None = None
    access_count: int = 0
    last_accessed_at: datetime | None = None

    @property
    def page_count(self) -> int:
        return len(self.page_urls)

    def to_dict(self) -> dict[str, object]:
        return {
            "documentId": self.document_id,
            "pageCount": self.page_count,
            "pageUrls": list(self.page_urls),
            "convertedAt": iso(self.converted_at),
            "sourceFingerprint": self.source_fingerprint,
        }


@dataclass
class Submission:
    """Outcome of a registry submission: a fresh job or a cache hit."""

    job: ConversionJob | None = None
    cached: CacheEntry | None = None
    queue_position: int | None = None
    estimated_wait_time: float | None = None

    @property
    def from_cache(self) -> bool:
        return self.cached is not None


@dataclass(frozen=True)
class DocumentRecord:
    document_id: str
    owner_id: str
    title: str
    content_type: str
    storage_path: str
    size_bytes: int | None = None
    checksum: str | None = None

    @property
    def is_pdf(self) -> bool:
        return "pdf" in (self.content_type or "").lower()

    @property
    def fingerprint(self) -> str | None:
        if self.checksum:
            return self.checksum
        if self.size_bytes is not None:
            return f"size:{self.size_bytes}"
        return None


@dataclass
class RasterizeResult:
    success: bool
    page_urls: list[str] = field(default_factory=list)
    processing_time: float = 0.0
    error: str | None = None

    @property
    def page_count(self) -> int:
        return len(self.page_urls)


@dataclass
class ConversionResult:
    """One batch member's outcome."""

    document_id: str
    success: bool
    job_id: str | None = None
    page_count: int | None = None
    processing_time: float = 0.0
    from_cache: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "documentId": self.document_id,
            "success": self.success,
            "jobId": self.job_id,
            "pageCount": self.page_count,
            "processingTime": self.processing_time,
            "fromCache": self.from_cache,
            "error": self.error,
        }


@dataclass
class BatchRequest:
    batch_id: str
    owner_id: str
    document_ids: list[str]
    priority: str = Priority.NORMAL
    max_concurrent: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed: bool = False
    cancelled: bool = False
    total_processing_time: float = 0.0
    successful: list[ConversionResult] = field(default_factory=list)
    failed: list[ConversionResult] = field(default_factory=list)
    # document_id -> job_id for members that have not resolved yet
    pending: dict[str, str] = field(default_factory=dict)

    @property
    def total_documents(self) -> int:
        return len(self.document_ids)

    def snapshot(self) -> "BatchRequest":
        return replace(
            self,
            document_ids=list(self.document_ids),
            successful=list(self.successful),
            failed=list(self.failed),
            pending=dict(self.pending),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "batchId": self.batch_id,
            "totalDocuments": self.total_documents,
            "successful": len(self.successful),
            "failed": len(self.failed),
            "completed": self.completed,
            "cancelled": self.cancelled,
            "totalProcessingTime": self.total_processing_time,
        }


@dataclass
class BatchProgress:
    batch_id: str
    total_documents: int
    completed: int
    failed: int
    processing: int
    queued: int
    progress: int
    estimated_time_remaining: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "batchId": self.batch_id,
            "totalDocuments": self.total_documents,
            "completed": self.completed,
            "failed": self.failed,
            "processing": self.processing,
            "queued": self.queued,
            "progress": self.progress,
            "estimatedTimeRemaining": self.estimated_time_remaining,
        }
