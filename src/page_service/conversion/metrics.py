import threading
import time
from collections import deque
from dataclasses import dataclass, field


@dataclass(frozen=True)
class JobSample:
    job_id: str
    document_id: str
    processing_time: float
    success: bool
    from_cache: bool
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "jobId": self.job_id,
            "documentId": self.document_id,
            "processingTime": self.processing_time,
            "success": self.success,
            "fromCache": self.from_cache,
            "recordedAt": self.recorded_at,
        }


class MetricsCollector:
    """Rolling outcome statistics for the status endpoints.

    Nothing in the scheduler reads these numbers to make decisions, except the
    wait-time estimates shown to callers.
    """

    def __init__(self, window: int = 500, horizon_sec: float = 24 * 60 * 60) -> None:
        self._samples: deque[JobSample] = deque(maxlen=window)
        self._horizon = horizon_sec
        self._lock = threading.Lock()

    def record(
        self,
        job_id: str,
        document_id: str,
        processing_time: float,
        success: bool,
        from_cache: bool = False,
    ) -> None:
        sample = JobSample(job_id, document_id, max(0.0, processing_time), success, from_cache)
        with self._lock:
            self._samples.append(sample)

    def _window(self) -> list[JobSample]:
        cutoff = time.time() - self._horizon
        with self._lock:
            return [s for s in self._samples if s.recorded_at >= cutoff]

    def average_processing_time(self) -> float:
        fresh = [s.processing_time for s in self._window() if s.success and not s.from_cache]
        return sum(fresh) / len(fresh) if fresh else 0.0

    def snapshot(self) -> dict[str, object]:
        samples = self._window()
        conversions = [s for s in samples if not s.from_cache]
        fresh_ok = [s.processing_time for s in conversions if s.success]
        total = len(conversions)
        succeeded = len(fresh_ok)
        return {
            "averageProcessingTime": sum(fresh_ok) / succeeded if succeeded else 0.0,
            "successRate": round(succeeded / total * 100, 2) if total else 100.0,
            "failureRate": round((total - succeeded) / total * 100, 2) if total else 0.0,
            "cacheHitRate": round((len(samples) - total) / len(samples) * 100, 2) if samples else 0.0,
            "samples": len(samples),
        }

    def recent(self, limit: int = 20) -> list[JobSample]:
        with self._lock:
            samples = list(self._samples)
        return samples[-limit:][::-1]
