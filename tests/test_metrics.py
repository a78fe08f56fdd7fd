import time

from page_service.conversion.metrics import MetricsCollector


def test_empty_snapshot_defaults():
    snapshot = MetricsCollector().snapshot()
    assert snapshot["averageProcessingTime"] == 0.0
    assert snapshot["successRate"] == 100.0
    assert snapshot["failureRate"] == 0.0
    assert snapshot["samples"] == 0


def test_rates_exclude_cache_hits_from_conversions():
    metrics = MetricsCollector()
    metrics.record("job-1", "doc-1", 4.0, success=True)
    metrics.record("job-2", "doc-2", 2.0, success=True)
    metrics.record("job-3", "doc-3", 1.0, success=False)
    metrics.record("", "doc-1", 0.0, success=True, from_cache=True)

    snapshot = metrics.snapshot()
    assert snapshot["averageProcessingTime"] == 3.0
    assert snapshot["successRate"] == 66.67
    assert snapshot["failureRate"] == 33.33
    assert snapshot["cacheHitRate"] == 25.0
    assert snapshot["samples"] == 4
    assert metrics.average_processing_time() == 3.0


def test_window_is_bounded():
    metrics = MetricsCollector(window=2)
    for n in range(5):
        metrics.record(f"job-{n}", "doc", float(n), success=True)
    assert [s.job_id for s in metrics.recent()] == ["job-4", "job-3"]


def test_samples_older_than_horizon_are_ignored(monkeypatch):
    metrics = MetricsCollector(horizon_sec=60)
    metrics.record("job-1", "doc-1", 10.0, success=False)
    assert metrics.snapshot()["successRate"] == 0.0

    later = time.time() + 120
    monkeypatch.setattr(time, "time", lambda: later)

    snapshot = metrics.snapshot()
    assert snapshot["samples"] == 0
    assert snapshot["successRate"] == 100.0
    # The raw log still holds it
    assert len(metrics.recent()) == 1
