import asyncio

import pytest

from conftest import make_service, wait_until
from page_service.conversion import JobStatus
from page_service.conversion.broadcaster import EventType
from page_service.conversion.models import Stage


def drain(sub):
    events = []
    while not sub.queue.empty():
        events.append(sub.queue.get_nowait())
    return events


def status(service, document_id):
    job = service.registry.get(document_id)
    return job.status if job else None


@pytest.mark.asyncio
async def test_successful_conversion_updates_everything(service, documents):
    documents.add("doc-1", checksum="sha-1")
    sub = service.broadcaster.subscribe("doc-1")

    submission = await service.submit("doc-1", "user-1")
    await wait_until(lambda: status(service, "doc-1") == JobStatus.COMPLETED)

    job = service.get_job(submission.job.job_id)
    assert job.progress == 100
    assert job.total_pages == 3
    assert job.processing_time is not None
    assert documents.pages["doc-1"][0].endswith("page-1.jpg")
    assert service.cache.peek("doc-1").source_fingerprint == "sha-1"

    events = drain(sub)
    progress = [e["progress"]["progress"] for e in events if e["type"] == EventType.PROGRESS]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    [complete] = [e for e in events if e["type"] == EventType.COMPLETE]
    assert complete["result"]["success"] is True
    assert complete["result"]["totalPages"] == 3


@pytest.mark.asyncio
async def test_priority_order_with_single_worker(single_worker_service, documents, rasterizer):
    service = single_worker_service
    for document_id in ("blocker", "doc-a", "doc-b", "doc-c"):
        documents.add(document_id)
    rasterizer.block("blocker")

    await service.submit("blocker", "user-1")
    await wait_until(lambda: "blocker" in rasterizer.started)

    await service.submit("doc-a", "user-1", "low")
    await service.submit("doc-b", "user-1", "high")
    await service.submit("doc-c", "user-1", "normal")
    stats = service.scheduler.queue_stats()
    assert stats["byPriority"] == {"high": 1, "normal": 1, "low": 1}
    assert stats["processing"] == 1

    rasterizer.release("blocker")
    await wait_until(lambda: len(rasterizer.finished) == 4)
    assert rasterizer.started == ["blocker", "doc-b", "doc-c", "doc-a"]


@pytest.mark.asyncio
async def test_fifo_within_priority(single_worker_service, documents, rasterizer):
    service = single_worker_service
    for document_id in ("blocker", "doc-1", "doc-2", "doc-3"):
        documents.add(document_id)
    rasterizer.block("blocker")
    await service.submit("blocker", "user-1")
    await wait_until(lambda: "blocker" in rasterizer.started)

    positions = []
    for document_id in ("doc-1", "doc-2", "doc-3"):
        positions.append((await service.submit(document_id, "user-1")).queue_position)
    assert positions == [1, 2, 3]

    rasterizer.release("blocker")
    await wait_until(lambda: len(rasterizer.finished) == 4)
    assert rasterizer.started[1:] == ["doc-1", "doc-2", "doc-3"]


@pytest.mark.asyncio
async def test_rasterizer_failure_fails_job(service, documents, rasterizer):
    documents.add("doc-1")
    rasterizer.fail("doc-1", "Corrupt PDF")
    sub = service.broadcaster.subscribe("doc-1")

    await service.submit("doc-1", "user-1")
    await wait_until(lambda: status(service, "doc-1") == JobStatus.FAILED)

    job = service.registry.get("doc-1")
    assert job.error == "Corrupt PDF"
    assert not service.cache.has_cached("doc-1")
    assert service.metrics.snapshot()["successRate"] == 0.0

    events = drain(sub)
    [error] = [e for e in events if e["type"] == EventType.ERROR]
    assert error["error"]["code"] == "RASTERIZER"
    assert error["error"]["retryable"] is True
    [complete] = [e for e in events if e["type"] == EventType.COMPLETE]
    assert complete["result"] == {"success": False, "cached": False, "error": "Corrupt PDF"}


@pytest.mark.asyncio
async def test_rasterizer_exception_fails_job(service, documents, rasterizer):
    documents.add("doc-1")
    rasterizer.crash("doc-1")
    await service.submit("doc-1", "user-1")
    await wait_until(lambda: status(service, "doc-1") == JobStatus.FAILED)
    assert service.registry.get("doc-1").error == "Rasterizer error: renderer crashed"

    # The worker survives and serves the next job
    documents.add("doc-2")
    await service.submit("doc-2", "user-1")
    await wait_until(lambda: status(service, "doc-2") == JobStatus.COMPLETED)


@pytest.mark.asyncio
async def test_storage_failure_fails_job(service, documents):
    documents.add("doc-1")
    documents.fail_saves = True
    await service.submit("doc-1", "user-1")
    await wait_until(lambda: status(service, "doc-1") == JobStatus.FAILED)
    assert service.registry.get("doc-1").error.startswith("Storage error")
    assert not service.cache.has_cached("doc-1")


@pytest.mark.asyncio
async def test_timeout_fails_job(documents, rasterizer, tmp_path):
    service = make_service(documents, rasterizer, tmp_path, job_timeout_sec=0.05)
    await service.start()
    try:
        documents.add("doc-1")
        rasterizer.delays["doc-1"] = 0.5
        await service.submit("doc-1", "user-1")
        await wait_until(lambda: status(service, "doc-1") == JobStatus.FAILED)
        assert service.registry.get("doc-1").error == "Conversion timed out after 0.05s"
        await wait_until(lambda: "doc-1" in rasterizer.finished)
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_cancel_queued_job_never_runs(single_worker_service, documents, rasterizer):
    service = single_worker_service
    documents.add("blocker")
    documents.add("doc-1")
    rasterizer.block("blocker")
    await service.submit("blocker", "user-1")
    await wait_until(lambda: "blocker" in rasterizer.started)
    await service.submit("doc-1", "user-1")

    assert service.cancel_job("doc-1") is True
    assert status(service, "doc-1") == JobStatus.CANCELLED
    assert service.cancel_job("doc-1") is False

    rasterizer.release("blocker")
    await wait_until(lambda: status(service, "blocker") == JobStatus.COMPLETED)
    await asyncio.sleep(0.05)
    assert "doc-1" not in rasterizer.started


@pytest.mark.asyncio
async def test_cancel_processing_job_discards_result(service, documents, rasterizer):
    documents.add("doc-1")
    rasterizer.block("doc-1")
    await service.submit("doc-1", "user-1")
    await wait_until(lambda: "doc-1" in rasterizer.started)

    assert service.cancel_job("doc-1") is True
    rasterizer.release("doc-1")
    await wait_until(lambda: "doc-1" in rasterizer.finished)
    await wait_until(lambda: service.scheduler.queue_stats()["processing"] == 0)

    assert status(service, "doc-1") == JobStatus.CANCELLED
    assert not service.cache.has_cached("doc-1")
    assert "doc-1" not in documents.pages
    # Cancelled jobs are not conversion outcomes
    assert service.metrics.snapshot()["samples"] == 0


@pytest.mark.asyncio
async def test_cancel_refused_while_pages_are_saved(service, documents):
    documents.add("doc-1")
    documents.block_saves()
    await service.submit("doc-1", "user-1")
    await wait_until(lambda: "doc-1" in documents.saves_started)
    assert service.registry.get("doc-1").stage == Stage.UPLOADING

    assert service.cancel_job("doc-1") is False

    documents.release_saves()
    await wait_until(lambda: status(service, "doc-1") == JobStatus.COMPLETED)
    assert service.cache.has_cached("doc-1")
    assert len(documents.pages["doc-1"]) == 3


@pytest.mark.asyncio
async def test_cancel_before_enqueue_skips_job(service, documents, rasterizer):
    documents.add("doc-1")
    submission = service.registry.submit("doc-1", "user-1")

    assert service.scheduler.cancel(submission.job.job_id) is True
    assert status(service, "doc-1") == JobStatus.CANCELLED

    await service.scheduler.enqueue(submission.job)
    assert service.scheduler.queue_position(submission.job.job_id) is None
    await asyncio.sleep(0.05)
    assert "doc-1" not in rasterizer.started


@pytest.mark.asyncio
async def test_stop_finishes_when_a_job_ignores_cancellation(documents, rasterizer, tmp_path, monkeypatch):
    service = make_service(documents, rasterizer, tmp_path, workers=1)
    entered = asyncio.Event()

    async def stubborn(name, job):
        entered.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            pass

    monkeypatch.setattr(service.scheduler, "_process", stubborn)
    await service.start()
    documents.add("doc-1")
    await service.submit("doc-1", "user-1")
    await asyncio.wait_for(entered.wait(), 2)

    await asyncio.wait_for(service.stop(), 2)
