"""
Shared fixtures: in-memory document store, controllable rasterizer and a
running ConversionService wired to both.
"""

import asyncio
import itertools
import threading
import time

import pytest
import pytest_asyncio

from page_service.config import ServiceConfig
from page_service.conversion import ConversionService, DocumentRecord, RasterizeOptions, RasterizeResult

OWNER = "user-1"


class FakeDocumentStore:
    def __init__(self) -> None:
        self.documents: dict[str, DocumentRecord] = {}
        self.pages: dict[str, list[str]] = {}
        self.fail_saves = False
        self.lookup_delay = 0.0
        self.save_gate: threading.Event | None = None
        self.saves_started: list[str] = []

    def add(
        self,
        document_id: str,
        owner_id: str = OWNER,
        content_type: str = "application/pdf",
        checksum: str | None = None,
    ) -> DocumentRecord:
        record = DocumentRecord(
            document_id=document_id,
            owner_id=owner_id,
            title=f"{document_id}.pdf",
            content_type=content_type,
            storage_path=f"uploads/{owner_id}/{document_id}.pdf",
            checksum=checksum,
        )
        self.documents[document_id] = record
        return record

    def get_document(self, document_id: str) -> DocumentRecord | None:
        if self.lookup_delay:
            time.sleep(self.lookup_delay)
        return self.documents.get(document_id)

    def count_pages(self, document_id: str) -> int:
        return len(self.pages.get(document_id, []))

    def block_saves(self) -> None:
        self.save_gate = threading.Event()

    def release_saves(self) -> None:
        if self.save_gate is not None:
            self.save_gate.set()

    def save_pages(self, document_id: str, page_urls: list[str]) -> None:
        self.saves_started.append(document_id)
        if self.save_gate is not None:
            self.save_gate.wait(timeout=5)
        if self.fail_saves:
            raise OSError("disk full")
        self.pages[document_id] = list(page_urls)


class FakeRasterizer:
    """Rasterizer double run in the scheduler's worker threads.

    ``block(doc)`` makes the conversion of ``doc`` wait until ``release(doc)``;
    ``fail(doc, msg)`` returns an unsuccessful result; ``crash(doc)`` raises.
    """

    def __init__(self, pages: int = 3) -> None:
        self.default_pages = pages
        self.page_counts: dict[str, int] = {}
        self.failures: dict[str, str] = {}
        self.crashes: set[str] = set()
        self.delays: dict[str, float] = {}
        self.gates: dict[str, threading.Event] = {}
        self.started: list[str] = []
        self.finished: list[str] = []
        self._lock = threading.Lock()
        self._running = 0
        self.max_running = 0

    def block(self, document_id: str) -> None:
        self.gates[document_id] = threading.Event()

    def release(self, document_id: str) -> None:
        self.gates[document_id].set()

    def release_all(self) -> None:
        for gate in self.gates.values():
            gate.set()

    def fail(self, document_id: str, message: str = "Corrupt PDF") -> None:
        self.failures[document_id] = message

    def crash(self, document_id: str) -> None:
        self.crashes.add(document_id)

    def running(self) -> int:
        with self._lock:
            return self._running

    def convert(
        self,
        document_id: str,
        owner_id: str,
        source_handle: str,
        options: RasterizeOptions,
    ) -> RasterizeResult:
        with self._lock:
            self.started.append(document_id)
            self._running += 1
            self.max_running = max(self.max_running, self._running)
        try:
            gate = self.gates.get(document_id)
            if gate is not None:
                gate.wait(timeout=5)
            if document_id in self.delays:
                time.sleep(self.delays[document_id])
            if document_id in self.crashes:
                raise RuntimeError("renderer crashed")
            if document_id in self.failures:
                return RasterizeResult(success=False, error=self.failures[document_id])
            total = self.page_counts.get(document_id, self.default_pages)
            urls = []
            for n in range(1, total + 1):
                urls.append(f"/files/pages/{owner_id}/{document_id}/page-{n}.jpg")
                if options.on_progress is not None:
                    options.on_progress(n, total)
            return RasterizeResult(success=True, page_urls=urls, processing_time=0.01)
        finally:
            with self._lock:
                self._running -= 1
                self.finished.append(document_id)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def counter_ids(prefix: str = "job"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def make_service(documents, rasterizer, tmp_path, **overrides) -> ConversionService:
    settings = {"data_dir": tmp_path, "workers": 3, "ping_interval_sec": 3600.0}
    settings.update(overrides)
    return ConversionService(
        documents,
        rasterizer,
        config=ServiceConfig(**settings),
        job_id_factory=counter_ids(),
    )


@pytest.fixture
def documents() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def rasterizer() -> FakeRasterizer:
    return FakeRasterizer()


@pytest_asyncio.fixture
async def service(documents, rasterizer, tmp_path):
    svc = make_service(documents, rasterizer, tmp_path)
    await svc.start()
    yield svc
    rasterizer.release_all()
    documents.release_saves()
    await svc.stop()


@pytest_asyncio.fixture
async def single_worker_service(documents, rasterizer, tmp_path):
    svc = make_service(documents, rasterizer, tmp_path, workers=1)
    await svc.start()
    yield svc
    rasterizer.release_all()
    documents.release_saves()
    await svc.stop()
