import io
import json
import threading
import time
from dataclasses import asdict
from pathlib import Path

from ..log_utils import get_logger
from .interfaces import DocumentStore, ObjectStore, RasterizeOptions, Rasterizer
from .models import DocumentRecord, RasterizeResult

logger = get_logger(__name__)


class LocalObjectStore(ObjectStore):
    """Objects as files under ``data_dir/objects``; URLs under ``public_base_url``."""

    def __init__(self, data_dir: str, public_base_url: str = "/files") -> None:
        self._base = (Path(data_dir) / "objects").resolve()
        self._public = public_base_url.rstrip("/")

    def _path(self, path: str) -> Path:
        p = (self._base / path.lstrip("/")).resolve()
        if self._base not in p.parents:
            raise ValueError(f"path escapes object store: {path}")
        return p

    def download(self, path: str) -> bytes:
        p = self._path(path)
        if not p.exists():
            raise FileNotFoundError(f"object not found: {path}")
        return p.read_bytes()

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        p = self._path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return path

    def url_for(self, path: str) -> str:
        return f"{self._public}/{path.lstrip('/')}"


class HttpObjectStore(ObjectStore):
    """Object storage behind a plain HTTP GET/PUT endpoint."""

    def __init__(self, base_url: str, *, timeout: float = 60.0, session=None) -> None:
        import requests

        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def download(self, path: str) -> bytes:
        resp = self._session.get(self.url_for(path), timeout=self._timeout)
        resp.raise_for_status()
        return resp.content

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        resp = self._session.put(
            self.url_for(path),
            data=data,
            headers={"Content-Type": content_type},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return path

    def url_for(self, path: str) -> str:
        return f"{self._base}/{path.lstrip('/')}"


class LocalDocumentStore(DocumentStore):
    """Document and page records as JSON files under ``data_dir/documents``."""

    def __init__(self, data_dir: str) -> None:
        self._base = (Path(data_dir) / "documents").resolve()
        self._lock = threading.Lock()

    def _doc_path(self, document_id: str) -> Path:
        return self._base / document_id / "document.json"

    def _pages_path(self, document_id: str) -> Path:
        return self._base / document_id / "pages.json"

    def save_document(self, record: DocumentRecord) -> None:
        p = self._doc_path(record.document_id)
        p.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, p.open("w", encoding="utf-8") as f:
            json.dump(asdict(record), f, ensure_ascii=False, indent=2)

    def get_document(self, document_id: str) -> DocumentRecord | None:
        p = self._doc_path(document_id)
        if not p.exists():
            return None
        with self._lock, p.open("r", encoding="utf-8") as f:
            return DocumentRecord(**json.load(f))

    def count_pages(self, document_id: str) -> int:
        p = self._pages_path(document_id)
        if not p.exists():
            return 0
        with self._lock, p.open("r", encoding="utf-8") as f:
            return len(json.load(f)["pages"])

    def save_pages(self, document_id: str, page_urls: list[str]) -> None:
        p = self._pages_path(document_id)
        p.parent.mkdir(parents=True, exist_ok=True)
        pages = [{"pageNumber": i, "imageUrl": url} for i, url in enumerate(page_urls, start=1)]
        with self._lock, p.open("w", encoding="utf-8") as f:
            json.dump({"documentId": document_id, "pages": pages}, f, ensure_ascii=False, indent=2)


class PyMuPdfRasterizer(Rasterizer):
    """Render PDF pages with PyMuPDF and store compressed JPEGs."""

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    def convert(
        self,
        document_id: str,
        owner_id: str,
        source_handle: str,
        options: RasterizeOptions,
    ) -> RasterizeResult:
        import fitz
        from PIL import Image

        t0 = time.monotonic()
        try:
            pdf_bytes = self._store.download(source_handle)
        except Exception as e:
            return RasterizeResult(success=False, error=f"Storage error: {e}", processing_time=time.monotonic() - t0)

        page_urls: list[str] = []
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        try:
            total = len(doc)
            for page_num in range(total):
                pix = doc[page_num].get_pixmap(matrix=fitz.Matrix(options.scale, options.scale))
                img = Image.open(io.BytesIO(pix.tobytes("png"))).convert("RGB")
                buffer = io.BytesIO()
                img.save(buffer, format="JPEG", quality=options.quality, optimize=True)
                path = f"pages/{owner_id}/{document_id}/page-{page_num + 1}.jpg"
                stored = self._store.upload(path, buffer.getvalue(), "image/jpeg")
                page_urls.append(self._store.url_for(stored))
                if options.on_progress is not None:
                    options.on_progress(page_num + 1, total)
        finally:
            doc.close()

        logger.info("Rasterized %d pages for document %s", len(page_urls), document_id)
        return RasterizeResult(success=True, page_urls=page_urls, processing_time=time.monotonic() - t0)
