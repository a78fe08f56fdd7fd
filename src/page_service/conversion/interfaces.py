from dataclasses import dataclass
from typing import Callable, Protocol

from .models import DocumentRecord, RasterizeResult


@dataclass(frozen=True)
class RasterizeOptions:
    scale: float = 1.5
    quality: int = 60
    image_format: str = "jpeg"
    # Called from the rasterizer's thread with (pages_done, pages_total).
    on_progress: Callable[[int, int], None] | None = None


class Rasterizer(Protocol):
    def convert(
        self,
        document_id: str,
        owner_id: str,
        source_handle: str,
        options: RasterizeOptions,
    ) -> RasterizeResult:
        """Render every page of the source PDF and store the images.

        This is a blocking call; the scheduler runs it in a worker thread
        under a timeout.
        """


class ObjectStore(Protocol):
    def download(self, path: str) -> bytes:
        ...

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        ...

    def url_for(self, path: str) -> str:
        ...


class DocumentStore(Protocol):
    def get_document(self, document_id: str) -> DocumentRecord | None:
        ...

    def count_pages(self, document_id: str) -> int:
        ...

    def save_pages(self, document_id: str, page_urls: list[str]) -> None:
        ...
