import asyncio
import json
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from page_service import __version__
from page_service.config import ServerConfig, ServiceConfig
from page_service.conversion import ConversionError, ConversionService, InternalError, format_duration
from page_service.conversion.adapters import (
    HttpObjectStore,
    LocalDocumentStore,
    LocalObjectStore,
    PyMuPdfRasterizer,
)
from page_service.log_utils import configure_logging, get_logger

logger = get_logger(__name__)


class ConvertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="ownerId", min_length=1)
    priority: str = "normal"
    force: bool = False
    reason: str | None = None
    metadata: dict[str, Any] | None = None


class BatchRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: list[str] = Field(alias="documentIds")
    owner_id: str = Field(alias="ownerId", min_length=1)
    priority: str = "normal"
    max_concurrent: int | None = Field(default=None, alias="maxConcurrent")
    metadata: dict[str, Any] | None = None


class InvalidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: list[str] = Field(alias="documentIds", min_length=1)


class WarmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: list[str] = Field(alias="documentIds", min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)


def build_service(config: ServiceConfig) -> ConversionService:
    """Default wiring from environment settings: local or HTTP object store,
    JSON document records under DATA_DIR, PyMuPDF rasterizer."""
    if config.object_store_url:
        store = HttpObjectStore(config.object_store_url)
    else:
        store = LocalObjectStore(str(config.data_dir), config.public_base_url)
    documents = LocalDocumentStore(str(config.data_dir))
    return ConversionService(documents, PyMuPdfRasterizer(store), config=config)


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def create_app(service: ConversionService | None = None) -> FastAPI:
    app = FastAPI(
        title="Page Conversion Service",
        version=__version__,
        description=(
            "Converts uploaded PDF documents into cached page-image sets through "
            "a priority job scheduler with batch submission and live progress."
        ),
    )
    app.state.service = service

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.service is None:
            config = ServiceConfig.from_env()
            configure_logging(config.log_level)
            (config.data_dir / "documents").mkdir(parents=True, exist_ok=True)
            app.state.service = build_service(config)
        await app.state.service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.service is not None:
            await app.state.service.stop()

    @app.exception_handler(ConversionError)
    async def _conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
        if isinstance(exc, InternalError):
            logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]) or "unknown", "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request data", "kind": "validation", "details": details},
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=InternalError().to_dict())

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/documents/{document_id}/convert")
    async def convert_document(
        document_id: str,
        body: ConvertRequest,
        svc: ConversionService = Depends(get_service),
    ) -> JSONResponse:
        """Queue a conversion for one document.

        Returns the cached page set when the document is already converted and
        ``force`` is false; 409 when a conversion is already queued or running.
        """
        metadata = dict(body.metadata or {})
        metadata["manualTrigger"] = True
        if body.reason is not None:
            metadata["reason"] = body.reason
        submission = await svc.submit(document_id, body.owner_id, body.priority, body.force, metadata)

        if submission.cached is not None:
            cached = submission.cached.to_dict()
            cached["cached"] = True
            cached["message"] = "Document already converted"
            return JSONResponse(content=cached)

        job = submission.job
        wait = submission.estimated_wait_time or 0.0
        return JSONResponse(
            content={
                "jobId": job.job_id,
                "documentId": document_id,
                "cached": False,
                "priority": job.priority,
                "force": body.force,
                "status": job.status,
                "progress": job.progress,
                "queue": {
                    "position": submission.queue_position,
                    "estimatedWaitTime": wait,
                    "estimatedWaitTimeFormatted": format_duration(wait),
                },
                "message": (
                    f"Document {'reconversion' if body.force else 'conversion'} "
                    f"queued with {job.priority} priority"
                ),
            }
        )

    @app.get("/documents/{document_id}/convert")
    async def conversion_status(
        document_id: str,
        owner_id: str = Query(..., alias="ownerId", min_length=1),
        svc: ConversionService = Depends(get_service),
    ) -> JSONResponse:
        return JSONResponse(content=await svc.status(document_id, owner_id))

    @app.delete("/documents/{document_id}/convert")
    async def cancel_conversion(document_id: str, svc: ConversionService = Depends(get_service)) -> dict[str, bool]:
        return {"cancelled": svc.cancel_job(document_id)}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, svc: ConversionService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(content=svc.get_job(job_id).to_dict())

    @app.post("/conversion/batch")
    async def submit_batch(body: BatchRequestBody, svc: ConversionService = Depends(get_service)) -> JSONResponse:
        batch = await svc.submit_batch(
            body.document_ids,
            body.owner_id,
            body.priority,
            body.max_concurrent,
            body.metadata,
        )
        return JSONResponse(content=batch.to_dict())

    @app.get("/conversion/batch/{batch_id}")
    async def batch_status(batch_id: str, svc: ConversionService = Depends(get_service)) -> JSONResponse:
        progress, result = svc.batch_status(batch_id)
        return JSONResponse(
            content={
                "batchId": batch_id,
                "progress": progress.to_dict(),
                "result": {
                    "successful": len(result.successful),
                    "failed": len(result.failed),
                    "completed": result.completed,
                    "cancelled": result.cancelled,
                    "totalProcessingTime": result.total_processing_time,
                    "successfulDocuments": [r.to_dict() for r in result.successful],
                    "failedDocuments": [
                        {"documentId": r.document_id, "error": r.error} for r in result.failed
                    ],
                },
            }
        )

    @app.delete("/conversion/batch/{batch_id}")
    async def cancel_batch(batch_id: str, svc: ConversionService = Depends(get_service)) -> dict[str, bool]:
        return {"cancelled": svc.cancel_batch(batch_id)}

    @app.get("/conversion/cache")
    async def cache_stats(svc: ConversionService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(content=svc.cache_stats())

    @app.delete("/conversion/cache")
    async def invalidate_cache(body: InvalidateRequest, svc: ConversionService = Depends(get_service)) -> dict[str, int]:
        return {"invalidated": svc.invalidate_cache(body.document_ids)}

    @app.post("/conversion/cache/warm")
    async def warm_cache(body: WarmRequest, svc: ConversionService = Depends(get_service)) -> dict[str, int]:
        """Queue low-priority conversions for uncached documents."""
        return {"warmed": await svc.warm_cache(body.document_ids, body.owner_id)}

    @app.get("/conversion/metrics")
    async def conversion_metrics(svc: ConversionService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(content=svc.queue_overview())

    @app.websocket("/documents/{document_id}/progress")
    async def progress_stream(websocket: WebSocket, document_id: str) -> None:
        """Push conversion events for one document.

        Clients answer server ``ping`` messages with ``{"type": "pong"}``; a
        client ``{"type": "ping"}`` is answered with a ``pong``.
        """
        svc: ConversionService = websocket.app.state.service
        broadcaster = svc.broadcaster
        await websocket.accept()
        sub = broadcaster.subscribe(document_id)

        async def pump() -> None:
            async for event in sub.events():
                await websocket.send_json(event)
            # Dropped by the liveness sweep or shutdown
            await websocket.close(code=1001)

        sender = asyncio.create_task(pump())
        try:
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                except json.JSONDecodeError:
                    logger.debug("Ignoring malformed progress frame for document %s", document_id)
                    continue
                kind = message.get("type") if isinstance(message, dict) else None
                if kind == "pong":
                    broadcaster.ack(sub)
                elif kind == "ping":
                    broadcaster.pong(sub)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(sub)
            sender.cancel()
            # Collects a send failure on a socket the client already closed
            await asyncio.gather(sender, return_exceptions=True)

    return app


app = create_app()


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    server = ServerConfig.from_env()
    uvicorn.run("page_service.webapi:app", host=server.host, port=server.port, reload=server.reload)


if __name__ == "__main__":
    run()
