from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .configuration import make_runtime_config
from .errors import TechPackRenderError
from .job_manager import JobManager
from .models import BulkRequest, BulkResult, DocumentInfo, JobDetail, JobSummary, PoolStatus
from .pipeline import RenderService
from .render_pool import CancellationToken
from .s3_service import S3Storage
from .snapshot_store import SnapshotDatabase

config = make_runtime_config()

logging.basicConfig(
    level=config.logging.level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    job_manager.shutdown()
    render_service.shutdown()


app = FastAPI(title="Tech Pack Render API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.server.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "Retry-After", "X-Cache", "X-Page-Count"],
)

snapshot_store = SnapshotDatabase(Path(config.storage.snapshot_db_path))
storage = S3Storage(config.storage.s3_bucket)
render_service = RenderService.from_config(config, snapshot_store.get_document_snapshot, storage=storage)
job_manager = JobManager(
    render_service,
    output_root=Path(config.bulk.output_root),
    storage=storage,
    upload_to_s3=config.bulk.upload_to_s3,
    presigned_url_ttl_sec=config.bulk.presigned_url_ttl_sec,
)


def get_render_service() -> RenderService:
    return render_service


def get_job_manager() -> JobManager:
    return job_manager


def get_snapshot_store() -> SnapshotDatabase:
    return snapshot_store


def get_identity(request: Request, x_api_key: Optional[str] = Header(default=None)) -> str:
    if x_api_key:
        return f"key:{x_api_key}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


@app.exception_handler(TechPackRenderError)
async def render_error_handler(request: Request, exc: TechPackRenderError) -> JSONResponse:
    content: Dict[str, Any] = {"code": exc.code, "detail": exc.message}
    headers: Dict[str, str] = {}
    if exc.retry_after is not None:
        content["retry_after"] = exc.retry_after
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    errors = getattr(exc, "errors", None)
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def _watch_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.is_cancelled():
        if await request.is_disconnected():
            logger.info(f"Client disconnected from {request.url.path}, cancelling render")
            token.cancel()
            return
        await asyncio.sleep(0.5)


async def _run_cancellable(request: Request, func, *args: Any) -> Any:
    token = CancellationToken()
    watcher = asyncio.create_task(_watch_disconnect(request, token))
    try:
        return await run_in_threadpool(func, *args, token)
    finally:
        watcher.cancel()


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.put("/documents/{document_id}")
def put_document(
    document_id: str,
    payload: Dict[str, Any] = Body(...),
    store: SnapshotDatabase = Depends(get_snapshot_store),
    service: RenderService = Depends(get_render_service),
) -> Dict[str, Any]:
    snapshot = store.save_snapshot(document_id, payload)
    invalidated = service.on_document_mutated(document_id)
    return {
        "document_id": document_id,
        "content_version": snapshot.content_version,
        "invalidated": invalidated,
    }


@app.post("/documents/{document_id}/events/mutated")
def document_mutated(document_id: str, service: RenderService = Depends(get_render_service)) -> Dict[str, Any]:
    return {"document_id": document_id, "invalidated": service.on_document_mutated(document_id)}


@app.get("/documents/{document_id}/pdf")
async def generate_pdf(
    document_id: str,
    request: Request,
    options: Optional[str] = Query(default=None),
    service: RenderService = Depends(get_render_service),
    identity: str = Depends(get_identity),
) -> Response:
    document = await _run_cancellable(request, service.generate, document_id, options, identity)
    return Response(
        content=document.payload,
        media_type=document.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{document.filename}"',
            "X-Cache": "HIT" if document.cached else "MISS",
            "X-Page-Count": str(document.pages),
        },
    )


@app.get("/documents/{document_id}/pdf/preview")
async def preview_page(
    document_id: str,
    request: Request,
    page: int = Query(default=1),
    options: Optional[str] = Query(default=None),
    service: RenderService = Depends(get_render_service),
    identity: str = Depends(get_identity),
) -> Response:
    image = await _run_cancellable(request, service.preview, document_id, page, options, identity)
    return Response(
        content=image.payload,
        media_type=image.media_type,
        headers={"X-Cache": "HIT" if image.cached else "MISS"},
    )


@app.get("/documents/{document_id}/pdf/info", response_model=DocumentInfo)
def document_info(document_id: str, service: RenderService = Depends(get_render_service)) -> DocumentInfo:
    return service.describe(document_id)


@app.post("/bulk", response_model=JobSummary, status_code=202)
def create_bulk_job(
    payload: BulkRequest,
    manager: JobManager = Depends(get_job_manager),
    identity: str = Depends(get_identity),
) -> JobSummary:
    return manager.create_job(payload.document_ids, payload.options, identity=identity, label=payload.label)


@app.post("/bulk/run", response_model=BulkResult)
def run_bulk(
    payload: BulkRequest,
    service: RenderService = Depends(get_render_service),
    identity: str = Depends(get_identity),
) -> BulkResult:
    return service.bulk_generate(payload.document_ids, payload.options, identity=identity)


@app.get("/bulk", response_model=list[JobSummary])
def list_bulk_jobs(manager: JobManager = Depends(get_job_manager)) -> list[JobSummary]:
    return manager.list_jobs()


@app.get("/bulk/{job_id}", response_model=JobDetail)
def get_bulk_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/bulk/{job_id}/download")
def download_bulk_archive(job_id: str, manager: JobManager = Depends(get_job_manager)) -> FileResponse:
    if manager.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    archive_path = manager.get_archive_path(job_id)
    if archive_path is None:
        raise HTTPException(status_code=409, detail="Archive not available yet")
    return FileResponse(archive_path, media_type="application/zip", filename=archive_path.name)


@app.get("/admin/pool", response_model=PoolStatus)
def pool_status(service: RenderService = Depends(get_render_service)) -> PoolStatus:
    return service.pool.status()


@app.post("/admin/pool/reset")
def reset_pool(service: RenderService = Depends(get_render_service)) -> Dict[str, int]:
    return {"reset": service.pool.reset_quarantined()}


@app.delete("/admin/cache")
def flush_cache(service: RenderService = Depends(get_render_service)) -> Dict[str, bool]:
    return {"flushed": service.cache.flush_all()}
