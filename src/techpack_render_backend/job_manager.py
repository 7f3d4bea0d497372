"""
Background bulk generation jobs.

This module manages the lifecycle of bulk jobs started through the API:
- Job registration after admission and request validation
- Asynchronous execution of bulk_generate on a worker thread
- Status tracking and a timestamped event log per job
- Writing generated PDFs and a results manifest into the job directory,
  packing it into a zip archive and optionally publishing it to S3

Job state lives in memory and is guarded by a lock, since it is read from
HTTP request threads while the worker updates it.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .models import BulkResult, GeneratedDocument, JobDetail, JobEvent, JobStatus, JobSummary, RenderOptions
from .pipeline import RenderService
from .s3_service import S3Storage, zip_directory
from .utils import SANITIZE_PATTERN, ensure_directory, sanitize_label

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """
    Internal state of one bulk job.

    Attributes:
        id: Unique job identifier (hex UUID)
        label: Filesystem-safe label with unique suffix, names the output directory
        status: Current execution status
        document_ids: Requested documents, in request order
        options: Render options as submitted
        output_dir: Directory receiving the generated PDFs
        archive_path: Zip of output_dir once the job completed
        s3_key: Object key of the uploaded archive
        download_url: Presigned URL of the uploaded archive
        result: Per-document results and summary
        error: Error message if the job failed as a whole
        events: Chronological list of lifecycle events
    """

    id: str
    label: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    document_ids: List[str]
    options: Dict[str, Any]
    output_dir: Path
    archive_path: Optional[Path] = None
    s3_key: Optional[str] = None
    download_url: Optional[str] = None
    result: Optional[BulkResult] = None
    error: Optional[str] = None
    events: list[JobEvent] = field(default_factory=list)

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            document_count=len(self.document_ids),
            archive_available=bool(self.archive_path and self.archive_path.exists()),
        )

    def to_detail(self) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            document_ids=list(self.document_ids),
            options=dict(self.options),
            events=list(self.events),
            result=self.result,
            download_url=self.download_url,
            error=self.error,
        )


class JobManager:
    """
    Coordinates bulk jobs on top of a RenderService.

    Args:
        service: Rendering pipeline the jobs run through
        output_root: Base directory for job outputs
        max_workers: Number of bulk jobs running at once
        storage: S3 storage for archive upload
        upload_to_s3: Publish archives to S3 when storage is configured
        presigned_url_ttl_sec: Lifetime of the download URL handed out

    Note:
        Every job already fans out over the render pool, so more than one or
        two concurrent jobs only adds queueing in front of the pool.
    """

    def __init__(
        self,
        service: RenderService,
        output_root: Path | None = None,
        max_workers: int = 1,
        storage: Optional[S3Storage] = None,
        upload_to_s3: bool = False,
        presigned_url_ttl_sec: int = 3600,
    ) -> None:
        self.service = service
        self.output_root = ensure_directory(output_root or Path("output"))
        self.storage = storage
        self.upload_to_s3 = upload_to_s3
        self.presigned_url_ttl_sec = presigned_url_ttl_sec
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bulk-job")

    def list_jobs(self) -> list[JobSummary]:
        with self._lock:
            records = sorted(self._jobs.values(), key=lambda r: r.created_at, reverse=True)
            return [record.to_summary() for record in records]

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.to_detail() if record else None

    def get_archive_path(self, job_id: str) -> Optional[Path]:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.archive_path is None or not record.archive_path.exists():
                return None
            return record.archive_path

    def _register_job(self, record: JobRecord) -> None:
        with self._lock:
            self._jobs[record.id] = record

    def _update_job(self, job_id: str, **kwargs: Any) -> None:
        """Update job attributes and refresh updated_at."""
        with self._lock:
            record = self._jobs[job_id]
            for key, value in kwargs.items():
                setattr(record, key, value)
            record.updated_at = _now()

    def _append_event(self, job_id: str, message: str) -> None:
        event = JobEvent(timestamp=_now(), message=message)
        with self._lock:
            record = self._jobs[job_id]
            record.events.append(event)
            record.updated_at = event.timestamp

    def create_job(
        self,
        document_ids: List[str],
        options: Optional[Dict[str, Any]] = None,
        identity: Optional[str] = None,
        label: str = "",
    ) -> JobSummary:
        """
        Validate, admit and register a bulk job, then start it in the background.

        Raises:
            AdmissionRejectedError: If the caller exhausted the bulk budget
            InvalidOptionsError: If the request is too large or the options are invalid
        """
        options = dict(options or {})
        RenderOptions.parse(options)
        self.service.check_bulk_request(document_ids, identity)

        job_id = uuid4().hex
        effective_label = f"{sanitize_label(label, fallback='bulk')}-{job_id[:8]}"
        created_at = _now()
        record = JobRecord(
            id=job_id,
            label=effective_label,
            status=JobStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
            document_ids=list(document_ids),
            options=options,
            output_dir=ensure_directory(self.output_root / effective_label),
        )
        record.events.append(JobEvent(timestamp=created_at, message="Job registered and awaiting execution."))
        self._register_job(record)

        self._executor.submit(self._run_bulk, job_id)
        return record.to_summary()

    def _document_writer(self, output_dir: Path):
        def write(document: GeneratedDocument) -> str:
            folder = SANITIZE_PATTERN.sub("-", document.document_id).strip("-_.") or "document"
            relative = Path(folder) / document.filename
            target = output_dir / relative
            ensure_directory(target.parent)
            target.write_bytes(document.payload)
            return relative.as_posix()

        return write

    def _run_bulk(self, job_id: str) -> None:
        """Execute a registered job (runs on the job executor)."""
        self._update_job(job_id, status=JobStatus.RUNNING)
        self._append_event(job_id, "Bulk generation started.")

        with self._lock:
            record = self._jobs[job_id]
            document_ids = list(record.document_ids)
            options = dict(record.options)
            output_dir = record.output_dir
            label = record.label

        try:
            result = self.service.bulk_generate(
                document_ids,
                options,
                sink=self._document_writer(output_dir),
                admitted=True,
            )
            self._update_job(job_id, result=result)
            summary = result.summary
            self._append_event(job_id, f"Generated {summary.successful} of {summary.total} documents.")

            manifest = output_dir / "results.json"
            manifest.write_text(json.dumps(result.model_dump(mode="json"), indent=2), encoding="utf-8")

            archive_path = zip_directory(output_dir, self.output_root / label)
            self._update_job(job_id, archive_path=archive_path)
            self._append_event(job_id, "Archive created.")

            if self.upload_to_s3 and self.storage is not None and self.storage.is_configured():
                self._publish(job_id, archive_path, label)

            self._update_job(job_id, status=JobStatus.COMPLETED)
            self._append_event(job_id, "Bulk generation completed.")
        except Exception as exc:
            logger.exception(f"Bulk job {job_id} failed")
            self._update_job(job_id, status=JobStatus.FAILED, error=str(exc))
            self._append_event(job_id, f"Bulk generation failed: {exc}")

    def _publish(self, job_id: str, archive_path: Path, label: str) -> None:
        s3_key = f"bulk/{label}.zip"
        if not self.storage.upload_file(archive_path, s3_key):
            self._append_event(job_id, "Archive upload to S3 failed; local download only.")
            return
        url = self.storage.generate_presigned_url(s3_key, expiration=self.presigned_url_ttl_sec)
        self._update_job(job_id, s3_key=s3_key, download_url=url)
        self._append_event(job_id, "Archive uploaded to S3.")

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
