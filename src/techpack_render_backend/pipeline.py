"""
Document rendering pipeline.

RenderService wires the components together and exposes the operations the
HTTP layer calls:

- generate: admission -> cache -> plan -> overlay -> render pages -> merge -> cache
- preview: the same path for a single page, producing a JPEG
- describe: page estimate and validity of a document, cached briefly
- bulk_generate: BulkOrchestrator over the admission-free generate path
- on_document_mutated: cache invalidation for a changed document

Concurrent generate calls for the same cache key share one in-flight render.
Pages of one document are dispatched to the pool concurrently and re-sorted by
page index before they are merged, so assembly order always follows the plan.
"""

from __future__ import annotations

import io
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from .admission import AdmissionController, InMemoryBudgetStore
from .assets import LogoAssetResolver
from .bulk import ArtifactSink, BulkOrchestrator
from .cache import ArtifactCache, CacheKey
from .configuration import SUPPORTED_FORMATS, SUPPORTED_ORIENTATIONS, ServiceConfig, budget_table
from .errors import (
    InvalidOptionsError,
    InvalidSnapshotError,
    PageOutOfRangeError,
    RenderCancelledError,
    RenderFailedError,
    TechPackRenderError,
)
from .layout import BlockType, PageLayoutPlanner, PagePlanEntry
from .markup import build_page_html
from .models import BulkResult, DocumentInfo, DocumentSnapshot, GeneratedDocument, PreviewImage, RenderOptions
from .overlay import OverlayComposer, OverlayDescriptor
from .render_pool import CancellationToken, RendererFactory, RenderPool
from .renderers import ArtifactKind, RenderArtifact, RenderJob
from .s3_service import S3Storage
from .utils import document_filename

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[str], DocumentSnapshot]

INFO_VARIANT = "meta"


def merge_pdf_pages(artifacts: Sequence[RenderArtifact]) -> tuple[bytes, int]:
    """
    Concatenate single-page PDFs in the given order.

    Returns:
        Tuple of (merged PDF bytes, page count)

    Raises:
        RenderFailedError: If an artifact is not a readable PDF
    """
    writer = PdfWriter()
    try:
        for artifact in artifacts:
            reader = PdfReader(io.BytesIO(artifact.payload))
            for page in reader.pages:
                writer.add_page(page)
    except PdfReadError as exc:
        raise RenderFailedError(f"Renderer returned an unreadable PDF: {exc}") from exc
    output = io.BytesIO()
    writer.write(output)
    return output.getvalue(), len(writer.pages)


class RenderService:
    """
    Entry point of the rendering pipeline.

    Args:
        snapshot_provider: get_document_snapshot of the persistence layer
        planner: Page layout planner
        composer: Overlay composer
        pool: Render pool every page render goes through
        cache: Artifact cache
        admission: Admission controller
        assets: Asset resolver for logos and illustrations (None disables images)
        pdf_ttl_sec / preview_ttl_sec / info_ttl_sec: Cache lifetimes per artifact kind
        max_bulk_documents: Largest accepted bulk request
    """

    def __init__(
        self,
        snapshot_provider: SnapshotProvider,
        planner: PageLayoutPlanner,
        composer: OverlayComposer,
        pool: RenderPool,
        cache: ArtifactCache,
        admission: AdmissionController,
        assets: Optional[LogoAssetResolver] = None,
        pdf_ttl_sec: float = 21600,
        preview_ttl_sec: float = 1800,
        info_ttl_sec: float = 300,
        max_bulk_documents: int = 50,
    ) -> None:
        self._get_snapshot = snapshot_provider
        self.planner = planner
        self.composer = composer
        self.pool = pool
        self.cache = cache
        self.admission = admission
        self.assets = assets
        self.pdf_ttl_sec = pdf_ttl_sec
        self.preview_ttl_sec = preview_ttl_sec
        self.info_ttl_sec = info_ttl_sec
        self.max_bulk_documents = max_bulk_documents
        self.bulk = BulkOrchestrator(self._generate_unadmitted, max_parallelism=pool.size)
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        snapshot_provider: SnapshotProvider,
        renderer_factory: Optional[RendererFactory] = None,
        storage: Optional[S3Storage] = None,
        cache: Optional[ArtifactCache] = None,
        budget_store: Optional[InMemoryBudgetStore] = None,
    ) -> "RenderService":
        storage = storage or S3Storage(config.storage.s3_bucket)
        return cls(
            snapshot_provider=snapshot_provider,
            planner=PageLayoutPlanner.from_config(config.layout),
            composer=OverlayComposer(config.assets.logos, config.assets.default_logo),
            pool=RenderPool.from_config(config.pool, renderer_factory),
            cache=cache or ArtifactCache.from_config(config.cache),
            admission=AdmissionController(budget_table(config), budget_store),
            assets=LogoAssetResolver.from_config(config.assets, storage),
            pdf_ttl_sec=config.cache.pdf_ttl_sec,
            preview_ttl_sec=config.cache.preview_ttl_sec,
            info_ttl_sec=config.cache.info_ttl_sec,
            max_bulk_documents=config.bulk.max_documents,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_valid_snapshot(self, document_id: str) -> DocumentSnapshot:
        snapshot = DocumentSnapshot.from_payload(self._get_snapshot(document_id))
        errors = snapshot.validation_errors()
        if errors:
            raise InvalidSnapshotError(f"Tech pack {document_id} cannot be generated", errors=errors)
        return snapshot

    def _embed_images(self, entry: PagePlanEntry, overlay: Optional[OverlayDescriptor], options: RenderOptions):
        if self.assets is None or not options.include_images:
            return None, []
        logo = None
        if entry.block_type == BlockType.HEADER and overlay is not None:
            logo = self.assets.embed(overlay.logo_asset_ref, options.image_quality)
        images: List[Optional[str]] = []
        if entry.block_type == BlockType.HOW_TO_MEASURE:
            images = [self.assets.embed(item.image_ref, options.image_quality) for item in entry.items]
        return logo, images

    def _build_job(
        self,
        snapshot: DocumentSnapshot,
        entry: PagePlanEntry,
        overlay: Optional[OverlayDescriptor],
        options: RenderOptions,
        kind: ArtifactKind,
    ) -> RenderJob:
        logo, images = self._embed_images(entry, overlay, options)
        return RenderJob(
            job_id=f"{snapshot.document_id}-{kind.value}-{entry.page_index}-{uuid4().hex[:8]}",
            document_id=snapshot.document_id,
            content_version=snapshot.content_version,
            entry=entry,
            overlay=overlay,
            options=options,
            kind=kind,
            html=build_page_html(entry, options, overlay, logo, images),
        )

    def _render_pages(self, jobs: List[RenderJob], cancel_token: Optional[CancellationToken]) -> List[RenderArtifact]:
        page_token = CancellationToken(parent=cancel_token)
        artifacts: List[RenderArtifact] = []
        errors: List[TechPackRenderError] = []
        with ThreadPoolExecutor(max_workers=min(len(jobs), self.pool.size), thread_name_prefix="page") as executor:
            futures = [executor.submit(self.pool.submit, job, page_token) for job in jobs]
            for future in as_completed(futures):
                try:
                    artifacts.append(future.result())
                except TechPackRenderError as exc:
                    if not errors:
                        # No partial documents: stop the remaining pages.
                        page_token.cancel()
                    errors.append(exc)

        if errors:
            raise next((exc for exc in errors if not isinstance(exc, RenderCancelledError)), errors[0])
        return sorted(artifacts, key=lambda artifact: artifact.page_index)

    # ------------------------------------------------------------------
    # generate
    # ------------------------------------------------------------------

    def generate(
        self,
        document_id: str,
        options: Any = None,
        identity: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GeneratedDocument:
        """
        Produce the PDF of one document.

        Args:
            document_id: Document to render
            options: RenderOptions, a mapping or a JSON string
            identity: Caller identity charged against the single budget
            cancel_token: Cancelled when the caller goes away

        Raises:
            AdmissionRejectedError, InvalidSnapshotError, PoolSaturatedError,
            RenderTimeoutError, RenderFailedError, RenderCancelledError
        """
        if identity is not None:
            self.admission.admit(identity, "single")
        return self._generate_unadmitted(document_id, options, cancel_token)

    def _generate_unadmitted(
        self,
        document_id: str,
        options: Any = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GeneratedDocument:
        render_options = RenderOptions.parse(options)
        # Read before the snapshot: a mutation landing in between voids this render.
        epoch = self.cache.current_epoch(document_id)
        snapshot = self._load_valid_snapshot(document_id)
        key = CacheKey(snapshot.document_id, snapshot.content_version, ArtifactKind.PDF.value, render_options.fingerprint())

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for {document_id} ({snapshot.content_version})")
            return GeneratedDocument(
                document_id=snapshot.document_id,
                content_version=snapshot.content_version,
                filename=document_filename(snapshot.article.article_code, snapshot.article.version),
                payload=cached,
                pages=self.planner.estimate_pages(snapshot),
                cached=True,
            )

        # Callers arriving after an invalidation never join a render that predates it.
        inflight_key = f"{key.render(self.cache.key_prefix)}#{epoch}"
        while True:
            with self._inflight_lock:
                shared = self._inflight.get(inflight_key)
                if shared is None:
                    shared = Future()
                    self._inflight[inflight_key] = shared
                    break
            try:
                return self._await_shared(shared, cancel_token)
            except RenderCancelledError:
                # The owning caller went away; retry unless this caller did too.
                if cancel_token is not None and cancel_token.is_cancelled():
                    raise

        try:
            document = self._render_document(snapshot, render_options, key, epoch, cancel_token)
        except BaseException as exc:
            shared.set_exception(exc)
            raise
        else:
            shared.set_result(document)
            return document
        finally:
            with self._inflight_lock:
                self._inflight.pop(inflight_key, None)

    def _await_shared(self, shared: Future, cancel_token: Optional[CancellationToken]) -> GeneratedDocument:
        while True:
            if cancel_token is not None and cancel_token.is_cancelled():
                raise RenderCancelledError("Caller cancelled while waiting for a shared render")
            try:
                return shared.result(timeout=self.pool.poll_interval_sec)
            except FutureTimeoutError:
                continue

    def _render_document(
        self,
        snapshot: DocumentSnapshot,
        options: RenderOptions,
        key: CacheKey,
        epoch: int,
        cancel_token: Optional[CancellationToken],
    ) -> GeneratedDocument:
        plan = self.planner.plan(snapshot)
        overlay = self.composer.compose(snapshot)
        jobs = [self._build_job(snapshot, entry, overlay, options, ArtifactKind.PDF) for entry in plan.entries]

        artifacts = self._render_pages(jobs, cancel_token)
        payload, pages = merge_pdf_pages(artifacts)

        if cancel_token is not None and cancel_token.is_cancelled():
            raise RenderCancelledError(f"Generation of {snapshot.document_id} cancelled")
        self.cache.put(key, payload, self.pdf_ttl_sec, epoch=epoch)
        logger.info(f"Generated {snapshot.document_id} ({pages} pages, {len(payload)} bytes)")

        return GeneratedDocument(
            document_id=snapshot.document_id,
            content_version=snapshot.content_version,
            filename=document_filename(snapshot.article.article_code, snapshot.article.version),
            payload=payload,
            pages=pages,
        )

    # ------------------------------------------------------------------
    # preview
    # ------------------------------------------------------------------

    def preview(
        self,
        document_id: str,
        page_number: int,
        options: Any = None,
        identity: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PreviewImage:
        """
        Render one page (1-based) as a JPEG.

        Raises:
            PageOutOfRangeError: If the plan has no such page
        """
        if identity is not None:
            self.admission.admit(identity, "preview")
        render_options = RenderOptions.parse(options)
        epoch = self.cache.current_epoch(document_id)
        snapshot = self._load_valid_snapshot(document_id)
        plan = self.planner.plan(snapshot)
        entry = plan.page(page_number)
        if entry is None:
            raise PageOutOfRangeError(
                f"Page {page_number} out of range, document {document_id} has {plan.total_pages} pages"
            )

        key = CacheKey(
            snapshot.document_id,
            snapshot.content_version,
            ArtifactKind.PREVIEW.value,
            render_options.fingerprint(),
            entry.page_index,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return PreviewImage(snapshot.document_id, snapshot.content_version, page_number, cached, cached=True)

        overlay = self.composer.compose(snapshot)
        job = self._build_job(snapshot, entry, overlay, render_options, ArtifactKind.PREVIEW)
        artifact = self.pool.submit(job, cancel_token)
        if cancel_token is not None and cancel_token.is_cancelled():
            raise RenderCancelledError(f"Preview of {document_id} cancelled")
        self.cache.put(key, artifact.payload, self.preview_ttl_sec, epoch=epoch)
        return PreviewImage(snapshot.document_id, snapshot.content_version, page_number, artifact.payload)

    # ------------------------------------------------------------------
    # describe
    # ------------------------------------------------------------------

    def describe(self, document_id: str) -> DocumentInfo:
        epoch = self.cache.current_epoch(document_id)
        snapshot = DocumentSnapshot.from_payload(self._get_snapshot(document_id))
        key = CacheKey(snapshot.document_id, snapshot.content_version, ArtifactKind.INFO.value, INFO_VARIANT)
        cached = self.cache.get(key)
        if cached is not None:
            return DocumentInfo.model_validate_json(cached)

        errors = snapshot.validation_errors()
        article = snapshot.article
        info = DocumentInfo(
            document_id=snapshot.document_id,
            content_version=snapshot.content_version,
            article_code=article.article_code,
            version=article.version,
            product_name=article.product_name,
            lifecycle_stage=article.lifecycle_stage,
            estimated_pages=self.planner.estimate_pages(snapshot),
            can_generate=not errors,
            validation_errors=errors,
            supported_formats=list(SUPPORTED_FORMATS),
            supported_orientations=list(SUPPORTED_ORIENTATIONS),
        )
        self.cache.put(key, info.model_dump_json().encode("utf-8"), self.info_ttl_sec, epoch=epoch)
        return info

    # ------------------------------------------------------------------
    # bulk
    # ------------------------------------------------------------------

    def check_bulk_request(self, document_ids: Sequence[str], identity: Optional[str] = None) -> None:
        """Admission and size checks shared by synchronous and background bulk runs."""
        if not document_ids:
            raise InvalidOptionsError("At least one document id is required")
        if len(document_ids) > self.max_bulk_documents:
            raise InvalidOptionsError(f"At most {self.max_bulk_documents} documents per bulk request")
        if identity is not None:
            self.admission.admit(identity, "bulk")

    def bulk_generate(
        self,
        document_ids: Sequence[str],
        options: Any = None,
        identity: Optional[str] = None,
        sink: Optional[ArtifactSink] = None,
        admitted: bool = False,
    ) -> BulkResult:
        """
        Generate several documents; per-document failures land in the result.

        Args:
            admitted: True when check_bulk_request() already ran for this request
        """
        if not admitted:
            self.check_bulk_request(document_ids, identity)
        return self.bulk.run_bulk(document_ids, options, sink)

    # ------------------------------------------------------------------
    # invalidation
    # ------------------------------------------------------------------

    def on_document_mutated(self, document_id: str) -> bool:
        """
        Invalidate everything cached for a document.

        Must complete before the mutation is acknowledged to its caller.
        Returns False when the store could not confirm the deletion; the
        entries are unreachable either way.
        """
        confirmed = self.cache.invalidate(document_id)
        if not confirmed:
            logger.error(f"Invalidation of {document_id} not confirmed by the cache store")
        return confirmed

    def shutdown(self) -> None:
        self.pool.shutdown()
        self.cache.close()

