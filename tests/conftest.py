"""
Pytest configuration and fixtures for Tech Pack Render Backend tests.

Renderers are replaced by FakeRenderer, which returns real single-page PDFs
built with pypdf. The page width encodes the page index, so tests can read
the merged document back and check assembly order.
"""

import io
import os
import shutil
import tempfile
import threading
from typing import Any, Dict, Iterable, Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from pypdf import PdfReader, PdfWriter

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="techpack_test_")
os.environ["OUTPUT_DIR"] = os.path.join(_TEST_ROOT, "output")
os.environ["SNAPSHOT_DB_PATH"] = os.path.join(_TEST_ROOT, "snapshots.db")
os.environ["CACHE_BACKEND"] = "memory"
os.environ["S3_BUCKET_NAME"] = ""

from techpack_render_backend import main  # noqa: E402
from techpack_render_backend.admission import AdmissionController, InMemoryBudgetStore  # noqa: E402
from techpack_render_backend.cache import ArtifactCache, InMemoryArtifactStore  # noqa: E402
from techpack_render_backend.configuration import RequestBudget  # noqa: E402
from techpack_render_backend.errors import DocumentNotFoundError, RenderFailedError  # noqa: E402
from techpack_render_backend.job_manager import JobManager  # noqa: E402
from techpack_render_backend.layout import PageLayoutPlanner  # noqa: E402
from techpack_render_backend.overlay import OverlayComposer  # noqa: E402
from techpack_render_backend.pipeline import RenderService  # noqa: E402
from techpack_render_backend.render_pool import RenderPool  # noqa: E402
from techpack_render_backend.renderers import ArtifactKind, Renderer, RenderJob  # noqa: E402
from techpack_render_backend.snapshot_store import SnapshotDatabase  # noqa: E402

BASE_WIDTH = 200


def make_pdf_page(page_index: int) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=BASE_WIDTH + page_index, height=100)
    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


def make_image(image_format: str = "PNG", color=(200, 30, 30), size=(24, 16)) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, format=image_format)
    return output.getvalue()


def page_indexes(pdf_bytes: bytes) -> list:
    """Recover the page index of every page of a merged fake document."""
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return [int(round(float(page.mediabox.width))) - BASE_WIDTH for page in reader.pages]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RenderRecorder:
    """
    Shared state of every FakeRenderer built by one factory.

    Attributes:
        delays: page index -> seconds the render of that page takes
        document_delays: document id -> delay, takes precedence over delays
        default_delay: delay for pages not listed in delays
        crash_pages: page indexes whose render raises
        fail_start: when True, renderer start() fails
        rendered: (document_id, page_index, kind) of completed renders
        html: markup of every completed render, keyed like rendered
        max_active: highest number of renders observed at once
        created: number of renderers built so far
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.delays: Dict[int, float] = {}
        self.document_delays: Dict[str, float] = {}
        self.default_delay = 0.0
        self.crash_pages: set = set()
        self.crash_documents: set = set()
        self.fail_start = False
        self.rendered: list = []
        self.html: Dict[tuple, str] = {}
        self.active = 0
        self.max_active = 0
        self.created = 0
        self.started = threading.Event()

    def factory(self) -> "FakeRenderer":
        with self.lock:
            self.created += 1
        return FakeRenderer(self)

    def pages_rendered(self, document_id: str, kind: str = "pdf") -> int:
        with self.lock:
            return sum(1 for doc, _, k in self.rendered if doc == document_id and k == kind)


class FakeRenderer(Renderer):
    def __init__(self, recorder: RenderRecorder) -> None:
        self.recorder = recorder
        self._terminated = threading.Event()

    def start(self) -> None:
        if self.recorder.fail_start:
            raise RenderFailedError("renderer binary missing")

    def is_healthy(self) -> bool:
        return not self._terminated.is_set()

    def render(self, job: RenderJob, timeout: float) -> bytes:
        recorder = self.recorder
        with recorder.lock:
            recorder.active += 1
            recorder.max_active = max(recorder.max_active, recorder.active)
        recorder.started.set()
        try:
            delay = recorder.document_delays.get(job.document_id, recorder.delays.get(job.page_index, recorder.default_delay))
            if delay and self._terminated.wait(delay):
                raise RenderFailedError("renderer terminated")
            if job.page_index in recorder.crash_pages or job.document_id in recorder.crash_documents:
                raise RuntimeError("renderer process crashed")
            if job.kind == ArtifactKind.PREVIEW:
                payload = make_image("JPEG")
            else:
                payload = make_pdf_page(job.page_index)
            with recorder.lock:
                recorder.rendered.append((job.document_id, job.page_index, job.kind.value))
                recorder.html[(job.document_id, job.page_index, job.kind.value)] = job.html
            return payload
        finally:
            with recorder.lock:
                recorder.active -= 1

    def terminate(self) -> None:
        self._terminated.set()


def sample_snapshot(
    document_id: str = "TP-1001",
    content_version: str = "v1",
    bom: int = 3,
    measurements: int = 2,
    how_to_measure: int = 0,
    colorways: int = 1,
    notes: int = 0,
    stage: Optional[str] = "Development",
    brand: Optional[str] = None,
    supplier: Optional[str] = None,
    **article: Any,
) -> Dict[str, Any]:
    """Snapshot payload in the camelCase shape the record layer sends."""
    article_info = {
        "productName": "Relaxed Oxford Shirt",
        "articleCode": "OX-1001",
        "version": "2",
        "season": "SS25",
        "lifecycleStage": stage,
        "brand": brand,
        "supplier": supplier,
    }
    article_info.update(article)
    return {
        "documentId": document_id,
        "contentVersion": content_version,
        "article": article_info,
        "bom": [{"part": f"Part {i}", "materialName": f"Material {i}", "quantity": 1} for i in range(bom)],
        "measurements": [
            {"pomCode": f"P{i:02d}", "pomName": f"Point {i}", "toleranceMinus": 0.5, "tolerancePlus": 0.5, "sizes": {"S": 50 + i, "M": 52 + i}}
            for i in range(measurements)
        ],
        "howToMeasure": [
            {"pomCode": f"P{i:02d}", "description": f"Measure {i}", "instructions": ["Lay flat", "Measure edge to edge"]}
            for i in range(how_to_measure)
        ],
        "colorways": [
            {"name": f"Colorway {i}", "code": f"C{i}", "parts": [{"partName": "Body", "colorName": "Navy", "hexCode": "#1e3a8a"}]}
            for i in range(colorways)
        ],
        "notes": [{"title": f"Note {i}", "body": "Fold and bag individually."} for i in range(notes)],
    }


class SnapshotMap:
    """Dict-backed get_document_snapshot for unit tests."""

    def __init__(self, snapshots: Iterable[Dict[str, Any]] = ()) -> None:
        self.snapshots = {s["documentId"]: s for s in snapshots}

    def add(self, snapshot: Dict[str, Any]) -> None:
        self.snapshots[snapshot["documentId"]] = snapshot

    def __call__(self, document_id: str) -> Dict[str, Any]:
        try:
            return self.snapshots[document_id]
        except KeyError:
            raise DocumentNotFoundError(f"Document not found: {document_id}") from None


def default_budgets(single: int = 30, bulk: int = 3, preview: int = 120) -> Dict[str, RequestBudget]:
    return {
        "single": RequestBudget(window_sec=60.0, max_requests=single),
        "bulk": RequestBudget(window_sec=300.0, max_requests=bulk),
        "preview": RequestBudget(window_sec=60.0, max_requests=preview),
    }


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the test directories after the session."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def recorder():
    return RenderRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshots():
    return SnapshotMap()


@pytest.fixture
def make_service(recorder, clock, snapshots):
    """Factory building a RenderService over fake renderers."""
    services = []

    def build(
        pool_size: int = 2,
        submit_timeout_sec: float = 5.0,
        job_timeout_sec: float = 5.0,
        max_consecutive_crashes: int = 3,
        budgets: Optional[Dict[str, RequestBudget]] = None,
        rows_per_page: Optional[Dict[str, int]] = None,
        cache: Optional[ArtifactCache] = None,
        logos: Optional[Dict[str, str]] = None,
        assets=None,
        provider=None,
    ) -> RenderService:
        pool = RenderPool(
            recorder.factory,
            size=pool_size,
            submit_timeout_sec=submit_timeout_sec,
            job_timeout_sec=job_timeout_sec,
            max_consecutive_crashes=max_consecutive_crashes,
            poll_interval_sec=0.01,
        )
        service = RenderService(
            snapshot_provider=provider or snapshots,
            planner=PageLayoutPlanner(rows_per_page),
            composer=OverlayComposer(logos or {}),
            pool=pool,
            cache=cache or ArtifactCache(InMemoryArtifactStore(clock=clock)),
            admission=AdmissionController(budgets or default_budgets(), InMemoryBudgetStore(clock=clock)),
            assets=assets,
        )
        services.append(service)
        return service

    yield build
    for service in services:
        service.shutdown()


@pytest.fixture
def api(tmp_path, make_service):
    """Service, snapshot store and job manager wired into the FastAPI app."""
    store = SnapshotDatabase(tmp_path / "snapshots.db")
    service = make_service(provider=store.get_document_snapshot)
    manager = JobManager(service, output_root=tmp_path / "output")

    main.app.dependency_overrides[main.get_render_service] = lambda: service
    main.app.dependency_overrides[main.get_job_manager] = lambda: manager
    main.app.dependency_overrides[main.get_snapshot_store] = lambda: store
    yield {"service": service, "store": store, "manager": manager}
    main.app.dependency_overrides.clear()
    manager.shutdown(wait=True)


@pytest.fixture
def client(api):
    """Create a test client for the FastAPI app."""
    return TestClient(main.app)
