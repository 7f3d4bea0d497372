"""
Renderer abstraction and the headless Chromium implementation.

A Renderer turns the HTML of one Render Job into bytes: a single-page PDF for
document generation or a JPEG for page previews. The RenderPool owns renderer
lifecycle; renderers only need to report health, render, and honour
terminate() from another thread so a timed-out or cancelled job releases its
slot promptly.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from .assets import reencode_image
from .errors import RenderFailedError, RenderTimeoutError
from .layout import PagePlanEntry
from .models import PageFormat, RenderOptions
from .overlay import OverlayDescriptor
from .utils import ensure_directory

logger = logging.getLogger(__name__)

# CSS pixel viewport (96 dpi) per page format, portrait.
VIEWPORTS = {
    PageFormat.A4: (794, 1123),
    PageFormat.LETTER: (816, 1056),
    PageFormat.LEGAL: (816, 1344),
}


class ArtifactKind(str, Enum):
    PDF = "pdf"
    PREVIEW = "preview"
    INFO = "info"


@dataclass
class RenderJob:
    """
    One page render request.

    Jobs are created by the pipeline, claimed by exactly one pool slot and
    discarded after completion; they are never persisted.
    """

    job_id: str
    document_id: str
    content_version: str
    entry: PagePlanEntry
    overlay: Optional[OverlayDescriptor]
    options: RenderOptions
    kind: ArtifactKind
    html: str

    @property
    def page_index(self) -> int:
        return self.entry.page_index


@dataclass(frozen=True)
class RenderArtifact:
    job_id: str
    page_index: int
    payload: bytes
    media_type: str


class Renderer(ABC):
    """Interface every render backend implements."""

    @abstractmethod
    def start(self) -> None:
        """Prepare the renderer; raise RenderFailedError when it cannot run."""

    @abstractmethod
    def is_healthy(self) -> bool:
        ...

    @abstractmethod
    def render(self, job: RenderJob, timeout: float) -> bytes:
        """Render a job and return the artifact bytes."""

    @abstractmethod
    def terminate(self) -> None:
        """Abort in-flight work. Safe to call from another thread."""

    def close(self) -> None:
        self.terminate()


class ChromiumRenderer(Renderer):
    """
    Renders pages through the headless Chromium command line.

    Every job runs in a fresh working directory under work_dir. PDFs come from
    --print-to-pdf; previews come from --screenshot and are re-encoded to JPEG
    at the job's image quality.
    """

    def __init__(self, executable: str = "chromium", args: Sequence[str] = (), work_dir: Optional[Path] = None) -> None:
        self.executable = executable
        self.args: List[str] = list(args)
        self.work_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir()) / "techpack-pdf"
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._healthy = False

    def start(self) -> None:
        ensure_directory(self.work_dir)
        self._healthy = self._check_binary()
        if not self._healthy:
            raise RenderFailedError(f"Chromium executable is not usable: {self.executable}")

    def _check_binary(self) -> bool:
        try:
            result = subprocess.run([self.executable, "--version"], capture_output=True, timeout=15, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning(f"Chromium health check failed: {exc}")
            return False
        return result.returncode == 0

    def is_healthy(self) -> bool:
        return self._healthy

    def _command(self, job: RenderJob, html_path: Path, output_path: Path) -> List[str]:
        cmd = [self.executable, "--headless", *self.args]
        if job.kind == ArtifactKind.PREVIEW:
            width, height = VIEWPORTS[job.options.format]
            if job.options.landscape:
                width, height = height, width
            cmd += [f"--screenshot={output_path}", f"--window-size={width},{height}", "--hide-scrollbars"]
        else:
            cmd += [f"--print-to-pdf={output_path}", "--no-pdf-header-footer"]
        cmd.append(html_path.as_uri())
        return cmd

    def render(self, job: RenderJob, timeout: float) -> bytes:
        job_dir = Path(tempfile.mkdtemp(prefix=f"{job.job_id}-", dir=ensure_directory(self.work_dir)))
        try:
            html_path = job_dir / "page.html"
            html_path.write_text(job.html, encoding="utf-8")
            output_path = job_dir / ("page.png" if job.kind == ArtifactKind.PREVIEW else "page.pdf")

            try:
                process = subprocess.Popen(
                    self._command(job, html_path, output_path),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                self._healthy = False
                raise RenderFailedError(f"Failed to launch Chromium: {exc}") from exc

            with self._lock:
                self._process = process
            try:
                _, stderr = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                process.kill()
                process.communicate()
                raise RenderTimeoutError(f"Render of page {job.page_index + 1} exceeded {timeout}s") from exc
            finally:
                with self._lock:
                    self._process = None

            if process.returncode != 0:
                detail = (stderr or b"").decode("utf-8", errors="replace").strip()[-500:]
                raise RenderFailedError(f"Chromium exited with code {process.returncode}: {detail}")
            if not output_path.exists() or output_path.stat().st_size == 0:
                raise RenderFailedError(f"Chromium produced no output for page {job.page_index + 1}")

            payload = output_path.read_bytes()
            if job.kind == ArtifactKind.PREVIEW:
                payload = reencode_image(payload, job.options.image_quality)
            return payload
        finally:
            shutil.rmtree(job_dir, ignore_errors=True)

    def terminate(self) -> None:
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.info(f"Terminating Chromium process {process.pid}")
            process.kill()
