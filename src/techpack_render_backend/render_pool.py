"""
Bounded pool of renderer instances.

The pool is the only parallel-execution resource of the pipeline: every page
render, whether it comes from a single-document request or a bulk run, is
submitted here and executes on one of `size` slots.

Slot state machine::

    Idle -> Busy(job) -> Idle                 (success)
                      -> Recycling -> Idle    (crash, timeout, cancellation)
                      -> Recycling -> Quarantined   (N consecutive failures)

A quarantined slot takes no work until reset_quarantined() is called by an
operator. The per-job timeout is enforced by the submitting thread, which
polls the slot's worker future and terminates the renderer when the budget is
spent; the pool never retries a job on its own.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .errors import (
    PoolSaturatedError,
    RenderCancelledError,
    RenderFailedError,
    RenderTimeoutError,
    TechPackRenderError,
)
from .models import PoolSlotInfo, PoolStatus
from .renderers import ArtifactKind, ChromiumRenderer, Renderer, RenderArtifact, RenderJob

logger = logging.getLogger(__name__)

RendererFactory = Callable[[], Renderer]


class CancellationToken:
    """
    Thread-safe flag for cooperative cancellation of a render.

    The HTTP layer cancels the token when the client disconnects; the pool
    checks it while waiting for a slot and while a job is in flight. A child
    token also reports cancellation of its parent.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._is_cancelled = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        if self._is_cancelled.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled()


class SlotState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RECYCLING = "recycling"
    QUARANTINED = "quarantined"


@dataclass
class _Slot:
    slot_id: int
    executor: ThreadPoolExecutor
    renderer: Optional[Renderer] = None
    state: SlotState = SlotState.IDLE
    consecutive_failures: int = 0
    jobs_completed: int = 0
    current_job: Optional[str] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def to_info(self) -> PoolSlotInfo:
        return PoolSlotInfo(
            slot_id=self.slot_id,
            state=self.state.value,
            consecutive_failures=self.consecutive_failures,
            jobs_completed=self.jobs_completed,
            current_job=self.current_job,
        )


def _new_executor(slot_id: int) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"render-slot-{slot_id}")


class RenderPool:
    """
    Executes Render Jobs on a fixed number of renderer slots.

    Args:
        renderer_factory: Zero-argument callable returning a fresh Renderer
        size: Number of slots, the system-wide render concurrency cap
        submit_timeout_sec: How long submit() waits for a free slot
        job_timeout_sec: Render budget of a single job
        max_consecutive_crashes: Failures after which a slot is quarantined
        poll_interval_sec: Granularity of timeout and cancellation checks
    """

    def __init__(
        self,
        renderer_factory: RendererFactory,
        size: int = 2,
        submit_timeout_sec: float = 30.0,
        job_timeout_sec: float = 120.0,
        max_consecutive_crashes: int = 3,
        poll_interval_sec: float = 0.1,
    ) -> None:
        if size < 1:
            raise ValueError("Render pool size must be at least 1")
        self._factory = renderer_factory
        self.submit_timeout_sec = submit_timeout_sec
        self.job_timeout_sec = job_timeout_sec
        self.max_consecutive_crashes = max(1, max_consecutive_crashes)
        self.poll_interval_sec = poll_interval_sec
        self._slots: List[_Slot] = [_Slot(slot_id=i, executor=_new_executor(i)) for i in range(size)]
        self._condition = threading.Condition()
        self._closed = False

    @classmethod
    def from_config(cls, pool_config, renderer_factory: Optional[RendererFactory] = None) -> "RenderPool":
        if renderer_factory is None:

            def renderer_factory() -> Renderer:
                return ChromiumRenderer(
                    executable=pool_config.chromium_path,
                    args=pool_config.chromium_args,
                    work_dir=pool_config.work_dir,
                )

        return cls(
            renderer_factory,
            size=pool_config.size,
            submit_timeout_sec=pool_config.submit_timeout_sec,
            job_timeout_sec=pool_config.job_timeout_sec,
            max_consecutive_crashes=pool_config.max_consecutive_crashes,
            poll_interval_sec=pool_config.cancel_poll_interval_sec,
        )

    @property
    def size(self) -> int:
        return len(self._slots)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job: RenderJob, cancel_token: Optional[CancellationToken] = None) -> RenderArtifact:
        """
        Render a job on the next free slot, blocking until it completes.

        Raises:
            PoolSaturatedError: No slot became free within the submission timeout
            RenderTimeoutError: The job exceeded its render budget
            RenderFailedError: The renderer crashed or could not be started
            RenderCancelledError: The token was cancelled before completion
        """
        if cancel_token is not None and cancel_token.is_cancelled():
            raise RenderCancelledError(f"Render job {job.job_id} cancelled before submission")

        slot = self._claim(job, cancel_token)
        outcome = "failed"
        try:
            payload = self._execute(slot, job, cancel_token)
            outcome = "ok"
        except RenderCancelledError:
            outcome = "cancelled"
            raise
        except TechPackRenderError:
            raise
        except Exception as exc:
            raise RenderFailedError(f"Renderer crashed on job {job.job_id}: {exc}") from exc
        finally:
            self._release(slot, outcome)

        media_type = "image/jpeg" if job.kind == ArtifactKind.PREVIEW else "application/pdf"
        return RenderArtifact(job_id=job.job_id, page_index=job.page_index, payload=payload, media_type=media_type)

    def _claim(self, job: RenderJob, cancel_token: Optional[CancellationToken]) -> _Slot:
        deadline = time.monotonic() + self.submit_timeout_sec
        with self._condition:
            while True:
                if self._closed:
                    raise PoolSaturatedError("Render pool is shut down")
                if all(slot.state == SlotState.QUARANTINED for slot in self._slots):
                    raise PoolSaturatedError("All render slots are quarantined", retry_after=self.submit_timeout_sec)
                for slot in self._slots:
                    if slot.state == SlotState.IDLE:
                        slot.state = SlotState.BUSY
                        slot.current_job = job.job_id
                        return slot
                if cancel_token is not None and cancel_token.is_cancelled():
                    raise RenderCancelledError(f"Render job {job.job_id} cancelled while waiting for a slot")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolSaturatedError(
                        f"No render slot available within {self.submit_timeout_sec}s",
                        retry_after=self.submit_timeout_sec,
                    )
                self._condition.wait(min(remaining, self.poll_interval_sec))

    def _execute(self, slot: _Slot, job: RenderJob, cancel_token: Optional[CancellationToken]) -> bytes:
        renderer = self._ensure_renderer(slot)
        future = slot.executor.submit(renderer.render, job, self.job_timeout_sec)
        deadline = time.monotonic() + self.job_timeout_sec
        while True:
            try:
                return future.result(timeout=self.poll_interval_sec)
            except FutureTimeoutError:
                pass
            if cancel_token is not None and cancel_token.is_cancelled():
                logger.info(f"Cancelling render job {job.job_id} on slot {slot.slot_id}")
                renderer.terminate()
                raise RenderCancelledError(f"Render job {job.job_id} cancelled")
            if time.monotonic() >= deadline:
                logger.warning(f"Render job {job.job_id} exceeded {self.job_timeout_sec}s on slot {slot.slot_id}")
                renderer.terminate()
                raise RenderTimeoutError(
                    "Document too complex to render in time, try again",
                    retry_after=self.submit_timeout_sec,
                )

    def _ensure_renderer(self, slot: _Slot) -> Renderer:
        with slot.lock:
            if slot.renderer is not None and not slot.renderer.is_healthy():
                logger.warning(f"Renderer on slot {slot.slot_id} failed its health check")
                self._close_renderer(slot)
            if slot.renderer is None:
                slot.renderer = self._spawn()
            return slot.renderer

    def _spawn(self) -> Renderer:
        renderer = self._factory()
        try:
            renderer.start()
        except TechPackRenderError:
            raise
        except Exception as exc:
            raise RenderFailedError(f"Failed to start renderer: {exc}") from exc
        return renderer

    def _close_renderer(self, slot: _Slot) -> None:
        renderer, slot.renderer = slot.renderer, None
        if renderer is None:
            return
        try:
            renderer.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Closing renderer on slot {slot.slot_id} failed: {exc}")

    # ------------------------------------------------------------------
    # Release and recycling
    # ------------------------------------------------------------------

    def _release(self, slot: _Slot, outcome: str) -> None:
        if outcome == "ok":
            with self._condition:
                slot.state = SlotState.IDLE
                slot.current_job = None
                slot.consecutive_failures = 0
                slot.jobs_completed += 1
                self._condition.notify_all()
            return

        with self._condition:
            slot.state = SlotState.RECYCLING
            slot.current_job = None
            if outcome == "failed":
                slot.consecutive_failures += 1
        self._recycle(slot)

    def _recycle(self, slot: _Slot) -> None:
        logger.warning(f"Recycling render slot {slot.slot_id} (consecutive failures: {slot.consecutive_failures})")
        with slot.lock:
            self._close_renderer(slot)
            # A terminated job may still be unwinding on the old worker thread.
            slot.executor.shutdown(wait=False)
            slot.executor = _new_executor(slot.slot_id)

            spawn_failed = False
            if slot.consecutive_failures < self.max_consecutive_crashes:
                try:
                    slot.renderer = self._spawn()
                except TechPackRenderError as exc:
                    logger.warning(f"Respawning renderer on slot {slot.slot_id} failed: {exc}")
                    spawn_failed = True

        with self._condition:
            if spawn_failed:
                slot.consecutive_failures += 1
            if slot.consecutive_failures >= self.max_consecutive_crashes:
                slot.state = SlotState.QUARANTINED
                logger.error(
                    f"Render slot {slot.slot_id} quarantined after {slot.consecutive_failures} consecutive failures"
                )
            elif not self._closed:
                slot.state = SlotState.IDLE
            self._condition.notify_all()

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def reset_quarantined(self) -> int:
        """Return quarantined slots to service. Returns the number of slots reset."""
        reset = 0
        with self._condition:
            for slot in self._slots:
                if slot.state == SlotState.QUARANTINED:
                    slot.state = SlotState.IDLE
                    slot.consecutive_failures = 0
                    reset += 1
            self._condition.notify_all()
        if reset:
            logger.info(f"Reset {reset} quarantined render slot(s)")
        return reset

    def status(self) -> PoolStatus:
        with self._condition:
            infos = [slot.to_info() for slot in self._slots]
        return PoolStatus(
            size=len(infos),
            available=sum(1 for info in infos if info.state == SlotState.IDLE.value),
            busy=sum(1 for info in infos if info.state == SlotState.BUSY.value),
            quarantined=sum(1 for info in infos if info.state == SlotState.QUARANTINED.value),
            slots=infos,
        )

    def shutdown(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        for slot in self._slots:
            with slot.lock:
                self._close_renderer(slot)
                slot.executor.shutdown(wait=False)
