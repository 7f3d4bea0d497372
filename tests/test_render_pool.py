"""
Tests for the render pool.

Tests cover:
- Concurrency cap and submission timeout
- Per-job timeout and slot recycling
- Crash accounting, quarantine and operator reset
- Cancellation while waiting and while rendering
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from techpack_render_backend.errors import (
    PoolSaturatedError,
    RenderCancelledError,
    RenderFailedError,
    RenderTimeoutError,
)
from techpack_render_backend.layout import BlockType, PagePlanEntry
from techpack_render_backend.models import RenderOptions
from techpack_render_backend.render_pool import CancellationToken, RenderPool, SlotState
from techpack_render_backend.renderers import ArtifactKind, RenderJob


def make_job(page_index=0, document_id="TP-1", kind=ArtifactKind.PDF):
    entry = PagePlanEntry(page_index=page_index, block_type=BlockType.BOM, slice_start=0, slice_end=0)
    return RenderJob(
        job_id=f"{document_id}-{page_index}",
        document_id=document_id,
        content_version="v1",
        entry=entry,
        overlay=None,
        options=RenderOptions(),
        kind=kind,
        html="<html></html>",
    )


@pytest.fixture
def make_pool(recorder):
    pools = []

    def build(size=2, submit_timeout_sec=5.0, job_timeout_sec=5.0, max_consecutive_crashes=3):
        pool = RenderPool(
            recorder.factory,
            size=size,
            submit_timeout_sec=submit_timeout_sec,
            job_timeout_sec=job_timeout_sec,
            max_consecutive_crashes=max_consecutive_crashes,
            poll_interval_sec=0.01,
        )
        pools.append(pool)
        return pool

    yield build
    for pool in pools:
        pool.shutdown()


class TestConcurrency:
    """Tests for the pool size bound."""

    def test_never_more_renders_than_slots(self, make_pool, recorder):
        pool = make_pool(size=2)
        recorder.default_delay = 0.05

        with ThreadPoolExecutor(max_workers=6) as executor:
            artifacts = list(executor.map(lambda i: pool.submit(make_job(i)), range(6)))

        assert [artifact.page_index for artifact in artifacts] == list(range(6))
        assert recorder.max_active <= 2
        assert pool.status().available == 2

    def test_submit_times_out_when_all_slots_busy(self, make_pool, recorder):
        pool = make_pool(size=1, submit_timeout_sec=0.1)
        recorder.delays[0] = 1.0

        with ThreadPoolExecutor(max_workers=1) as executor:
            running = executor.submit(pool.submit, make_job(0))
            assert recorder.started.wait(2)

            with pytest.raises(PoolSaturatedError) as exc_info:
                pool.submit(make_job(1))
            assert exc_info.value.retry_after == 0.1

            running.result()

    def test_preview_artifacts_are_images(self, make_pool):
        artifact = make_pool().submit(make_job(kind=ArtifactKind.PREVIEW))
        assert artifact.media_type == "image/jpeg"


class TestFailures:
    """Tests for timeouts, crashes and quarantine."""

    def test_job_timeout_terminates_and_recycles(self, make_pool, recorder):
        pool = make_pool(size=1, job_timeout_sec=0.1)
        recorder.delays[0] = 10.0

        started = time.monotonic()
        with pytest.raises(RenderTimeoutError):
            pool.submit(make_job(0))
        assert time.monotonic() - started < 5

        assert recorder.created == 2
        assert pool.submit(make_job(1)).page_index == 1

    def test_crash_is_reported_as_render_failure(self, make_pool, recorder):
        pool = make_pool(size=1)
        recorder.crash_pages.add(0)

        with pytest.raises(RenderFailedError):
            pool.submit(make_job(0))

        slot = pool.status().slots[0]
        assert slot.state == SlotState.IDLE.value
        assert slot.consecutive_failures == 1

    def test_success_resets_failure_count(self, make_pool, recorder):
        pool = make_pool(size=1)
        recorder.crash_pages.add(0)
        for _ in range(2):
            with pytest.raises(RenderFailedError):
                pool.submit(make_job(0))

        pool.submit(make_job(1))

        assert pool.status().slots[0].consecutive_failures == 0

    def test_repeated_crashes_quarantine_slot_until_reset(self, make_pool, recorder):
        pool = make_pool(size=1, max_consecutive_crashes=3)
        recorder.crash_pages.add(0)
        for _ in range(3):
            with pytest.raises(RenderFailedError):
                pool.submit(make_job(0))

        status = pool.status()
        assert status.quarantined == 1
        assert status.available == 0
        with pytest.raises(PoolSaturatedError):
            pool.submit(make_job(1))

        assert pool.reset_quarantined() == 1
        assert pool.submit(make_job(1)).page_index == 1
        assert pool.reset_quarantined() == 0

    def test_quarantine_leaves_healthy_slots_serving(self, make_pool, recorder):
        pool = make_pool(size=2, max_consecutive_crashes=1)
        recorder.crash_pages.add(0)

        with pytest.raises(RenderFailedError):
            pool.submit(make_job(0))

        assert pool.status().quarantined == 1
        assert pool.submit(make_job(1)).page_index == 1

    def test_renderer_that_cannot_start(self, make_pool, recorder):
        recorder.fail_start = True
        pool = make_pool(size=1)
        with pytest.raises(RenderFailedError):
            pool.submit(make_job(0))

    def test_shutdown_rejects_new_work(self, make_pool):
        pool = make_pool()
        pool.shutdown()
        with pytest.raises(PoolSaturatedError):
            pool.submit(make_job(0))


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancelled_token_is_rejected_before_claiming(self, make_pool, recorder):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RenderCancelledError):
            make_pool().submit(make_job(0), token)
        assert recorder.created == 0

    def test_cancel_during_render_releases_slot(self, make_pool, recorder):
        pool = make_pool(size=1)
        recorder.delays[0] = 10.0
        token = CancellationToken()

        threading.Timer(0.1, token.cancel).start()
        started = time.monotonic()
        with pytest.raises(RenderCancelledError):
            pool.submit(make_job(0), token)
        assert time.monotonic() - started < 5

        slot = pool.status().slots[0]
        assert slot.state == SlotState.IDLE.value
        assert slot.consecutive_failures == 0
        assert pool.submit(make_job(1)).page_index == 1

    def test_cancel_while_waiting_for_slot(self, make_pool, recorder):
        pool = make_pool(size=1, submit_timeout_sec=5.0)
        recorder.delays[0] = 0.5
        token = CancellationToken()

        with ThreadPoolExecutor(max_workers=1) as executor:
            running = executor.submit(pool.submit, make_job(0))
            assert recorder.started.wait(2)
            threading.Timer(0.05, token.cancel).start()

            with pytest.raises(RenderCancelledError):
                pool.submit(make_job(1), token)
            running.result()

    def test_child_token_follows_parent(self):
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        assert not child.is_cancelled()
        parent.cancel()
        assert child.is_cancelled()
