"""Unit tests for batch progress tracking and retention"""

import pytest
from unittest.mock import AsyncMock

from billing.services.batch_processing_service import BatchActionRunner
from billing.services.progress_tracker import batch_progress_tracker
from billing.utils.pacing import UpstreamPacer


@pytest.fixture
def tracker(monkeypatch, fake_clock):
    """The shared tracker with empty storage, a fake clock and small limits"""
    monkeypatch.setattr(batch_progress_tracker, "_progress", {})
    monkeypatch.setattr(batch_progress_tracker, "_finished", {})
    monkeypatch.setattr(batch_progress_tracker, "_clock", fake_clock)
    monkeypatch.setattr(batch_progress_tracker, "retention_seconds", 60)
    monkeypatch.setattr(batch_progress_tracker, "max_finished", 3)
    return batch_progress_tracker


@pytest.mark.unit
class TestProgress:

    async def test_counts_results(self, tracker):
        batch_id = await tracker.create(2)
        await tracker.start(batch_id)
        await tracker.record(batch_id, {"id": 1, "action": "send", "ok": True, "message": "sent"})
        await tracker.record(batch_id, {"id": 2, "action": "send", "ok": False, "message": "HTTP 500"})
        await tracker.complete(batch_id, "1/2 rows succeeded")

        progress = await tracker.get(batch_id)

        assert progress["status"] == "complete"
        assert (progress["processed"], progress["succeeded"], progress["failed"]) == (2, 1, 1)
        assert progress["message"] == "1/2 rows succeeded"

    async def test_unknown_batch(self, tracker):
        await tracker.record("missing", {"ok": True})

        assert await tracker.get("missing") is None


@pytest.mark.unit
class TestRetention:

    async def test_finished_batch_expires(self, tracker, fake_clock):
        done = await tracker.create(1)
        await tracker.complete(done)
        failed = await tracker.create(1)
        await tracker.error(failed, "boom")
        running = await tracker.create(1)
        await tracker.start(running)

        fake_clock.now += 30
        assert await tracker.get(done) is not None

        fake_clock.now += 31
        assert await tracker.get(done) is None
        assert await tracker.get(failed) is None
        assert (await tracker.get(running))["status"] == "running"

    async def test_oldest_finished_beyond_cap_are_dropped(self, tracker, fake_clock):
        batch_ids = []
        for _ in range(5):
            batch_id = await tracker.create(1)
            await tracker.complete(batch_id)
            batch_ids.append(batch_id)
            fake_clock.now += 1

        await tracker.create(1)

        assert [await tracker.get(b) is not None for b in batch_ids] == [False, False, True, True, True]

    async def test_sequential_runs_stay_bounded(self, tracker, fake_clock):
        runner = BatchActionRunner(
            AsyncMock(),
            AsyncMock(),
            tracker=tracker,
            delay_seconds=0,
            pacer=UpstreamPacer(clock=fake_clock, sleep=fake_clock.sleep),
        )

        for i in range(50):
            await runner.run([{"id": i, "action": "send"}])

        # the cap is applied when the next batch registers
        assert len(tracker._progress) <= tracker.max_finished + 1
