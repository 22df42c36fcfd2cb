"""Tests for the retention sweeper."""

from __future__ import annotations

import asyncio

import pytest

from relaydrop.server.sweeper import RetentionSweeper


async def _ready_archive(engine, payload=b"data", days=3):
    result = await engine.initialize("a.zip", len(payload), 1, expiration_days=days)
    tid = result.transfer.id
    await engine.ingest_chunk(tid, 0, payload)
    await engine.finalize(tid)
    return tid


class TestSweep:
    @pytest.mark.asyncio
    async def test_purges_expired_only(self, engine, clock, uploads_dir, store):
        short = await _ready_archive(engine, days=3)
        long_lived = await _ready_archive(engine, days=7)

        clock.advance(days=4)
        removed = await RetentionSweeper(engine).sweep()

        assert removed == 1
        assert await store.get_transfer(short) is None
        assert not (uploads_dir / f"{short}.zip").exists()
        assert await store.get_transfer(long_lived) is not None
        assert (uploads_dir / f"{long_lived}.zip").exists()

    @pytest.mark.asyncio
    async def test_purges_expired_in_progress_transfer(self, engine, clock, uploads_dir, store):
        result = await engine.initialize("a.zip", 10, 2)
        tid = result.transfer.id
        await engine.ingest_chunk(tid, 0, b"12345")

        clock.advance(days=3, seconds=1)
        assert await RetentionSweeper(engine).sweep() == 1
        assert await store.get_transfer(tid) is None
        assert not (uploads_dir / f"{tid}_chunks").exists()

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, engine):
        await _ready_archive(engine)
        assert await RetentionSweeper(engine).sweep() == 0

    @pytest.mark.asyncio
    async def test_removes_orphaned_landing_areas(self, engine, uploads_dir):
        (uploads_dir / "ghost_chunks").mkdir()
        (uploads_dir / "ghost_chunks" / "chunk_000000").write_bytes(b"x")
        (uploads_dir / "phantom_files").mkdir()

        assert await RetentionSweeper(engine).sweep() == 2
        assert not (uploads_dir / "ghost_chunks").exists()
        assert not (uploads_dir / "phantom_files").exists()

    @pytest.mark.asyncio
    async def test_keeps_active_landing_areas(self, engine, uploads_dir):
        result = await engine.initialize("a.zip", 10, 2)
        tid = result.transfer.id
        await engine.ingest_chunk(tid, 0, b"12345")

        assert await RetentionSweeper(engine).sweep() == 0
        assert (uploads_dir / f"{tid}_chunks" / "chunk_000000").exists()

    @pytest.mark.asyncio
    async def test_failure_on_one_transfer_continues(self, engine, clock, store, monkeypatch):
        first = await _ready_archive(engine)
        second = await _ready_archive(engine)
        clock.advance(days=4)

        sweeper = RetentionSweeper(engine)
        real_purge = sweeper.purge

        async def flaky_purge(transfer_id: str) -> None:
            if transfer_id == first:
                raise RuntimeError("disk on fire")
            await real_purge(transfer_id)

        monkeypatch.setattr(sweeper, "purge", flaky_purge)
        assert await sweeper.sweep() == 1
        assert await store.get_transfer(first) is not None
        assert await store.get_transfer(second) is None

    @pytest.mark.asyncio
    async def test_transfer_deleted_concurrently_is_skipped(self, engine, clock, monkeypatch):
        tid = await _ready_archive(engine)
        clock.advance(days=4)

        sweeper = RetentionSweeper(engine)
        listed = await sweeper.list_expired()
        await engine.delete(tid)

        async def stale_listing():
            return listed

        monkeypatch.setattr(sweeper, "list_expired", stale_listing)
        assert await sweeper.sweep() == 0


class TestRunPeriodically:
    @pytest.mark.asyncio
    async def test_sweeps_immediately_and_stops_on_cancel(self, engine, clock, store):
        tid = await _ready_archive(engine)
        clock.advance(days=4)

        task = asyncio.create_task(RetentionSweeper(engine).run_periodically(interval=3600))
        for _ in range(100):
            if await store.get_transfer(tid) is None:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await store.get_transfer(tid) is None

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_schedule(self, engine, monkeypatch):
        sweeper = RetentionSweeper(engine)
        calls = 0

        async def failing_sweep() -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        monkeypatch.setattr(sweeper, "sweep", failing_sweep)
        task = asyncio.create_task(sweeper.run_periodically(interval=0.01))
        for _ in range(100):
            if calls >= 3:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls >= 3
