from datetime import timedelta

import pytest
from sqlalchemy import select

from mysterybox_api.models import BoxSweepRun, BoxTransactionStatus
from mysterybox_api.observability.boxes import get_box_store
from mysterybox_api.services.boxes.lifecycle import BoxLifecycleService
from mysterybox_api.services.boxes.sweeper import sweep_expired_boxes
from mysterybox_api.workers.box_expiry import BoxExpiryWorker


@pytest.mark.asyncio
async def test_sweep_expires_only_overdue_purchased_boxes(world, fixed_now) -> None:
    overdue = await world.add_box(expires_at=fixed_now - timedelta(hours=1))
    due_now = await world.add_box(expires_at=fixed_now)
    fresh = await world.add_box(expires_at=fixed_now + timedelta(hours=1))
    opened = await world.add_box(
        expires_at=fixed_now - timedelta(days=1), status=BoxTransactionStatus.OPENED
    )

    async with world.session_factory() as session:
        summary = await sweep_expired_boxes(session, now=fixed_now, batch_size=1)

    assert summary.as_dict() == {"scanned": 2, "expired": 2, "failed": 0}
    assert (await world.get_box(overdue)).status == BoxTransactionStatus.EXPIRED
    assert (await world.get_box(due_now)).status == BoxTransactionStatus.EXPIRED
    assert (await world.get_box(fresh)).status == BoxTransactionStatus.PURCHASED
    assert (await world.get_box(opened)).status == BoxTransactionStatus.OPENED


@pytest.mark.asyncio
async def test_sweep_is_idempotent(world, fixed_now) -> None:
    await world.add_box(expires_at=fixed_now - timedelta(minutes=5))

    async with world.session_factory() as session:
        first = await sweep_expired_boxes(session, now=fixed_now)
    async with world.session_factory() as session:
        second = await sweep_expired_boxes(session, now=fixed_now)

    assert first.expired == 1
    assert second.as_dict() == {"scanned": 0, "expired": 0, "failed": 0}
    assert get_box_store().snapshot().sweeps == {"runs": 2, "expired": 1, "failed": 0}


@pytest.mark.asyncio
async def test_failing_row_does_not_block_the_rest(world, fixed_now, monkeypatch) -> None:
    stuck = await world.add_box(expires_at=fixed_now - timedelta(hours=2))
    overdue = await world.add_box(expires_at=fixed_now - timedelta(hours=1))
    expire_box = BoxLifecycleService.expire_box

    async def expire_unless_stuck(self, transaction_id, *, now=None):
        if transaction_id == stuck:
            raise RuntimeError("row unavailable")
        return await expire_box(self, transaction_id, now=now)

    monkeypatch.setattr(BoxLifecycleService, "expire_box", expire_unless_stuck)

    async with world.session_factory() as session:
        summary = await sweep_expired_boxes(session, now=fixed_now, batch_size=1)

    assert summary.as_dict() == {"scanned": 2, "expired": 1, "failed": 1}
    assert (await world.get_box(stuck)).status == BoxTransactionStatus.PURCHASED
    assert (await world.get_box(overdue)).status == BoxTransactionStatus.EXPIRED
    assert get_box_store().snapshot().sweeps == {"runs": 1, "expired": 1, "failed": 1}


@pytest.mark.asyncio
async def test_due_expirations_page_by_expiry_then_id(world, fixed_now) -> None:
    tie = fixed_now - timedelta(hours=3)
    ids = [await world.add_box(expires_at=tie) for _ in range(3)]
    ids.append(await world.add_box(expires_at=fixed_now - timedelta(hours=1)))
    ids.append(await world.add_box(expires_at=fixed_now))
    await world.add_box(expires_at=fixed_now + timedelta(seconds=1))

    pages: list[list] = []
    cursor = None
    async with world.session_factory() as session:
        service = BoxLifecycleService(session)
        while True:
            page = await service.list_due_expirations(now=fixed_now, limit=2, after=cursor)
            if not page:
                break
            pages.append([transaction_id for transaction_id, _ in page])
            last_id, last_expires_at = page[-1]
            cursor = (last_expires_at, last_id)

    visited = [transaction_id for page in pages for transaction_id in page]
    assert [len(page) for page in pages] == [2, 2, 1]
    assert len(visited) == len(set(visited)) == 5
    assert sorted(visited[:3], key=str) == sorted(ids[:3], key=str)
    assert visited[3:] == ids[3:]


@pytest.mark.asyncio
async def test_sweep_scans_each_due_box_once_across_pages(world, fixed_now, monkeypatch) -> None:
    tie = fixed_now - timedelta(days=1)
    due = [await world.add_box(expires_at=tie) for _ in range(4)]
    due.append(await world.add_box(expires_at=fixed_now - timedelta(minutes=1)))
    stuck = due[1]
    expire_box = BoxLifecycleService.expire_box
    attempted: list = []

    async def expire_unless_stuck(self, transaction_id, *, now=None):
        attempted.append(transaction_id)
        if transaction_id == stuck:
            raise RuntimeError("row unavailable")
        return await expire_box(self, transaction_id, now=now)

    monkeypatch.setattr(BoxLifecycleService, "expire_box", expire_unless_stuck)

    async with world.session_factory() as session:
        summary = await sweep_expired_boxes(session, now=fixed_now, batch_size=2)

    assert summary.as_dict() == {"scanned": 5, "expired": 4, "failed": 1}
    assert sorted(attempted, key=str) == sorted(due, key=str)
    assert (await world.get_box(stuck)).status == BoxTransactionStatus.PURCHASED


@pytest.mark.asyncio
async def test_worker_records_sweep_run(world, fixed_now) -> None:
    await world.add_box(expires_at=fixed_now - timedelta(minutes=5))
    await world.add_box(expires_at=fixed_now + timedelta(days=3))
    worker = BoxExpiryWorker(world.session_factory, batch_size=10)

    summary = await worker.run_once(triggered_by="test", now=fixed_now)

    assert summary == {"scanned": 1, "expired": 1, "failed": 0}
    async with world.session_factory() as session:
        run = (await session.execute(select(BoxSweepRun))).scalar_one()
    assert run.triggered_by == "test"
    assert run.status == "completed"
    assert (run.scanned_count, run.expired_count, run.failed_count) == (1, 1, 0)
    assert run.completed_at is not None
    assert run.metadata_json["batch_size"] == 10
    assert run.metadata_json["triggered_by"] == "test"


@pytest.mark.asyncio
async def test_worker_start_stop(world) -> None:
    worker = BoxExpiryWorker(world.session_factory, interval_seconds=3600)

    worker.start()
    assert worker.is_running
    await worker.stop()

    assert not worker.is_running
    async with world.session_factory() as session:
        runs = (await session.execute(select(BoxSweepRun))).scalars().all()
    assert all(run.status == "completed" for run in runs)
