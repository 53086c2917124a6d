from __future__ import annotations

import asyncio
import logging

import pytest

from meshrtc.utils.tasks import cancel_task
from meshrtc.utils.tasks import spawn_background_task


@pytest.mark.asyncio()
async def test_background_task_result() -> None:
    results: list[int] = []

    async def okay_task(value: int, *, scale: int) -> None:
        results.append(value * scale)

    task = spawn_background_task(okay_task, 2, scale=3, name='okay')
    await task
    assert task.get_name() == 'okay'
    assert results == [6]


@pytest.mark.asyncio()
async def test_background_task_error_is_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def bad_task() -> None:
        raise RuntimeError('Oh no!')

    task = spawn_background_task(bad_task, name='bad')
    with pytest.raises(RuntimeError):
        await task
    # Done callbacks run on the next loop iteration
    await asyncio.sleep(0)

    assert any(
        'name="bad"' in record.message and 'Oh no!' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_cancelled_task_is_not_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)
    task = spawn_background_task(asyncio.sleep, 10)
    await cancel_task(task)
    await asyncio.sleep(0)

    assert task.cancelled()
    assert len(caplog.records) == 0


@pytest.mark.asyncio()
async def test_cancel_task_skips_done_and_current() -> None:
    await cancel_task(None)

    done = spawn_background_task(asyncio.sleep, 0)
    await done
    await cancel_task(done)
    assert not done.cancelled()

    async def cancel_self() -> None:
        await cancel_task(asyncio.current_task())

    task = spawn_background_task(cancel_self)
    await task
    assert not task.cancelled()
