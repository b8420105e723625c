import asyncio

import pytest

from chatstore.utils.debounce import Debouncer


def _recorder():
    calls = []

    async def action():
        calls.append(len(calls) + 1)

    return calls, action


@pytest.mark.asyncio
async def test_repeated_schedules_coalesce_into_one_run():
    calls, action = _recorder()
    debouncer = Debouncer(0.05)

    for _ in range(5):
        await debouncer.schedule("index", action)
    assert debouncer.pending("index")
    assert calls == []

    await asyncio.sleep(0.2)

    assert calls == [1]
    assert not debouncer.pending("index")


@pytest.mark.asyncio
async def test_flush_runs_pending_action_immediately():
    calls, action = _recorder()
    debouncer = Debouncer(10.0)

    await debouncer.schedule("index", action)
    await debouncer.flush("index")

    assert calls == [1]
    assert not debouncer.pending("index")

    # nothing pending; flush is a no-op
    await debouncer.flush("index")
    assert calls == [1]


@pytest.mark.asyncio
async def test_zero_delay_runs_inline():
    calls, action = _recorder()
    debouncer = Debouncer(0.0)

    await debouncer.schedule("index", action)

    assert calls == [1]
    assert not debouncer.pending("index")


@pytest.mark.asyncio
async def test_cancel_all_drops_pending_actions():
    calls, action = _recorder()
    debouncer = Debouncer(10.0)

    await debouncer.schedule("a", action)
    await debouncer.schedule("b", action)
    debouncer.cancel_all()
    await asyncio.sleep(0)

    assert not debouncer.pending("a")
    assert not debouncer.pending("b")
    await debouncer.flush_all()
    assert calls == []


@pytest.mark.asyncio
async def test_failing_background_action_is_logged_not_raised():
    debouncer = Debouncer(0.01)

    async def broken():
        raise RuntimeError("boom")

    await debouncer.schedule("index", broken)
    await asyncio.sleep(0.1)

    assert not debouncer.pending("index")
