import asyncio

import pytest

from feed_queue import SingleFlightQueue


@pytest.mark.asyncio
async def test_same_key_tasks_run_in_submission_order_without_overlap():
    queue = SingleFlightQueue(concurrency=4)
    events = []
    running = {"count": 0, "max": 0}

    def make_task(n):
        async def task():
            running["count"] += 1
            running["max"] = max(running["max"], running["count"])
            events.append(("start", n))
            await asyncio.sleep(0.01)
            events.append(("end", n))
            running["count"] -= 1
            return n
        return task

    futures = [queue.submit("tt0944947", make_task(n)) for n in range(5)]
    results = await asyncio.gather(*futures)

    assert results == [0, 1, 2, 3, 4]
    assert running["max"] == 1
    # Each task ends before the next one starts
    assert events == [(kind, n) for n in range(5) for kind in ("start", "end")]


@pytest.mark.asyncio
async def test_distinct_keys_run_concurrently_up_to_the_limit():
    queue = SingleFlightQueue(concurrency=2)
    running = {"count": 0, "max": 0}

    async def task():
        running["count"] += 1
        running["max"] = max(running["max"], running["count"])
        await asyncio.sleep(0.01)
        running["count"] -= 1

    futures = [queue.submit(f"tt{n}", task) for n in range(6)]
    await asyncio.gather(*futures)

    assert running["max"] == 2


@pytest.mark.asyncio
async def test_repeated_submissions_are_not_coalesced():
    queue = SingleFlightQueue(concurrency=1)
    calls = []

    async def task():
        calls.append(1)
        return len(calls)

    futures = [queue.submit("same", task) for _ in range(3)]
    assert await asyncio.gather(*futures) == [1, 2, 3]
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_failure_only_reaches_its_own_caller():
    queue = SingleFlightQueue(concurrency=2)

    async def boom():
        raise RuntimeError("upstream down")

    async def ok():
        return "ok"

    failing = queue.submit("a", boom)
    after_failure = queue.submit("a", ok)
    other_key = queue.submit("b", ok)

    with pytest.raises(RuntimeError, match="upstream down"):
        await failing
    assert await after_failure == "ok"
    assert await other_key == "ok"


@pytest.mark.asyncio
async def test_join_waits_for_all_work_and_lanes_are_cleaned_up():
    queue = SingleFlightQueue(concurrency=3)
    done = []

    def make_task(n):
        async def task():
            await asyncio.sleep(0.005)
            done.append(n)
        return task

    for n in range(4):
        queue.submit(f"k{n % 2}", make_task(n))
    assert queue.pending_count > 0

    await queue.join()

    assert sorted(done) == [0, 1, 2, 3]
    assert queue.active_keys == []
    assert queue.pending_count == 0


@pytest.mark.asyncio
async def test_close_cancels_queued_work():
    queue = SingleFlightQueue(concurrency=1)
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    first = queue.submit("a", slow)
    second = queue.submit("a", slow)
    await started.wait()
    await queue.close()

    assert first.cancelled()
    assert second.cancelled()
    with pytest.raises(RuntimeError):
        queue.submit("a", slow)


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        SingleFlightQueue(concurrency=0)


@pytest.mark.asyncio
async def test_submissions_waiting_for_a_slot_count_as_pending():
    queue = SingleFlightQueue(concurrency=1)
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocker():
        started.set()
        await release.wait()

    async def quick():
        return "done"

    first = queue.submit("a", blocker)
    second = queue.submit("b", quick)
    await started.wait()
    for _ in range(3):
        await asyncio.sleep(0)

    assert queue.pending_count == 1
    assert not second.done()

    release.set()
    assert await second == "done"
    await first
    assert queue.pending_count == 0
