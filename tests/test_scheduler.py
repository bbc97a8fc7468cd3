import asyncio

from oemcatalog.scheduler import CrawlScheduler, IntervalGate, TaskStatus


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def _scheduler(max_workers=3):
    return CrawlScheduler(max_workers=max_workers, request_interval_sec=0, progress=False)


def test_one_failing_task_does_not_stop_siblings():
    urls = [f"https://x/p/{i}" for i in range(6)]
    done = []

    async def task_fn(url):
        await asyncio.sleep(0)
        if url.endswith("/3"):
            raise RuntimeError("boom")
        done.append(url)
        return url.upper()

    tasks = asyncio.run(_scheduler().run(urls, task_fn))

    assert sorted(done) == sorted(u for u in urls if not u.endswith("/3"))
    assert all(t.terminal for t in tasks)
    failed = [t for t in tasks if t.status == TaskStatus.FAILED]
    assert [t.url for t in failed] == ["https://x/p/3"]
    assert isinstance(failed[0].error, RuntimeError)
    ok = [t for t in tasks if t.status == TaskStatus.SUCCEEDED]
    assert all(t.result == t.url.upper() for t in ok)


def test_concurrency_is_bounded_by_max_workers():
    in_flight = 0
    peak = 0

    async def task_fn(url):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    tasks = asyncio.run(_scheduler(max_workers=2).run([f"u{i}" for i in range(8)], task_fn))

    assert peak == 2
    assert all(t.status == TaskStatus.SUCCEEDED for t in tasks)


def test_duplicate_urls_run_twice():
    seen = []

    async def task_fn(url):
        seen.append(url)

    asyncio.run(_scheduler().run(["a", "a", "b"], task_fn))

    assert sorted(seen) == ["a", "a", "b"]


def test_stop_leaves_unstarted_tasks_pending():
    scheduler = _scheduler(max_workers=1)

    async def task_fn(url):
        if url == "u1":
            scheduler.stop()
        await asyncio.sleep(0)

    tasks = asyncio.run(scheduler.run(["u0", "u1", "u2", "u3"], task_fn))

    statuses = [t.status for t in tasks]
    assert statuses[:2] == [TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED]
    assert statuses[2:] == [TaskStatus.PENDING, TaskStatus.PENDING]
    assert scheduler.stopping


def test_empty_url_list():
    async def task_fn(url):
        raise AssertionError("should not run")

    assert asyncio.run(_scheduler().run([], task_fn)) == []


def test_interval_gate_spaces_request_starts():
    clock = FakeClock()
    gate = IntervalGate(1.0, clock=clock, sleep=clock.sleep)

    async def go():
        await gate.wait()
        await gate.wait()
        await gate.wait()
        clock.now += 5.0
        await gate.wait()

    asyncio.run(go())

    assert clock.sleeps == [1.0, 1.0]
    assert gate.starts == 4


def test_interval_gate_is_global_across_workers():
    clock = FakeClock()
    gate = IntervalGate(0.5, clock=clock, sleep=clock.sleep)
    starts = []

    async def task_fn(url):
        await gate.wait()
        starts.append(clock())

    scheduler = CrawlScheduler(max_workers=4, gate=gate, progress=False)
    asyncio.run(scheduler.run([f"u{i}" for i in range(4)], task_fn))

    starts.sort()
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert gaps == [0.5, 0.5, 0.5]
