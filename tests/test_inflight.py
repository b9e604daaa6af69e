from __future__ import annotations

import asyncio

import pytest

from backend.listings.gate import AdmissionGate
from backend.listings.inflight import InFlightCoordinator


def test_same_key_shares_one_task() -> None:
    async def scenario():
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        inflight = InFlightCoordinator()
        t1, created1 = inflight.run("k", work)
        t2, created2 = inflight.run("k", work)
        assert t1 is t2
        assert (created1, created2) == (True, False)
        assert "k" in inflight and len(inflight) == 1

        release.set()
        results = await asyncio.gather(inflight.wait(t1, 1), inflight.wait(t2, 1))
        await asyncio.sleep(0)
        return calls, results, inflight

    calls, results, inflight = asyncio.run(scenario())
    assert calls == 1
    assert results == ["done", "done"]
    assert "k" not in inflight
    assert len(inflight) == 0


def test_failed_task_is_removed_so_next_call_starts_fresh() -> None:
    async def scenario():
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("boom")
            return "ok"

        inflight = InFlightCoordinator()
        task, _ = inflight.run("k", flaky)
        with pytest.raises(RuntimeError):
            await inflight.wait(task, 1)
        await asyncio.sleep(0)
        assert "k" not in inflight

        task, created = inflight.run("k", flaky)
        assert created
        return await inflight.wait(task, 1), attempts

    result, attempts = asyncio.run(scenario())
    assert result == "ok"
    assert attempts == 2


def test_waiter_timeout_does_not_cancel_shared_task() -> None:
    async def scenario():
        async def slow():
            await asyncio.sleep(0.1)
            return "late"

        inflight = InFlightCoordinator()
        task, _ = inflight.run("k", slow)
        with pytest.raises(asyncio.TimeoutError):
            await inflight.wait(task, 0.01)
        assert not task.cancelled()
        return await task

    assert asyncio.run(scenario()) == "late"


def test_unobserved_failure_does_not_leak() -> None:
    async def scenario():
        async def bad():
            raise ValueError("nobody waits for me")

        inflight = InFlightCoordinator()
        task, _ = inflight.run("k", bad)
        await asyncio.sleep(0.01)
        return task, inflight

    task, inflight = asyncio.run(scenario())
    assert task.done()
    assert len(inflight) == 0


def test_gate_bounds_concurrency() -> None:
    async def scenario(gate: AdmissionGate):
        running = 0
        peak = 0

        async def job(host: str):
            nonlocal running, peak
            async with gate.slot(host):
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

        await asyncio.gather(*(job("centris.ca") for _ in range(4)), *(job("duproprio.com") for _ in range(4)))
        return peak, gate.active

    assert asyncio.run(scenario(AdmissionGate(limit=1))) == (1, 0)
    assert asyncio.run(scenario(AdmissionGate(limit=4))) == (4, 0)


def test_gate_per_host_limit() -> None:
    async def scenario():
        gate = AdmissionGate(limit=10, per_host_limit=2)
        running = {}
        peak = {}

        async def job(host: str):
            async with gate.slot(host):
                running[host] = running.get(host, 0) + 1
                peak[host] = max(peak.get(host, 0), running[host])
                await asyncio.sleep(0.01)
                running[host] -= 1

        await asyncio.gather(*(job(h) for h in ["a"] * 5 + ["b"] * 5))
        return peak

    assert asyncio.run(scenario()) == {"a": 2, "b": 2}
