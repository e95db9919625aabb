import asyncio

import pytest

from collabboard.client.singleflight import SingleFlight


class TestSingleFlight:
    async def test_concurrent_callers_share_one_call(self):
        flight = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return "token"

        results = await asyncio.gather(*(flight.run(work) for _ in range(8)))

        assert calls == 1
        assert results == ["token"] * 8
        assert not flight.in_flight

    async def test_failure_reaches_every_waiter(self):
        flight = SingleFlight()

        async def work():
            await asyncio.sleep(0.01)
            raise RuntimeError("refresh failed")

        results = await asyncio.gather(
            *(flight.run(work) for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)

    async def test_next_call_after_settling_starts_fresh(self):
        flight = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            return calls

        assert await flight.run(work) == 1
        assert await flight.run(work) == 2

    async def test_cancelled_waiter_does_not_cancel_shared_work(self):
        flight = SingleFlight()
        finished = asyncio.Event()

        async def work():
            await asyncio.sleep(0.02)
            finished.set()
            return "done"

        impatient = asyncio.ensure_future(flight.run(work))
        patient = asyncio.ensure_future(flight.run(work))
        await asyncio.sleep(0)
        impatient.cancel()

        assert await patient == "done"
        assert finished.is_set()
        with pytest.raises(asyncio.CancelledError):
            await impatient
