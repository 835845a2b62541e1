import pytest

from lovesync.services.scheduling import PeriodicTimer, RetryPolicy
from conftest import FakeClock


def test_fixed_delay_policy():
    policy = RetryPolicy(max_attempts=3, base_delay=3.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [3.0, 3.0, 3.0]
    assert policy.allows(3)
    assert not policy.allows(4)


def test_exponential_policy_is_capped():
    policy = RetryPolicy(max_attempts=None, base_delay=3.0, max_delay=300.0, multiplier=2.0)
    assert policy.delay_for(1) == 3.0
    assert policy.delay_for(3) == 12.0
    assert policy.delay_for(20) == 300.0
    assert policy.allows(1000)


@pytest.mark.asyncio
async def test_periodic_timer_ticks_on_the_clock():
    clock = FakeClock()
    ticks = []

    async def tick():
        ticks.append(clock.now())

    timer = PeriodicTimer(300, tick, clock)
    timer.start()
    timer.start()
    await clock.advance(299)
    assert ticks == []
    await clock.advance(601)
    assert len(ticks) == 3
    timer.stop()
    timer.stop()
    assert not timer.running
    await clock.advance(900)
    assert len(ticks) == 3


@pytest.mark.asyncio
async def test_failing_tick_keeps_timer_running():
    clock = FakeClock()
    calls = []

    async def tick():
        calls.append(1)
        raise RuntimeError("sync exploded")

    timer = PeriodicTimer(10, tick, clock)
    timer.start()
    await clock.advance(30)
    assert len(calls) == 3
    assert timer.running
    timer.stop()
