"""Tests for retry policy backoff logic."""

import pytest

from multichat.chat.adapters.base import ConnectionLost
from multichat.core.models import (
    DEFAULT_RETRY_POLICIES,
    AdapterState,
    Platform,
    RetryPolicy,
    default_retry_policy,
)

from fakes import FakeAdapter, fast_policy, wait_for_state, wait_until


def test_first_delay_is_base_delay():
    policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=60.0)
    assert policy.base_delay_for(0) == 1.0


def test_delays_strictly_increase_until_ceiling():
    policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=60.0)
    delays = [policy.base_delay_for(n) for n in range(12)]
    capped = delays.index(60.0)
    for earlier, later in zip(delays[:capped], delays[1 : capped + 1]):
        assert later > earlier
    assert all(d == 60.0 for d in delays[capped:])


def test_backoff_sequence():
    policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=10.0)
    assert [policy.base_delay_for(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_huge_failure_count_stays_at_ceiling():
    policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=60.0)
    assert policy.base_delay_for(100000) == 60.0


def test_negative_failures_treated_as_zero():
    policy = RetryPolicy(base_delay=3.0)
    assert policy.base_delay_for(-4) == 3.0


@pytest.mark.parametrize("rand", [0.0, 0.1, 0.5, 0.9, 0.999999])
def test_jitter_within_thirty_percent(rand):
    policy = RetryPolicy(jitter=0.3, max_delay=100.0)
    delay = policy.apply_jitter(10.0, rand)
    assert 7.0 <= delay <= 13.0


def test_jitter_midpoint_is_unchanged():
    policy = RetryPolicy(jitter=0.3)
    assert policy.apply_jitter(10.0, 0.5) == 10.0


def test_jitter_never_exceeds_ceiling():
    policy = RetryPolicy(jitter=0.3, max_delay=60.0)
    assert policy.apply_jitter(60.0, 0.999999) <= 60.0


def test_default_policies_cover_every_platform():
    assert set(DEFAULT_RETRY_POLICIES) == set(Platform)


def test_default_retry_policy_is_a_copy():
    policy = default_retry_policy(Platform.TWITCH)
    policy.base_delay = 999.0
    assert DEFAULT_RETRY_POLICIES[Platform.TWITCH].base_delay != 999.0


def test_youtube_backs_off_harder_than_twitch():
    twitch = DEFAULT_RETRY_POLICIES[Platform.TWITCH]
    youtube = DEFAULT_RETRY_POLICIES[Platform.YOUTUBE]
    assert youtube.base_delay > twitch.base_delay
    assert youtube.max_delay >= twitch.max_delay


# --- adapter backoff ---


def test_adapter_next_backoff_grows_and_caps():
    adapter = FakeAdapter(
        policy=RetryPolicy(base_delay=1.0, factor=2.0, max_delay=8.0, jitter=0.3),
        rand=lambda: 0.5,
    )
    delays = []
    for failures in range(1, 7):
        adapter._failures = failures
        delays.append(adapter._next_backoff())
    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]


def test_adapter_jitter_uses_random_source():
    adapter = FakeAdapter(
        policy=RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=0.3),
        rand=lambda: 0.0,
    )
    adapter._failures = 1
    assert adapter._next_backoff() == pytest.approx(7.0)


@pytest.mark.asyncio
async def test_adapter_gives_up_after_max_failures():
    adapter = FakeAdapter(
        outcomes=[ConnectionLost("refused")] * 5,
        policy=fast_policy(max_failures=2),
    )
    assert await adapter.start() is False
    await wait_until(lambda: "Giving up" in (adapter.get_status().message or ""))
    assert adapter.attempts == 3
    assert not adapter.retry_pending
    assert "Giving up after 3 consecutive failures" in adapter.get_status().message


@pytest.mark.asyncio
async def test_successful_connect_resets_failures():
    adapter = FakeAdapter(outcomes=[ConnectionLost("a"), ConnectionLost("b"), None])
    await adapter.start()
    await wait_for_state(adapter, AdapterState.CONNECTED)
    assert adapter.consecutive_failures == 0
    await adapter.stop()
