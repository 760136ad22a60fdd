from unittest.mock import AsyncMock

import pytest

from gastozap.core.runtime import RateLimit
from gastozap.utils.usage_meter import Metric, UsageMeter


def _meter(store, make_config_source, **limits):
    rate_limits = {name: RateLimit(rpm=rpm, tpm=tpm) for name, (rpm, tpm) in limits.items()}
    return UsageMeter(store, make_config_source(rate_limits=rate_limits))


@pytest.mark.asyncio
async def test_zero_limit_means_unlimited(store, make_config_source):
    meter = _meter(store, make_config_source, mock=(0, 0))
    for _ in range(100):
        await meter.record_usage("mock", Metric.REQUESTS, 1)
    assert await meter.check_limit("mock", Metric.REQUESTS, 1) is True
    assert await meter.allows("mock", 10_000) is True


@pytest.mark.asyncio
async def test_unknown_provider_is_unmetered(store, make_config_source):
    meter = _meter(store, make_config_source)
    assert await meter.check_limit("someone-else", Metric.TOKENS, 1_000_000) is True


@pytest.mark.asyncio
async def test_requests_cap_blocks_once_reached(store, make_config_source, frozen_clock):
    meter = _meter(store, make_config_source, groq=(2, 0))
    assert await meter.check_limit("groq", Metric.REQUESTS) is True
    await meter.record_usage("groq", Metric.REQUESTS, 1)
    await meter.record_usage("groq", Metric.REQUESTS, 1)
    assert await meter.check_limit("groq", Metric.REQUESTS) is False


@pytest.mark.asyncio
async def test_tokens_cap_counts_the_estimate(store, make_config_source, frozen_clock):
    meter = _meter(store, make_config_source, openai=(0, 1000))
    await meter.record_usage("openai", Metric.TOKENS, 600)
    assert await meter.check_limit("openai", Metric.TOKENS, 400) is True
    assert await meter.check_limit("openai", Metric.TOKENS, 401) is False
    assert await meter.allows("openai", 500) is False


@pytest.mark.asyncio
async def test_counters_reset_in_the_next_minute(store, make_config_source, frozen_clock):
    meter = _meter(store, make_config_source, gemini=(1, 0))
    await meter.record_usage("gemini", Metric.REQUESTS, 1)
    assert await meter.check_limit("gemini", Metric.REQUESTS) is False

    frozen_clock["now"] += 60
    assert await meter.check_limit("gemini", Metric.REQUESTS) is True


@pytest.mark.asyncio
async def test_storage_failure_fails_open(make_config_source):
    broken = AsyncMock()
    broken.get.side_effect = ConnectionError("down")
    broken.incr_expire.side_effect = ConnectionError("down")
    meter = UsageMeter(broken, make_config_source(rate_limits={"groq": RateLimit(rpm=1, tpm=1)}))

    assert await meter.check_limit("groq", Metric.REQUESTS, 5) is True
    await meter.record_usage("groq", Metric.REQUESTS, 1)


@pytest.mark.asyncio
async def test_current_usage_and_reset(store, make_config_source, frozen_clock):
    meter = _meter(store, make_config_source, groq=(30, 15000), openai=(500, 90000))
    await meter.record_usage("groq", Metric.REQUESTS, 2)
    await meter.record_usage("groq", Metric.TOKENS, 700)
    await meter.record_usage("openai", Metric.REQUESTS, 1)

    usage = await meter.current_usage("groq")
    assert usage["requests"] == 2
    assert usage["tokens"] == 700
    assert usage["limits"] == {"rpm": 30, "tpm": 15000}
    assert usage["reset_at"].timestamp() > frozen_clock["now"]

    everything = await meter.all_usage()
    assert set(everything) == {"groq", "openai"}

    assert await meter.reset("groq") == 2
    assert (await meter.current_usage("groq"))["requests"] == 0
    assert (await meter.current_usage("openai"))["requests"] == 1


@pytest.mark.asyncio
async def test_wait_for_reset_sleeps_until_the_next_window(store, make_config_source, frozen_clock, monkeypatch):
    meter = _meter(store, make_config_source, groq=(1, 0))
    await meter.record_usage("groq", Metric.REQUESTS, 1)
    assert await meter.check_limit("groq", Metric.REQUESTS) is False

    async def fake_sleep(seconds):
        frozen_clock["now"] += seconds

    sleep = AsyncMock(side_effect=fake_sleep)
    monkeypatch.setattr("gastozap.utils.usage_meter.asyncio.sleep", sleep)

    await meter.wait_for_reset()

    # 1_700_000_000 sits 20s into its minute.
    sleep.assert_awaited_once_with(40.0)
    assert await meter.check_limit("groq", Metric.REQUESTS) is True
