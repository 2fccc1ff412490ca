import asyncio
import logging

import pytest

from slack_thread_relay.watchdog import InactivityWatchdog


class Recorder:
    def __init__(self, fail: bool = False):
        self.fired = []
        self.fail = fail

    async def __call__(self, job_id, context):
        self.fired.append((job_id, context))
        if self.fail:
            raise RuntimeError("callback exploded")


@pytest.mark.asyncio
async def test_fires_once_with_context():
    recorder = Recorder()
    watchdog = InactivityWatchdog(recorder, default_delay_ms=10)

    watchdog.arm("j1", context={"channel": "C1"})
    await asyncio.sleep(0.08)

    assert recorder.fired == [("j1", {"channel": "C1"})]
    assert watchdog.was_notified("j1") is True
    assert watchdog.pending("j1") is False


@pytest.mark.asyncio
async def test_rearming_replaces_previous_timer():
    recorder = Recorder()
    watchdog = InactivityWatchdog(recorder, default_delay_ms=1000)

    first = watchdog.arm("j1", 30)
    second = watchdog.arm("j1", 30)
    await asyncio.sleep(0.1)

    assert first.task.cancelled()
    assert second.task.done()
    assert len(recorder.fired) == 1


@pytest.mark.asyncio
async def test_cancel_prevents_firing():
    recorder = Recorder()
    watchdog = InactivityWatchdog(recorder, default_delay_ms=20)

    watchdog.arm("j1")
    assert watchdog.cancel("j1") is True
    assert watchdog.cancel("j1") is False
    await asyncio.sleep(0.06)

    assert recorder.fired == []


@pytest.mark.asyncio
async def test_non_positive_delay_uses_default():
    watchdog = InactivityWatchdog(Recorder(), default_delay_ms=1234)

    entry = watchdog.arm("j1", 0)

    assert entry.delay_ms == 1234
    assert watchdog.default_delay_ms == 1234
    watchdog.cancel_all()


@pytest.mark.asyncio
async def test_timers_are_independent_per_job():
    recorder = Recorder()
    watchdog = InactivityWatchdog(recorder, default_delay_ms=20)

    watchdog.arm("a")
    watchdog.arm("b")
    watchdog.cancel("a")
    await asyncio.sleep(0.08)

    assert [job_id for job_id, _ in recorder.fired] == ["b"]


@pytest.mark.asyncio
async def test_callback_errors_are_logged(caplog):
    recorder = Recorder(fail=True)
    watchdog = InactivityWatchdog(
        recorder, default_delay_ms=10, logger=logging.getLogger("watchdog-test")
    )

    with caplog.at_level(logging.WARNING):
        watchdog.arm("j1")
        await asyncio.sleep(0.06)

    assert len(recorder.fired) == 1
    assert any("watchdog.callback.failed" in r.getMessage() for r in caplog.records)
