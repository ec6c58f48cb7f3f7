import logging

import pytest

from stepwright.errors import PersistenceError
from stepwright.events import LoggingEventEmitter, RecordingEventEmitter, notify
from stepwright.utils.retry import call_with_retry, compute_backoff


def test_compute_backoff_grows_exponentially():
    assert compute_backoff(1, base=2, jitter=0) == 2
    assert compute_backoff(3, base=2, jitter=0) == 8
    assert 4 <= compute_backoff(2, base=2, jitter=0.5) <= 4.5


@pytest.mark.asyncio
async def test_call_with_retry_retries_then_succeeds():
    attempts = []

    async def flaky(value):
        attempts.append(value)
        if len(attempts) < 3:
            raise PersistenceError("busy")
        return value

    result = await call_with_retry(
        flaky, "ok", retries=2, retry_on=(PersistenceError,), base=0, jitter=0
    )
    assert result == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_call_with_retry_reraises_after_last_attempt():
    async def broken():
        raise PersistenceError("disk full")

    with pytest.raises(PersistenceError):
        await call_with_retry(broken, retries=1, retry_on=(PersistenceError,), base=0, jitter=0)


@pytest.mark.asyncio
async def test_call_with_retry_does_not_retry_other_errors():
    calls = []

    async def wrong():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await call_with_retry(wrong, retries=3, retry_on=(PersistenceError,))
    assert calls == [1]


def test_notify_tolerates_missing_and_failing_emitters(caplog):
    class Exploding:
        def emit(self, event, **data):
            raise RuntimeError("ui went away")

    notify(None, "status", status="running")
    with caplog.at_level(logging.ERROR):
        notify(Exploding(), "status", status="running")
    assert "status" in caplog.text


def test_recording_and_logging_emitters(caplog):
    recorder = RecordingEventEmitter()
    notify(recorder, "step_started", step_index=2)
    assert recorder.names() == ["step_started"]
    assert recorder.events[0][1] == {"step_index": 2}

    with caplog.at_level(logging.INFO, logger="stepwright.events"):
        LoggingEventEmitter().emit("paused", step_index=1)
    assert "[paused] step_index=1" in caplog.text
