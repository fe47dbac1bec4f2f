from __future__ import annotations

import pytest

from trackpilot.utils.scheduling import StepYielder, noop_yield, sleep_yield


def test_step_yielder_cadence():
    calls = []
    yielder = StepYielder(lambda: calls.append(yielder.count), every=3)
    fired = [yielder.tick() for _ in range(7)]
    assert fired == [False, False, True, False, False, True, False]
    assert calls == [3, 6]


def test_flush_yields_and_restarts_cadence():
    calls = []
    yielder = StepYielder(lambda: calls.append("y"), every=2)
    yielder.tick()
    yielder.flush()
    assert calls == ["y"]
    assert yielder.count == 0
    assert not yielder.tick()
    assert yielder.tick()


def test_invalid_cadence_rejected():
    with pytest.raises(ValueError):
        StepYielder(noop_yield, every=0)


def test_sleep_yield_is_callable():
    sleep_yield(0.0)()
    assert noop_yield() is None
