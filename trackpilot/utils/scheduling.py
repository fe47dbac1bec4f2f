"""Cooperative yield points.

Training loops are long and run on the host's thread. Instead of spawning
workers, every loop calls a *yield point* at fixed places (between episodes,
between epochs, every N steps) so the host can render a frame, pump events or
request cancellation. Cancellation flags are only checked right after a yield.

A yield point is any zero-argument callable:

    trainer = EpisodeTrainer(agent, env, yield_point=app.pump_events)
"""

from __future__ import annotations

import time
from typing import Callable, Optional

YieldPoint = Callable[[], None]


def noop_yield() -> None:
    """Default yield point: return immediately."""


def sleep_yield(seconds: float = 0.0) -> YieldPoint:
    """Yield point that releases the GIL for `seconds` (thread hosts)."""

    def _yield() -> None:
        time.sleep(seconds)

    return _yield


class StepYielder:
    """Calls the wrapped yield point once every `every` ticks.

    Usage:
        yielder = StepYielder(yield_point, every=100)
        for step in range(max_steps):
            ...
            yielder.tick()
    """

    def __init__(self, yield_point: Optional[YieldPoint] = None, every: int = 1):
        if every < 1:
            raise ValueError(f"every must be >= 1, got {every}")
        self.yield_point = yield_point or noop_yield
        self.every = int(every)
        self._count = 0

    def tick(self) -> bool:
        """Advance one tick; returns True if the yield point was called."""
        self._count += 1
        if self._count % self.every == 0:
            self.yield_point()
            return True
        return False

    def flush(self) -> None:
        """Yield unconditionally and restart the cadence."""
        self._count = 0
        self.yield_point()

    @property
    def count(self) -> int:
        return self._count


__all__ = ["YieldPoint", "noop_yield", "sleep_yield", "StepYielder"]
