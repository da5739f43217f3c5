import asyncio


class HealthGauge:
    """
    Tracks recent unexpected errors to answer readiness probes.

    Each error outside regular flow control (a failed sync cycle, an unhandled
    handler exception) increments the counter, and a background task decrements it
    periodically. A burst of errors pushes the value over the threshold and the
    readiness check fails until it drains.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
