"""Shared fakes for the dictator test suite."""

from typing import Callable, List


def addr(n: int) -> str:
    """Deterministic test address."""
    return "0x" + f"{n:040x}"


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.hooks: List[Callable[[], None]] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in list(self.hooks):
            hook()
