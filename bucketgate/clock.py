import time
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current time in epoch milliseconds"""

    def millis(self) -> int:
        ...


class SystemClock:
    """Wall clock backed by time.time_ns()"""

    def millis(self) -> int:
        return time.time_ns() // 1_000_000

    def __repr__(self):
        return "SystemClock()"


class FixedClock:
    """Clock that always reports the same instant"""

    def __init__(self, millis: int):
        self._millis = int(millis)

    @classmethod
    def now(cls) -> "FixedClock":
        return cls(SystemClock().millis())

    def millis(self) -> int:
        return self._millis

    def __repr__(self):
        return f"FixedClock({self._millis})"


class OffsetClock:
    """Clock reporting another clock's time shifted by a fixed amount"""

    def __init__(self, base: Clock, offset_millis: int):
        self.base = base
        self.offset_millis = int(offset_millis)

    def millis(self) -> int:
        return self.base.millis() + self.offset_millis

    def __repr__(self):
        return f"OffsetClock({self.base!r}, {self.offset_millis:+d}ms)"


def offset(clock: Clock, millis: int = 0, seconds: int = 0) -> OffsetClock:
    """
    Return a clock running ``millis`` + ``seconds`` ahead of ``clock``.

    Handy for simulating elapsed time against a FixedClock:

        limiter.set_clock(offset(limiter.get_clock(), seconds=1))
    """
    return OffsetClock(clock, millis + seconds * 1000)
