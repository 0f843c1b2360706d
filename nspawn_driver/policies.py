"""Polling policy objects."""

__all__ = [
    'Deadline',
    'ExponentialBackoff',
]

import time


class ExponentialBackoff:
    """Produce poll intervals that grow exponentially up to a bound."""

    def __init__(self, initial, maximum, multiplier=2):
        if not 0 < initial <= maximum:
            raise ValueError(
                'expect 0 < initial <= maximum: %r, %r' % (initial, maximum)
            )
        if multiplier < 1:
            raise ValueError('expect multiplier >= 1: %r' % multiplier)
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier

    def __call__(self):
        delay = self.initial
        while True:
            yield delay
            delay = min(delay * self.multiplier, self.maximum)


class Deadline:

    def __init__(self, timeout, clock=time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._end = clock() + timeout

    def remaining(self):
        return max(0.0, self._end - self._clock())

    def is_expired(self):
        return self._clock() >= self._end

    def clamp(self, delay):
        """Cut delay short so that it does not go past the deadline."""
        return min(delay, self.remaining())
