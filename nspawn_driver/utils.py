"""Helpers for serializing concurrent operations on the same key."""

__all__ = [
    'SingleFlight',
]

import logging
import threading
from concurrent import futures

LOG = logging.getLogger(__name__)


class SingleFlight:
    """Allow at most one operation in flight per key.

    Callers of the same operation (identified by a tag) on a key that is
    in flight do not run it again; they wait for and share the outcome
    of the one in flight.  Callers of a different operation wait for the
    one in flight to land, and then run theirs.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._flights = {}

    def __contains__(self, key):
        with self._lock:
            return key in self._flights

    def call(self, key, tag, func, *args, **kwargs):
        while True:
            with self._lock:
                flight = self._flights.get(key)
                if flight is None:
                    future = futures.Future()
                    self._flights[key] = (tag, future)
                    break
            other_tag, other_future = flight
            if other_tag == tag:
                LOG.debug('join in-flight %s: %s', tag, key)
                return other_future.result()
            LOG.debug('wait for in-flight %s: %s', other_tag, key)
            futures.wait([other_future])
        try:
            result = func(*args, **kwargs)
        except BaseException as exc:
            self._land(key)
            future.set_exception(exc)
            raise
        self._land(key)
        future.set_result(result)
        return result

    def _land(self, key):
        with self._lock:
            self._flights.pop(key)
