"""Broadcast task events to subscribers.

Publishing never blocks: events are handed to a dispatcher thread, which
offers each event to the subscribers that were attached at the time the
event was published (so a late subscriber never sees earlier events).
Each subscriber has a bounded buffer; when it is full, the event is
dropped for that subscriber only.
"""

__all__ = [
    'Closed',
    'Empty',
    'Eventer',
    'Subscription',
    'TaskEvent',
]

import collections
import datetime
import logging
import threading
from queue import Empty

from . import policies

LOG = logging.getLogger(__name__)

TaskEvent = collections.namedtuple(
    'TaskEvent',
    'task_id alloc_id task_name timestamp message annotations',
)


class Closed(Exception):
    """Raised by Subscription.get() when it is closed and drained."""


def make_event(task_config, message, **annotations):
    return TaskEvent(
        task_id=task_config.id,
        alloc_id=task_config.alloc_id,
        task_name=task_config.name,
        timestamp=datetime.datetime.now(datetime.timezone.utc),
        message=message,
        annotations=annotations,
    )


class Subscription:
    """Events buffered for one subscriber."""

    def __init__(self, eventer, capacity):
        if capacity <= 0:
            raise ValueError('expect positive capacity: %r' % capacity)
        self._eventer = eventer
        self._capacity = capacity
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._queue = collections.deque()
        self._closed = False
        self.num_dropped = 0

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    def __iter__(self):
        while True:
            try:
                yield self.get()
            except Closed:
                return

    def __len__(self):
        with self._lock:
            return len(self._queue)

    def is_closed(self):
        with self._lock:
            return self._closed

    def close(self):
        self._eventer.unsubscribe(self)
        self._close()

    def _close(self):
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()

    def offer(self, event):
        """Buffer an event without blocking, or drop it if full."""
        with self._lock:
            if self._closed:
                return False
            if len(self._queue) >= self._capacity:
                self.num_dropped += 1
                LOG.debug(
                    'drop event for slow subscriber: %r, dropped=%d',
                    event.message,
                    self.num_dropped,
                )
                return False
            self._queue.append(event)
            self._not_empty.notify()
            return True

    def get(self, timeout=None):
        with self._not_empty:
            deadline = None if timeout is None else policies.Deadline(timeout)
            while not self._queue:
                if self._closed:
                    raise Closed
                if deadline is None:
                    self._not_empty.wait()
                elif deadline.is_expired():
                    raise Empty
                else:
                    self._not_empty.wait(deadline.remaining())
            return self._queue.popleft()


class Eventer:

    def __init__(self, capacity=64):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._subscriptions = []
        # Pairs of event and the subscribers at the time of publishing.
        self._pending = collections.deque()
        self._closed = False
        self._thread = threading.Thread(
            target=self._dispatch,
            name='%s#dispatcher' % __name__,
            daemon=True,
        )
        self._thread.start()

    def subscribe(self, capacity=None):
        subscription = Subscription(self, capacity or self.capacity)
        with self._lock:
            if self._closed:
                subscription._close()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def publish(self, event):
        with self._lock:
            if self._closed:
                LOG.debug('eventer is closed; drop event: %r', event.message)
                return
            self._pending.append((event, tuple(self._subscriptions)))
            self._not_empty.notify()

    def close(self, timeout=None):
        """Deliver pending events, and then close all subscriptions."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._not_empty.notify()
        self._thread.join(timeout)

    def _dispatch(self):
        while True:
            with self._lock:
                while not self._pending and not self._closed:
                    self._not_empty.wait()
                if not self._pending:
                    subscriptions, self._subscriptions = \
                        self._subscriptions, []
                    break
                event, subscriptions = self._pending.popleft()
            for subscription in subscriptions:
                subscription.offer(event)
        for subscription in subscriptions:
            subscription._close()
        LOG.debug('dispatcher exits')
