import unittest

import threading

from nspawn_driver import events

from fixtures import make_task_config


def make_event(message, **annotations):
    return events.make_event(make_task_config(), message, **annotations)


class SubscriptionTest(unittest.TestCase):

    def setUp(self):
        self.eventer = events.Eventer(capacity=2)

    def tearDown(self):
        self.eventer.close()

    def test_make_event(self):
        event = make_event('hello', x=1)
        self.assertEqual('task-1', event.task_id)
        self.assertEqual('alloc-1', event.alloc_id)
        self.assertEqual('web/server', event.task_name)
        self.assertEqual('hello', event.message)
        self.assertEqual({'x': 1}, event.annotations)
        self.assertIsNotNone(event.timestamp.tzinfo)

    def test_offer_and_get(self):
        subscription = events.Subscription(self.eventer, 2)
        self.assertTrue(subscription.offer(make_event('a')))
        self.assertTrue(subscription.offer(make_event('b')))
        # Full; drop rather than block.
        self.assertFalse(subscription.offer(make_event('c')))
        self.assertEqual(1, subscription.num_dropped)
        self.assertEqual(2, len(subscription))

        self.assertEqual('a', subscription.get().message)
        self.assertEqual('b', subscription.get().message)
        with self.assertRaises(events.Empty):
            subscription.get(timeout=0.01)

        subscription.offer(make_event('d'))
        subscription.close()
        self.assertTrue(subscription.is_closed())
        self.assertFalse(subscription.offer(make_event('e')))
        # Drain before raising Closed.
        self.assertEqual('d', subscription.get().message)
        with self.assertRaises(events.Closed):
            subscription.get()

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            events.Subscription(self.eventer, 0)


class EventerTest(unittest.TestCase):

    def setUp(self):
        self.eventer = events.Eventer(capacity=8)

    def tearDown(self):
        self.eventer.close()

    def test_publish(self):
        s1 = self.eventer.subscribe()
        s2 = self.eventer.subscribe()
        self.eventer.publish(make_event('a'))
        self.eventer.publish(make_event('b'))
        for subscription in (s1, s2):
            self.assertEqual('a', subscription.get(timeout=1).message)
            self.assertEqual('b', subscription.get(timeout=1).message)

    def test_late_subscriber(self):
        s1 = self.eventer.subscribe()
        self.eventer.publish(make_event('a'))
        s2 = self.eventer.subscribe()
        self.eventer.publish(make_event('b'))
        self.assertEqual('a', s1.get(timeout=1).message)
        self.assertEqual('b', s1.get(timeout=1).message)
        self.assertEqual('b', s2.get(timeout=1).message)
        with self.assertRaises(events.Empty):
            s2.get(timeout=0.01)

    def test_slow_subscriber(self):
        slow = self.eventer.subscribe(capacity=1)
        fast = self.eventer.subscribe()
        for message in 'abc':
            self.eventer.publish(make_event(message))
        self.assertEqual(
            ['a', 'b', 'c'],
            [fast.get(timeout=1).message for _ in range(3)],
        )
        self.assertEqual('a', slow.get(timeout=1).message)
        self.assertEqual(2, slow.num_dropped)

    def test_unsubscribe(self):
        with self.eventer.subscribe() as subscription:
            pass
        self.assertTrue(subscription.is_closed())
        self.eventer.publish(make_event('a'))
        self.eventer.close()
        self.assertEqual(0, len(subscription))

    def test_close(self):
        subscription = self.eventer.subscribe()
        self.eventer.publish(make_event('a'))
        self.eventer.close()
        # Pending events are delivered before subscriptions are closed.
        self.assertEqual(['a'], [event.message for event in subscription])

        # Publishing after close is a no-op.
        self.eventer.publish(make_event('b'))
        late = self.eventer.subscribe()
        self.assertTrue(late.is_closed())

    def test_iterate_from_other_thread(self):
        subscription = self.eventer.subscribe()
        messages = []
        thread = threading.Thread(
            target=lambda: messages.extend(e.message for e in subscription)
        )
        thread.start()
        for message in 'xyz':
            self.eventer.publish(make_event(message))
        self.eventer.close()
        thread.join(timeout=2)
        self.assertFalse(thread.is_alive())
        self.assertEqual(['x', 'y', 'z'], messages)


if __name__ == '__main__':
    unittest.main()
