import unittest

import threading
import time

from nspawn_driver.utils import SingleFlight


class SingleFlightTest(unittest.TestCase):

    def setUp(self):
        self.flights = SingleFlight()

    def test_call(self):
        self.assertEqual(3, self.flights.call('k', 'add', lambda x: x + 1, 2))
        self.assertNotIn('k', self.flights)
        with self.assertRaises(ZeroDivisionError):
            self.flights.call('k', 'div', lambda: 1 / 0)
        self.assertNotIn('k', self.flights)

    def run_in_thread(self, key, tag, func, results):

        def target():
            try:
                results.append(self.flights.call(key, tag, func))
            except Exception as exc:
                results.append(exc)

        thread = threading.Thread(target=target)
        thread.start()
        return thread

    def test_join_same_operation(self):
        entered = threading.Event()
        release = threading.Event()
        num_calls = []

        def start():
            num_calls.append(1)
            entered.set()
            release.wait()
            return 'started'

        results = []
        t1 = self.run_in_thread('web-1', 'start', start, results)
        self.assertTrue(entered.wait(timeout=2))
        self.assertIn('web-1', self.flights)
        t2 = self.run_in_thread('web-1', 'start', start, results)
        # Give t2 time to join the flight.
        time.sleep(0.05)
        release.set()
        t1.join(timeout=2)
        t2.join(timeout=2)
        self.assertEqual(['started', 'started'], results)
        self.assertEqual(1, len(num_calls))

    def test_serialize_different_operations(self):
        entered = threading.Event()
        release = threading.Event()
        order = []

        def start():
            order.append('start-enter')
            entered.set()
            release.wait()
            order.append('start-exit')
            return 'started'

        def stop():
            order.append('stop')
            return 'stopped'

        results = []
        t1 = self.run_in_thread('web-1', 'start', start, results)
        self.assertTrue(entered.wait(timeout=2))
        t2 = self.run_in_thread('web-1', 'stop', stop, results)
        release.set()
        t1.join(timeout=2)
        t2.join(timeout=2)
        self.assertEqual(['start-enter', 'start-exit', 'stop'], order)
        self.assertCountEqual(['started', 'stopped'], results)

    def test_different_keys(self):
        self.assertEqual(
            'a', self.flights.call('web-1', 'start', lambda: 'a')
        )
        self.assertEqual(
            'b', self.flights.call('web-2', 'start', lambda: 'b')
        )


if __name__ == '__main__':
    unittest.main()
