import datetime as dt
import unittest

from burst_buffer.interpret.time import (
    duration_timedelta,
    seconds_timedelta,
    timeout_seconds,
)


class TimeTest(unittest.TestCase):
    def test_duration_timedelta(self):
        Z = dt.timedelta()
        S = dt.timedelta(seconds=1)
        M = dt.timedelta(minutes=1)
        H = dt.timedelta(hours=1)
        D = dt.timedelta(days=1)

        self.assertEqual(duration_timedelta(""), None)
        self.assertEqual(duration_timedelta("0"), None)

        self.assertEqual(duration_timedelta("00:00"), Z)
        self.assertEqual(duration_timedelta("00:01"), S)
        self.assertEqual(duration_timedelta("01:00"), M)

        self.assertEqual(duration_timedelta("00:00:01"), S)
        self.assertEqual(duration_timedelta("01:00:00"), H)

        self.assertEqual(duration_timedelta("0-01"), H)
        self.assertEqual(duration_timedelta("1-00"), D)
        self.assertEqual(duration_timedelta("1-00:00:00"), D)

    def test_seconds_timedelta(self):
        S = lambda s: dt.timedelta(seconds=s)

        self.assertEqual(seconds_timedelta(""), None)
        self.assertEqual(seconds_timedelta("-1"), None)
        self.assertEqual(seconds_timedelta("0"), S(0))
        self.assertEqual(seconds_timedelta("1"), S(1))

    def test_timeout_seconds(self):
        self.assertEqual(timeout_seconds("300"), 300.0)
        self.assertEqual(timeout_seconds("01:30:00"), 5400.0)
        self.assertEqual(timeout_seconds("soon"), None)
