import unittest
from test.interpret._strategies import u8_integers

from hypothesis import given

from burst_buffer.interpret.exit_status import TIMED_OUT, ExitStatus


class ExitStatusTest(unittest.TestCase):
    @given(u8_integers(), u8_integers())
    def test_roundtrip(self, code, signal):
        s = f"{code}:{signal}"
        self.assertEqual(s, str(ExitStatus.from_string(s)))

    def test_from_returncode(self):
        self.assertTrue(ExitStatus.from_returncode(0).ok)
        self.assertEqual(ExitStatus.from_returncode(1), ExitStatus(1, 0))
        self.assertEqual(ExitStatus.from_returncode(-9), ExitStatus(0, 9))
        self.assertEqual(ExitStatus.from_returncode(None), ExitStatus(TIMED_OUT, 0))
        self.assertFalse(ExitStatus.from_returncode(None).ok)

    def test_invalid(self):
        self.assertEqual(ExitStatus.from_string("x:0"), None)
        self.assertEqual(ExitStatus.from_string("1"), None)
