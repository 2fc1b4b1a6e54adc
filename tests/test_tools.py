import os
import re
import sys
import datetime
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from tools import IdGenerator, TimeTools


class IdGeneratorTestCase(unittest.TestCase):
    def test_template_id_format(self) -> None:
        tid = IdGenerator.template_id()
        self.assertRegex(tid, r"^tpl_[a-z0-9]{10}$")
        self.assertNotEqual(tid, IdGenerator.template_id())

    def test_session_id_format(self) -> None:
        now = datetime.datetime(2024, 5, 6, 7, 8, 9)
        sid = IdGenerator.session_id(now)
        self.assertTrue(sid.startswith("ses_20240506_070809_"))
        self.assertRegex(sid, r"^ses_\d{8}_\d{6}_[a-z0-9]{6}$")

    def test_session_id_uses_local_time(self) -> None:
        now = datetime.datetime(2024, 5, 6, 7, 8, 9, tzinfo=datetime.timezone.utc)
        stamp = now.astimezone().strftime("%Y%m%d_%H%M%S")
        self.assertIn(stamp, IdGenerator.session_id(now))
        self.assertTrue(re.match(r"^ses_", IdGenerator.session_id()))


class TimeToolsTestCase(unittest.TestCase):
    def test_storage_round_trip_is_utc(self) -> None:
        tokyo = datetime.timezone(datetime.timedelta(hours=9))
        ts = datetime.datetime(2024, 1, 2, 9, 0, tzinfo=tokyo)
        stored = TimeTools.to_storage(ts)
        self.assertEqual(stored, "2024-01-02T00:00:00.000000+00:00")
        self.assertEqual(TimeTools.from_storage(stored), ts)

    def test_naive_values_are_utc(self) -> None:
        naive = datetime.datetime(2024, 1, 2, 3, 4, 5)
        self.assertEqual(TimeTools.to_storage(naive), "2024-01-02T03:04:05.000000+00:00")
        parsed = TimeTools.from_storage("2024-01-02T03:04:05")
        self.assertEqual(parsed.tzinfo, datetime.timezone.utc)
        self.assertIsNone(TimeTools.from_storage(None))

    def test_storage_strings_sort_chronologically(self) -> None:
        early = TimeTools.to_storage(datetime.datetime(2024, 1, 2, 3, 4, 5))
        late = TimeTools.to_storage(datetime.datetime(2024, 1, 2, 3, 4, 5, 1))
        self.assertLess(early, late)
        self.assertIsNotNone(TimeTools.utcnow().tzinfo)


if __name__ == "__main__":
    unittest.main()
