import unittest
from datetime import date, datetime, timedelta, timezone

from rundown.date_utils import date_only, days_between, normalize_iso_date, parse_datetime, resolve_cutoff

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class DateUtilsTests(unittest.TestCase):
    def test_parse_mixed_inputs(self) -> None:
        self.assertEqual(parse_datetime("2026-03-01"), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_datetime("2026-03-01T10:00:00Z"), datetime(2026, 3, 1, 10, tzinfo=timezone.utc))
        self.assertEqual(
            parse_datetime("2026-03-01T10:00:00+02:00"), datetime(2026, 3, 1, 8, tzinfo=timezone.utc)
        )
        self.assertEqual(parse_datetime(date(2026, 3, 1)), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_datetime("2026/03/01"), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertIsNone(parse_datetime("yesterday"))
        self.assertIsNone(parse_datetime("2026-13-01"))
        self.assertIsNone(parse_datetime(None))

    def test_normalize_and_date_only(self) -> None:
        self.assertEqual(normalize_iso_date("2026-03-01"), "2026-03-01T00:00:00+00:00")
        self.assertEqual(normalize_iso_date("garbage"), "")
        self.assertEqual(date_only("2026-03-01T23:30:00Z"), "2026-03-01")
        self.assertEqual(date_only(""), "")

    def test_resolve_cutoff(self) -> None:
        self.assertEqual(resolve_cutoff(None, NOW, 14), NOW - timedelta(days=14))
        self.assertEqual(resolve_cutoff("2026-03-10", NOW, 14), datetime(2026, 3, 10, tzinfo=timezone.utc))
        with self.assertRaises(ValueError):
            resolve_cutoff("soon", NOW, 14)

    def test_days_between_rounds_up(self) -> None:
        self.assertEqual(days_between(NOW - timedelta(days=14), NOW), 14)
        self.assertEqual(days_between(NOW - timedelta(days=2, hours=1), NOW), 3)
        self.assertEqual(days_between(NOW + timedelta(days=1), NOW), 0)


if __name__ == "__main__":
    unittest.main()
