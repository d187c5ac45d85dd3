import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from runstreak import dates


class TestDates(unittest.TestCase):
    def test_parse_utc_normalizes_offsets_and_naive_values(self) -> None:
        self.assertEqual(dates.parse_utc("2026-03-01T07:00:00Z"), datetime(2026, 3, 1, 7, tzinfo=timezone.utc))
        self.assertEqual(
            dates.parse_utc("2026-03-01T09:00:00+02:00"),
            datetime(2026, 3, 1, 7, tzinfo=timezone.utc),
        )
        self.assertEqual(dates.parse_utc(datetime(2026, 3, 1, 7)), datetime(2026, 3, 1, 7, tzinfo=timezone.utc))
        self.assertIsNone(dates.parse_utc("not a date"))
        self.assertIsNone(dates.parse_utc(None))

    def test_parse_day_accepts_legacy_strings(self) -> None:
        self.assertEqual(dates.parse_day("Sun Mar 01 2026"), date(2026, 3, 1))
        self.assertEqual(dates.parse_day("2026-03-01T23:59:00Z"), date(2026, 3, 1))
        self.assertIsNone(dates.parse_day("  "))

    def test_local_day_uses_zone(self) -> None:
        self.assertEqual(dates.local_day("2026-03-02T03:30:00Z", ZoneInfo("America/New_York")), date(2026, 3, 1))

    def test_unknown_timezone_falls_back_to_utc(self) -> None:
        with self.assertLogs("runstreak.dates", level="WARNING"):
            zone = dates.resolve_timezone("Mars/Olympus_Mons")
        self.assertEqual(zone, ZoneInfo("UTC"))

    def test_period_helpers_mix_dates_and_datetimes(self) -> None:
        moment = datetime(2026, 3, 31, 23, tzinfo=timezone.utc)
        self.assertTrue(dates.same_month(date(2026, 3, 1), moment))
        self.assertFalse(dates.same_month(date(2025, 3, 1), moment))
        self.assertTrue(dates.same_year(date(2026, 1, 1), moment))
        self.assertEqual(dates.days_between(date(2026, 3, 29), moment), 2)


if __name__ == "__main__":
    unittest.main()
