import unittest
from datetime import date
from decimal import Decimal

from wealthboard.benchmarks import (
    MSCI_WORLD,
    SP500,
    BenchmarkClose,
    NormalizedBenchmark,
    compare_with_benchmarks,
    normalize_benchmarks,
    relative_performance,
)


class NormalizeBenchmarksTests(unittest.TestCase):
    def test_rebases_both_series_to_one_hundred(self) -> None:
        closes = [
            BenchmarkClose(SP500, date(2024, 1, 1), Decimal("4000")),
            BenchmarkClose(SP500, date(2024, 1, 2), Decimal("4100")),
            BenchmarkClose(SP500, date(2024, 1, 3), Decimal("4200")),
            BenchmarkClose(MSCI_WORLD, date(2024, 1, 2), Decimal("3000")),
            BenchmarkClose(MSCI_WORLD, date(2024, 1, 4), Decimal("3300")),
        ]

        normalized = normalize_benchmarks(closes, date(2024, 1, 2))

        self.assertEqual(
            normalized,
            [
                NormalizedBenchmark(date(2024, 1, 2), Decimal("100"), Decimal("100")),
                NormalizedBenchmark(
                    date(2024, 1, 3),
                    Decimal("4200") / Decimal("4100") * Decimal("100"),
                    None,
                ),
                NormalizedBenchmark(date(2024, 1, 4), None, Decimal("110")),
            ],
        )

    def test_missing_base_for_one_series_returns_empty(self) -> None:
        closes = [
            BenchmarkClose(SP500, date(2024, 1, 5), Decimal("4000")),
            BenchmarkClose(MSCI_WORLD, date(2023, 12, 29), Decimal("3000")),
        ]

        with self.assertLogs("wealthboard.benchmarks", level="WARNING"):
            self.assertEqual(normalize_benchmarks(closes, date(2024, 1, 1)), [])

    def test_no_data_returns_empty(self) -> None:
        self.assertEqual(normalize_benchmarks([], date(2024, 1, 1)), [])


class RelativePerformanceTests(unittest.TestCase):
    def test_outperforming(self) -> None:
        result = relative_performance(Decimal("12.5"), Decimal("10"))

        self.assertEqual(result.difference, Decimal("2.5"))
        self.assertTrue(result.is_outperforming)
        self.assertEqual(result.label, "+2.50% vs benchmark")

    def test_underperforming(self) -> None:
        result = relative_performance(Decimal("3"), Decimal("4.256"))

        self.assertFalse(result.is_outperforming)
        self.assertEqual(result.label, "-1.26% vs benchmark")


class CompareWithBenchmarksTests(unittest.TestCase):
    def test_compares_with_latest_levels_up_to_last_portfolio_date(self) -> None:
        normalized = [
            NormalizedBenchmark(date(2024, 1, 2), Decimal("100"), Decimal("100")),
            NormalizedBenchmark(date(2024, 1, 3), Decimal("105"), None),
            NormalizedBenchmark(date(2024, 1, 4), Decimal("108"), Decimal("103")),
            NormalizedBenchmark(date(2024, 1, 10), Decimal("150"), Decimal("150")),
        ]
        portfolio = [
            (date(2024, 1, 4), Decimal("1100")),
            (date(2024, 1, 1), Decimal("0")),
            (date(2024, 1, 2), Decimal("1000")),
        ]

        comparison = compare_with_benchmarks(portfolio, normalized)

        self.assertEqual(comparison.start_date, date(2024, 1, 2))
        self.assertEqual(comparison.portfolio_return, Decimal("10"))
        self.assertEqual(comparison.sp500.label, "+2.00% vs benchmark")
        self.assertEqual(comparison.msci_world.difference, Decimal("7"))
        self.assertTrue(comparison.msci_world.is_outperforming)

    def test_series_without_levels_has_no_comparison(self) -> None:
        normalized = [NormalizedBenchmark(date(2024, 1, 2), Decimal("100"), None)]

        comparison = compare_with_benchmarks([(date(2024, 1, 2), Decimal("50"))], normalized)

        self.assertEqual(comparison.sp500.label, "0.00% vs benchmark")
        self.assertIsNone(comparison.msci_world)

    def test_no_positive_portfolio_value(self) -> None:
        self.assertIsNone(compare_with_benchmarks([], []))
        self.assertIsNone(compare_with_benchmarks([(date(2024, 1, 2), Decimal("0"))], []))


if __name__ == "__main__":
    unittest.main()
