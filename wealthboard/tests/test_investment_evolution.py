import unittest
from datetime import date
from decimal import Decimal

from wealthboard.currency_conversion import RateUnavailable
from wealthboard.investment_evolution import (
    CombinedPoint,
    SnapshotPoint,
    TransactionEvent,
    build_investment_evolution,
    convert_snapshots,
    merge_timeline,
    read_snapshots,
    read_transactions,
    successful_syncs,
)


def snapshot(day: date, cost: str, value: str) -> SnapshotPoint:
    return SnapshotPoint(date=day, cost_basis=Decimal(cost), market_value=Decimal(value), currency="EUR")


def event(day: date, amount: str, kind: str) -> TransactionEvent:
    return TransactionEvent(date=day, amount=Decimal(amount), kind=kind, account_currency="EUR")


class TimelineMergeTests(unittest.TestCase):
    def test_forward_fills_snapshots_and_adds_transactions(self) -> None:
        points = list(
            merge_timeline(
                [
                    snapshot(date(2024, 1, 1), "1000", "1000"),
                    snapshot(date(2024, 3, 1), "1500", "1600"),
                ],
                [event(date(2024, 2, 1), "200", "buy")],
            )
        )

        self.assertEqual([point.date for point in points], [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ])
        self.assertEqual(
            [(point.total_invested, point.total_value) for point in points],
            [
                (Decimal("1000"), Decimal("1000")),
                (Decimal("1200"), Decimal("1200")),
                (Decimal("1700"), Decimal("1800")),
            ],
        )
        self.assertEqual(points[1].snapshot_invested, Decimal("1000"))
        self.assertEqual(points[1].snapshot_value, Decimal("1000"))
        self.assertEqual(points[1].transaction_invested, Decimal("200"))

    def test_transactions_only_value_tracks_invested(self) -> None:
        points = list(
            merge_timeline(
                [],
                [
                    event(date(2024, 1, 5), "100", "buy"),
                    event(date(2024, 1, 10), "40", "sell"),
                ],
            )
        )

        expected = [
            CombinedPoint(
                date=date(2024, 1, 5),
                snapshot_invested=Decimal("0"),
                snapshot_value=Decimal("0"),
                transaction_invested=Decimal("100"),
                transaction_value=Decimal("100"),
                total_invested=Decimal("100"),
                total_value=Decimal("100"),
            ),
            CombinedPoint(
                date=date(2024, 1, 10),
                snapshot_invested=Decimal("0"),
                snapshot_value=Decimal("0"),
                transaction_invested=Decimal("60"),
                transaction_value=Decimal("60"),
                total_invested=Decimal("60"),
                total_value=Decimal("60"),
            ),
        ]
        self.assertEqual(points, expected)

    def test_empty_inputs_give_empty_sequence(self) -> None:
        timeline = merge_timeline([], [])

        self.assertEqual(list(timeline), [])
        self.assertEqual(len(timeline), 0)
        self.assertFalse(timeline)

    def test_length_matches_union_of_disjoint_dates(self) -> None:
        snapshots = [snapshot(date(2024, 1, day), "10", "11") for day in (1, 3, 5)]
        transactions = [event(date(2024, 1, day), "5", "buy") for day in (2, 4)]

        timeline = merge_timeline(snapshots, transactions)

        self.assertEqual(len(timeline), 5)
        self.assertEqual(len(list(timeline)), 5)

    def test_zero_before_first_snapshot(self) -> None:
        points = list(
            merge_timeline(
                [snapshot(date(2024, 2, 1), "300", "330")],
                [event(date(2024, 1, 1), "50", "transfer")],
            )
        )

        self.assertEqual(points[0].snapshot_invested, Decimal("0"))
        self.assertEqual(points[0].snapshot_value, Decimal("0"))
        self.assertEqual(points[0].total_value, Decimal("50"))
        self.assertEqual(points[1].total_value, Decimal("380"))

    def test_last_snapshot_of_a_day_wins(self) -> None:
        points = list(
            merge_timeline(
                [
                    snapshot(date(2024, 1, 1), "100", "110"),
                    snapshot(date(2024, 1, 1), "120", "130"),
                ],
                [],
            )
        )

        self.assertEqual(len(points), 1)
        self.assertEqual(points[0].snapshot_invested, Decimal("120"))
        self.assertEqual(points[0].snapshot_value, Decimal("130"))

    def test_same_day_transactions_net_out(self) -> None:
        points = list(
            merge_timeline(
                [],
                [
                    event(date(2024, 5, 1), "300", "buy"),
                    event(date(2024, 5, 1), "120", "sell"),
                    event(date(2024, 5, 1), "20", "transfer"),
                ],
            )
        )

        self.assertEqual(len(points), 1)
        self.assertEqual(points[0].transaction_invested, Decimal("200"))

    def test_each_kind_moves_running_total_by_its_amount(self) -> None:
        points = list(
            merge_timeline(
                [],
                [
                    event(date(2024, 1, 1), "500", "buy"),
                    event(date(2024, 1, 2), "75", "sell"),
                    event(date(2024, 1, 3), "30", "transfer"),
                ],
            )
        )

        invested = [point.transaction_invested for point in points]
        self.assertEqual(invested[1] - invested[0], Decimal("-75"))
        self.assertEqual(invested[2] - invested[1], Decimal("30"))

    def test_unsorted_input_is_emitted_in_date_order(self) -> None:
        points = list(
            merge_timeline(
                [snapshot(date(2024, 3, 1), "10", "10"), snapshot(date(2024, 1, 1), "5", "5")],
                [event(date(2024, 2, 1), "1", "buy")],
            )
        )

        self.assertEqual(
            [point.date for point in points],
            [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)],
        )
        self.assertEqual(points[1].snapshot_value, Decimal("5"))

    def test_timeline_can_be_iterated_repeatedly(self) -> None:
        timeline = merge_timeline(
            [snapshot(date(2024, 1, 1), "100", "120")],
            [event(date(2024, 1, 2), "10", "buy")],
        )

        self.assertEqual(list(timeline), list(timeline))

    def test_timestamp_is_utc_midnight_in_milliseconds(self) -> None:
        point = list(merge_timeline([snapshot(date(2024, 1, 1), "1", "1")], []))[0]

        self.assertEqual(point.timestamp, 1704067200000)


class SourceReaderTests(unittest.TestCase):
    def test_reads_sync_history_rows(self) -> None:
        result = read_snapshots(
            [
                {"sync_date": "2024-01-01T22:30:00Z", "total_cost_usd": "100.50", "total_value_usd": 120},
                {"date": date(2024, 1, 2), "cost": Decimal("10"), "value": Decimal("11")},
            ]
        )

        self.assertEqual(result.skipped_count, 0)
        self.assertEqual(
            result.points,
            [
                SnapshotPoint(date(2024, 1, 1), Decimal("100.50"), Decimal("120"), "USD"),
                SnapshotPoint(date(2024, 1, 2), Decimal("10"), Decimal("11"), "USD"),
            ],
        )

    def test_skips_unparsable_dates_and_keeps_going(self) -> None:
        result = read_snapshots(
            [
                {"date": "2024-13-45", "cost": "1", "value": "1"},
                {"date": "2024-02-01", "cost": "2", "value": "3"},
                {"date": None, "cost": "1", "value": "1"},
            ]
        )

        self.assertEqual(len(result.points), 1)
        self.assertEqual(result.skipped_count, 2)
        self.assertEqual([row.index for row in result.skipped], [0, 2])

    def test_transaction_reader_rejects_bad_rows(self) -> None:
        result = read_transactions(
            [
                {"transaction_date": "2024-01-01", "amount": "100", "type": "BUY"},
                {"transaction_date": "not a date", "amount": "5", "type": "buy"},
                {"transaction_date": "2024-01-02", "amount": "abc", "type": "sell"},
                {"transaction_date": "2024-01-03", "amount": "-5", "type": "sell"},
                {"transaction_date": "2024-01-04", "amount": "5", "type": "dividend"},
                {"date": "2024-01-05", "amount": 7, "kind": "transfer", "currency": "usd"},
            ]
        )

        self.assertEqual(result.skipped_count, 4)
        self.assertEqual(
            result.points,
            [
                TransactionEvent(date(2024, 1, 1), Decimal("100"), "buy", "EUR"),
                TransactionEvent(date(2024, 1, 5), Decimal("7"), "transfer", "USD"),
            ],
        )

    def test_successful_syncs_drops_failures(self) -> None:
        rows = [
            {"date": "2024-01-01", "status": "success"},
            {"date": "2024-01-02", "status": "error"},
            {"date": "2024-01-03"},
        ]

        self.assertEqual(
            [row["date"] for row in successful_syncs(rows)],
            ["2024-01-01", "2024-01-03"],
        )


class BuildEvolutionTests(unittest.TestCase):
    def test_converts_before_merging(self) -> None:
        calls = []

        def lookup(source: str, target: str) -> Decimal:
            calls.append((source, target))
            return Decimal("0.5")

        result = build_investment_evolution(
            [
                {"sync_date": "2024-01-01", "total_cost_usd": "1000", "total_value_usd": "1200", "status": "success"},
                {"sync_date": "2024-01-03", "total_cost_usd": "1", "total_value_usd": "1", "status": "error"},
                {"sync_date": "2024-01-04", "total_cost_usd": "2000", "total_value_usd": "2400", "status": "success"},
            ],
            [
                {"transaction_date": "2024-01-02", "amount": "100", "type": "buy", "currency": "EUR"},
                {"transaction_date": "bad", "amount": "100", "type": "buy", "currency": "EUR"},
            ],
            rate_lookup=lookup,
            reporting_currency="EUR",
        )

        self.assertEqual(calls, [("USD", "EUR")])
        self.assertEqual(result.currency, "EUR")
        self.assertEqual(result.skipped_snapshots, 0)
        self.assertEqual(result.skipped_transactions, 1)
        self.assertEqual(
            [(point.date, point.total_invested, point.total_value) for point in result.points],
            [
                (date(2024, 1, 1), Decimal("500.0"), Decimal("600.0")),
                (date(2024, 1, 2), Decimal("600.0"), Decimal("700.0")),
                (date(2024, 1, 4), Decimal("1100.0"), Decimal("1300.0")),
            ],
        )

    def test_missing_rate_propagates(self) -> None:
        def lookup(source: str, target: str) -> Decimal:
            raise RateUnavailable(source, target)

        with self.assertRaises(RateUnavailable):
            build_investment_evolution(
                [{"sync_date": "2024-01-01", "total_cost_usd": "1", "total_value_usd": "1"}],
                [],
                rate_lookup=lookup,
                reporting_currency="GBP",
            )

    def test_same_currency_skips_rate_lookup(self) -> None:
        def lookup(source: str, target: str) -> Decimal:
            raise AssertionError("rate lookup should not be needed")

        converted = convert_snapshots(
            [snapshot(date(2024, 1, 1), "10", "12")],
            "EUR",
            lookup,
        )

        self.assertEqual(converted[0].market_value, Decimal("12"))

    def test_merging_twice_is_identical(self) -> None:
        rows = [{"date": "2024-01-01", "cost": "10", "value": "12"}]
        transactions = [{"date": "2024-01-02", "amount": "3", "kind": "sell"}]

        first = build_investment_evolution(rows, transactions, lambda s, t: Decimal("2"))
        second = build_investment_evolution(rows, transactions, lambda s, t: Decimal("2"))

        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
