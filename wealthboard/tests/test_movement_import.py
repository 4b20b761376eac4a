import unittest
from datetime import date
from decimal import Decimal

from wealthboard.movement_import import (
    ParsedMovement,
    merge_cost_basis,
    parse_importe,
    parse_movements_csv,
    parse_number,
    plan_import,
)

SAMPLE_CSV = "\n".join(
    [
        '"Fecha de la orden";"ISIN";"Importe estimado";"Nº de participaciones";"Estado"',
        '"05/01/2024";"IE00B03HCZ61";"600 EUR";"48,527";"Finalizada"',
        '"05/02/2024";"IE00B03HCZ61";"1.234,56 EUR";"97,1";"Finalizada"',
        '"06/02/2024";"LU0996182563";"300.23";"1.234";"En curso"',
        '"07/02/2024";"";"100";"1";"Finalizada"',
        '"08/02/2024";"LU0996182563";"0";"1";"Finalizada"',
        "",
    ]
)


def movement(isin: str, day: date | None, amount: str, shares: str = "1") -> ParsedMovement:
    return ParsedMovement(
        raw_date=day.strftime("%d/%m/%Y") if day else "31/02/2024",
        trade_date=day,
        isin=isin,
        amount=Decimal(amount),
        shares=Decimal(shares),
        status="Finalizada",
    )


class ParseNumberTests(unittest.TestCase):
    def test_spanish_and_international_formats(self) -> None:
        self.assertEqual(parse_number("1.234,56"), Decimal("1234.56"))
        self.assertEqual(parse_number("48,527"), Decimal("48.527"))
        self.assertEqual(parse_number("300.23"), Decimal("300.23"))
        self.assertEqual(parse_number("300.2"), Decimal("300.2"))
        self.assertEqual(parse_number("1.234"), Decimal("1234"))
        self.assertEqual(parse_number("12"), Decimal("12"))
        self.assertEqual(parse_number(""), Decimal("0"))
        self.assertEqual(parse_number("n/a"), Decimal("0"))

    def test_importe_strips_currency(self) -> None:
        self.assertEqual(parse_importe("600 EUR"), Decimal("600"))
        self.assertEqual(parse_importe("EUR"), Decimal("0"))


class ParseMovementsCsvTests(unittest.TestCase):
    def test_parses_semicolon_export(self) -> None:
        result = parse_movements_csv(SAMPLE_CSV)

        self.assertEqual(result.delimiter, ";")
        self.assertEqual(len(result.rows), 3)
        first, second, third = result.rows
        self.assertEqual(first.trade_date, date(2024, 1, 5))
        self.assertEqual(first.amount, Decimal("600"))
        self.assertEqual(first.shares, Decimal("48.527"))
        self.assertTrue(first.is_finalized)
        self.assertEqual(second.amount, Decimal("1234.56"))
        self.assertEqual(third.shares, Decimal("1234"))
        self.assertFalse(third.is_finalized)

    def test_comma_delimited_with_invalid_date(self) -> None:
        result = parse_movements_csv(
            "fecha,isin,importe,participaciones,estado\n"
            "2024-01-05,ie00b03hcz61,100,2,Finalizada\n"
        )

        self.assertEqual(result.delimiter, ",")
        self.assertEqual(result.rows[0].isin, "IE00B03HCZ61")
        self.assertIsNone(result.rows[0].trade_date)

    def test_requires_isin_column(self) -> None:
        with self.assertRaises(ValueError):
            parse_movements_csv("fecha;importe\n01/01/2024;10\n")

    def test_requires_data_rows(self) -> None:
        with self.assertRaises(ValueError):
            parse_movements_csv("fecha;isin;importe\n")


class PlanImportTests(unittest.TestCase):
    def test_plans_buys_and_counts_duplicates_and_errors(self) -> None:
        movements = [
            movement("AAA", date(2024, 1, 5), "600", "3"),
            movement("AAA", date(2024, 1, 5), "600", "3"),
            movement("BBB", date(2024, 1, 6), "100"),
            movement("CCC", date(2024, 1, 7), "50"),
            movement("AAA", None, "10"),
        ]

        plan = plan_import(
            movements,
            holdings_by_isin={"AAA": 1, "BBB": 2},
            existing_keys=[(2, date(2024, 1, 6), Decimal("100.00"))],
        )

        self.assertEqual(len(plan.transactions), 1)
        planned = plan.transactions[0]
        self.assertEqual(planned.holding_id, 1)
        self.assertEqual(planned.type, "buy")
        self.assertEqual(planned.price, Decimal("200"))
        self.assertEqual(planned.description, "3 participaciones")
        self.assertEqual(plan.duplicates, 2)
        self.assertEqual(plan.errors, 2)

    def test_zero_shares_price_is_zero(self) -> None:
        plan = plan_import([movement("AAA", date(2024, 1, 5), "10", "0")], {"AAA": 1}, [])

        self.assertEqual(plan.transactions[0].price, Decimal("0"))


class MergeCostBasisTests(unittest.TestCase):
    def test_weighted_average(self) -> None:
        self.assertEqual(
            merge_cost_basis(Decimal("10"), Decimal("5"), Decimal("10"), Decimal("150")),
            Decimal("10"),
        )

    def test_no_shares(self) -> None:
        self.assertEqual(
            merge_cost_basis(Decimal("0"), Decimal("0"), Decimal("0"), Decimal("100")),
            Decimal("0"),
        )


if __name__ == "__main__":
    unittest.main()
