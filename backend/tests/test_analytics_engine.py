import os
import tempfile
import unittest
from datetime import date, datetime
from decimal import Decimal
from unittest import mock

from sqlalchemy import insert, update

from backend import invoice_service
from backend.analytics_engine import (
    AnalyticsPeriod,
    GroupDimension,
    by_group,
    resolve_period_range,
    summary,
)
from backend.currency_conversion import CurrencyNormalizer, RateCache, StaticRateProvider
from backend.database import (
    build_engine,
    invoice_categories,
    invoice_companies,
    invoice_receivers,
    invoice_tags,
    invoices,
    metadata,
    users,
)
from backend.errors import ValidationError

TODAY = date(2024, 6, 15)


class AnalyticsEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'analytics.db')}")
        metadata.create_all(self.engine)
        self.normalizer = CurrencyNormalizer(
            StaticRateProvider(pair_rates={("EUR", "USD"): Decimal("1.10")}),
            RateCache(),
        )
        with self.engine.begin() as conn:
            self.user_id = self._insert(conn, users, email="a@example.com", hashed_password="x")
            self.other_user_id = self._insert(conn, users, email="b@example.com", hashed_password="x")
            self.rent_id = self._insert(conn, invoice_categories, user_id=self.user_id, name="Rent", color="#ff0000")
            self.food_id = self._insert(conn, invoice_categories, user_id=self.user_id, name="Food")
            self.company_id = self._insert(conn, invoice_companies, user_id=self.user_id, name="Acme")
            self.receiver_id = self._insert(conn, invoice_receivers, user_id=self.user_id, name="Jane")
            self.tag_a = self._insert(conn, invoice_tags, user_id=self.user_id, name="A")
            self.tag_b = self._insert(conn, invoice_tags, user_id=self.user_id, name="B")

            self.eur_invoice = self._invoice(
                conn,
                self.user_id,
                currency="EUR",
                status="paid",
                due_date=date(2024, 6, 1),
                quantity="3",
                unit_price="10",
                category_id=self.rent_id,
                company_id=self.company_id,
                tag_ids=[self.tag_a, self.tag_b],
            )
            self._invoice(
                conn,
                self.user_id,
                status="unpaid",
                due_date=date(2024, 6, 10),
                unit_price="100",
                category_id=self.food_id,
                tag_ids=[self.tag_a],
            )
            self.overdue_invoice = self._invoice(
                conn,
                self.user_id,
                status="overdue",
                due_date=date(2024, 6, 14),
                unit_price="50",
                receiver_id=self.receiver_id,
            )
            self._invoice(
                conn,
                self.user_id,
                status="unpaid",
                due_date=date(2024, 1, 1),
                unit_price="999",
                category_id=self.rent_id,
            )
            self._invoice(
                conn,
                self.other_user_id,
                status="unpaid",
                due_date=date(2024, 6, 10),
                unit_price="500",
            )

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _insert(self, conn, table, **values) -> int:
        return conn.execute(insert(table).values(**values).returning(table.c.id)).scalar_one()

    def _invoice(self, conn, user_id, *, quantity="1", unit_price, tag_ids=(), **fields) -> int:
        return invoice_service.create_invoice(
            conn,
            self.normalizer,
            user_id,
            title="Invoice",
            items=[{"description": "Line", "quantity": Decimal(quantity), "unit_price": Decimal(unit_price)}],
            tag_ids=tag_ids,
            **fields,
        )

    def _group(self, dimension: GroupDimension, period: AnalyticsPeriod = AnalyticsPeriod.ONE_MONTH):
        with self.engine.begin() as conn:
            return by_group(conn, self.user_id, period, dimension, today=TODAY)

    def test_summary_splits_totals_by_status(self) -> None:
        with self.engine.begin() as conn:
            result = summary(conn, self.user_id, AnalyticsPeriod.ONE_MONTH, today=TODAY)

        self.assertEqual(result.start_date, date(2024, 5, 15))
        self.assertEqual(result.end_date, TODAY)
        self.assertEqual(result.total_amount, Decimal("183.00"))
        self.assertEqual(result.paid_amount, Decimal("33.00"))
        self.assertEqual(result.unpaid_amount, Decimal("100.00"))
        self.assertEqual(result.overdue_amount, Decimal("50.00"))
        self.assertEqual(result.invoice_count, 3)
        self.assertEqual(
            result.paid_amount + result.unpaid_amount + result.overdue_amount,
            result.total_amount,
        )
        self.assertEqual(result.paid_count + result.unpaid_count + result.overdue_count, 3)

    def test_summary_window_follows_period(self) -> None:
        with self.engine.begin() as conn:
            week = summary(conn, self.user_id, AnalyticsPeriod.SEVEN_DAYS, today=TODAY)
            year = summary(conn, self.user_id, AnalyticsPeriod.ONE_YEAR, today=TODAY)

        self.assertEqual(week.total_amount, Decimal("150.00"))
        self.assertEqual(week.invoice_count, 2)
        self.assertEqual(year.total_amount, Decimal("1182.00"))
        self.assertEqual(year.invoice_count, 4)

    def test_summary_is_scoped_to_user(self) -> None:
        with self.engine.begin() as conn:
            result = summary(conn, self.other_user_id, AnalyticsPeriod.ONE_MONTH, today=TODAY)

        self.assertEqual(result.total_amount, Decimal("500.00"))
        self.assertEqual(result.invoice_count, 1)

    def test_category_groups_add_up_to_summary(self) -> None:
        result = self._group(GroupDimension.CATEGORY)

        by_name = {item.name: item for item in result.items}
        self.assertEqual(by_name["Rent"].total_amount, Decimal("33.00"))
        self.assertEqual(by_name["Rent"].color, "#ff0000")
        self.assertEqual(by_name["Food"].total_amount, Decimal("100.00"))
        self.assertEqual(result.uncategorized.name, "Uncategorized")
        self.assertEqual(result.uncategorized.id, 0)
        self.assertEqual(result.uncategorized.total_amount, Decimal("50.00"))
        grand_total = sum(item.total_amount for item in result.items) + result.uncategorized.total_amount
        self.assertEqual(grand_total, Decimal("183.00"))

    def test_group_unpaid_includes_overdue(self) -> None:
        result = self._group(GroupDimension.COMPANY)

        self.assertEqual([item.name for item in result.items], ["Acme"])
        self.assertEqual(result.items[0].paid_amount, Decimal("33.00"))
        self.assertIsNone(result.items[0].color)
        self.assertEqual(result.uncategorized.name, "No Company")
        self.assertEqual(result.uncategorized.total_amount, Decimal("150.00"))
        self.assertEqual(result.uncategorized.unpaid_amount, Decimal("150.00"))
        self.assertEqual(result.uncategorized.invoice_count, 2)

    def test_receiver_groups(self) -> None:
        result = self._group(GroupDimension.RECEIVER)

        self.assertEqual(len(result.items), 1)
        self.assertEqual(result.items[0].id, self.receiver_id)
        self.assertEqual(result.items[0].total_amount, Decimal("50.00"))
        self.assertEqual(result.uncategorized.name, "No Receiver")
        self.assertEqual(result.uncategorized.total_amount, Decimal("133.00"))

    def test_tag_groups_fan_out(self) -> None:
        result = self._group(GroupDimension.TAG)

        by_id = {item.id: item for item in result.items}
        self.assertEqual(by_id[self.tag_a].total_amount, Decimal("133.00"))
        self.assertEqual(by_id[self.tag_a].invoice_count, 2)
        self.assertEqual(by_id[self.tag_b].total_amount, Decimal("33.00"))
        self.assertEqual(result.uncategorized.name, "No Tag")
        self.assertEqual(result.uncategorized.total_amount, Decimal("50.00"))
        self.assertEqual([item.id for item in result.items], [self.tag_a, self.tag_b])

    def test_uncategorized_omitted_when_empty(self) -> None:
        with self.engine.begin() as conn:
            invoice_service.delete_invoice(conn, self.user_id, self.overdue_invoice)

        result = self._group(GroupDimension.CATEGORY)

        self.assertIsNone(result.uncategorized)
        self.assertEqual(sum(item.total_amount for item in result.items), Decimal("133.00"))

    def test_parse_rejects_unknown_values(self) -> None:
        self.assertIs(AnalyticsPeriod.parse(" 7D "), AnalyticsPeriod.SEVEN_DAYS)
        self.assertIs(GroupDimension.parse("Tag"), GroupDimension.TAG)
        with self.assertRaises(ValidationError):
            AnalyticsPeriod.parse("2w")
        with self.assertRaises(ValidationError):
            GroupDimension.parse("project")

    def test_month_window_clamps_day(self) -> None:
        start, end = resolve_period_range(AnalyticsPeriod.ONE_MONTH, date(2024, 3, 31))

        self.assertEqual(start, date(2024, 2, 29))
        self.assertEqual(end, date(2024, 3, 31))

    def test_default_window_uses_utc_creation_date(self) -> None:
        with self.engine.begin() as conn:
            undated = self._invoice(conn, self.user_id, unit_price="7")
            conn.execute(
                update(invoices)
                .where(invoices.c.id == undated)
                .values(created_at=datetime(2024, 6, 15, 23, 30))
            )

        with mock.patch("backend.analytics_engine.utc_today", return_value=TODAY):
            with self.engine.begin() as conn:
                result = summary(conn, self.user_id, AnalyticsPeriod.SEVEN_DAYS)

        self.assertEqual(result.end_date, TODAY)
        self.assertEqual(result.total_amount, Decimal("157.00"))
        self.assertEqual(result.invoice_count, 3)


if __name__ == "__main__":
    unittest.main()
