import os
import tempfile
import unittest
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from backend import main
from backend.analytics_engine import utc_today
from backend.currency_conversion import CurrencyNormalizer, RateCache, StaticRateProvider
from backend.database import build_engine, metadata


class InvoiceApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'api.db')}")
        metadata.create_all(self.engine)
        self.normalizer = CurrencyNormalizer(
            StaticRateProvider(pair_rates={("EUR", "USD"): Decimal("1.10")}),
            RateCache(),
        )
        patches = [
            mock.patch.object(main, "engine", self.engine),
            mock.patch.object(main, "normalizer", self.normalizer),
            mock.patch.object(main, "REPORTING_CURRENCY", "USD"),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)
        self.headers = {"x-user-id": str(self.signup("owner@example.com"))}
        self.other_headers = {"x-user-id": str(self.signup("other@example.com"))}

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def signup(self, email: str) -> int:
        response = self.client.post("/auth/signup", json={"email": email, "password": "secret"})
        self.assertEqual(response.status_code, 200)
        return response.json()["id"]

    def create(self, path: str, payload: dict, headers: dict | None = None) -> dict:
        response = self.client.post(path, json=payload, headers=headers or self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def create_invoice(self, headers: dict | None = None, **fields) -> dict:
        payload = {
            "title": "Consulting",
            "currency": "USD",
            "due_date": utc_today().isoformat(),
            "items": [{"description": "Hours", "quantity": "1", "unit_price": "100"}],
        }
        payload.update(fields)
        return self.create("/api/invoices", payload, headers)

    def test_login_and_identity(self) -> None:
        response = self.client.post("/auth/login", json={"email": "owner@example.com", "password": "secret"})
        self.assertEqual(response.status_code, 200)

        response = self.client.post("/auth/login", json={"email": "owner@example.com", "password": "wrong"})
        self.assertEqual(response.status_code, 401)

        self.assertEqual(self.client.get("/api/invoices").status_code, 401)
        self.assertEqual(self.client.get("/api/invoices", headers={"x-user-id": "999"}).status_code, 404)

    def test_invoice_items_are_normalized(self) -> None:
        invoice = self.create_invoice(
            currency="eur",
            items=[{"description": "Widgets", "quantity": "3", "unit_price": "10"}],
        )

        self.assertEqual(invoice["currency"], "EUR")
        self.assertEqual(Decimal(invoice["amount"]), Decimal("30"))
        item = invoice["items"][0]
        self.assertEqual(Decimal(item["amount"]), Decimal("30"))
        self.assertEqual(Decimal(item["target_amount"]), Decimal("33.00"))
        self.assertEqual(Decimal(item["fx_rate_used"]), Decimal("1.10"))
        self.assertEqual(item["target_currency"], "USD")

    def test_stored_item_amount_matches_stored_inputs(self) -> None:
        invoice = self.create_invoice()

        self.create(
            f"/api/invoices/{invoice['id']}/items",
            {"description": "Fraction", "quantity": "0.33333", "unit_price": "3"},
        )

        refreshed = self.client.get(f"/api/invoices/{invoice['id']}", headers=self.headers).json()
        item = refreshed["items"][1]
        self.assertEqual(Decimal(item["quantity"]), Decimal("0.3333"))
        self.assertEqual(Decimal(item["amount"]), Decimal("0.9999"))
        for row in refreshed["items"]:
            self.assertEqual(
                Decimal(row["amount"]),
                Decimal(row["quantity"]) * Decimal(row["unit_price"]),
            )

    def test_item_update_override_then_recalculate(self) -> None:
        invoice = self.create_invoice(
            currency="EUR",
            items=[{"description": "Widgets", "quantity": "3", "unit_price": "10"}],
        )
        path = f"/api/invoices/{invoice['id']}/items/{invoice['items'][0]['id']}"

        response = self.client.put(path, json={"target_amount": "31.50"}, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["target_amount"]), Decimal("31.50"))

        response = self.client.put(path, json={"description": "Blue widgets"}, headers=self.headers)
        self.assertEqual(Decimal(response.json()["target_amount"]), Decimal("31.50"))

        response = self.client.put(
            path,
            json={"target_amount": "20", "auto_calculate_target_currency": True},
            headers=self.headers,
        )
        self.assertEqual(Decimal(response.json()["target_amount"]), Decimal("33.00"))

        response = self.client.put(path, json={"quantity": "-1"}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_currency_change_recalculates_items(self) -> None:
        invoice = self.create_invoice()

        response = self.client.put(
            f"/api/invoices/{invoice['id']}", json={"currency": "EUR"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["items"][0]["target_amount"]), Decimal("110.00"))

    def test_unavailable_rate_returns_503(self) -> None:
        payload = {
            "title": "Canada",
            "currency": "CAD",
            "items": [{"description": "Hours", "quantity": "1", "unit_price": "100"}],
        }
        response = self.client.post("/api/invoices", json=payload, headers=self.headers)

        self.assertEqual(response.status_code, 503)
        self.assertEqual(self.client.get("/api/invoices", headers=self.headers).json(), [])

    def test_analytics_endpoints(self) -> None:
        category = self.create("/api/categories", {"name": "Services", "color": "#00FF00"})
        tag_a = self.create("/api/tags", {"name": "A"})
        tag_b = self.create("/api/tags", {"name": "B"})
        self.create_invoice(category_id=category["id"], tag_ids=[tag_a["id"], tag_b["id"]], status="paid")
        self.create_invoice(
            currency="EUR",
            items=[{"description": "Widgets", "quantity": "3", "unit_price": "10"}],
        )

        summary = self.client.get("/api/analytics/summary?period=7d", headers=self.headers).json()
        self.assertEqual(Decimal(summary["total_amount"]), Decimal("133.00"))
        self.assertEqual(Decimal(summary["paid_amount"]), Decimal("100.00"))
        self.assertEqual(Decimal(summary["unpaid_amount"]), Decimal("33.00"))
        self.assertEqual(summary["currency"], "USD")

        by_category = self.client.get("/api/analytics/by-category", headers=self.headers).json()
        self.assertEqual(by_category["period"], "1m")
        self.assertEqual(by_category["items"][0]["color"], "#00ff00")
        self.assertEqual(by_category["uncategorized"]["name"], "Uncategorized")
        self.assertEqual(Decimal(by_category["uncategorized"]["total_amount"]), Decimal("33.00"))

        by_tag = self.client.get("/api/analytics/by-tag", headers=self.headers).json()
        self.assertEqual(
            sorted(Decimal(item["total_amount"]) for item in by_tag["items"]),
            [Decimal("100.00"), Decimal("100.00")],
        )

        other = self.client.get("/api/analytics/summary", headers=self.other_headers).json()
        self.assertEqual(Decimal(other["total_amount"]), Decimal("0"))

        response = self.client.get("/api/analytics/by-company?period=5y", headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_merge_endpoint(self) -> None:
        target = self.create("/api/receivers", {"name": "Acme Corp", "other_names": ["ACME", " "]})
        source = self.create("/api/receivers", {"name": "Acme Inc"})
        foreign = self.create("/api/receivers", {"name": "Acme Ltd"}, self.other_headers)
        invoice = self.create_invoice(receiver_id=source["id"])
        self.assertEqual(target["other_names"], ["ACME"])

        response = self.client.post(
            "/api/receivers/merge",
            json={"target_id": target["id"], "source_ids": [target["id"]]},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/receivers/merge",
            json={"target_id": target["id"], "source_ids": [foreign["id"]]},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 404)

        response = self.client.post(
            "/api/receivers/merge",
            json={"target_id": foreign["id"], "source_ids": [source["id"]]},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 404)

        response = self.client.post(
            "/api/receivers/merge",
            json={"target_id": target["id"], "source_ids": [source["id"]]},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["receiver"]["id"], target["id"])
        self.assertEqual(body["merged_count"], 1)
        self.assertEqual(body["invoices_updated"], 1)

        refreshed = self.client.get(f"/api/invoices/{invoice['id']}", headers=self.headers).json()
        self.assertEqual(refreshed["receiver_id"], target["id"])
        self.assertEqual(self.client.get(f"/api/receivers/{source['id']}", headers=self.headers).status_code, 404)

        lookup = self.client.get("/api/receivers/lookup?name=acme", headers=self.headers)
        self.assertEqual(lookup.json()["id"], target["id"])

    def test_deleted_receiver_is_detached_from_invoices(self) -> None:
        receiver = self.create("/api/receivers", {"name": "Jane"})
        invoice = self.create_invoice(receiver_id=receiver["id"])

        response = self.client.delete(f"/api/receivers/{receiver['id']}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        refreshed = self.client.get(f"/api/invoices/{invoice['id']}", headers=self.headers).json()
        self.assertIsNone(refreshed["receiver_id"])

    def test_records_are_scoped_to_owner(self) -> None:
        invoice = self.create_invoice()
        path = f"/api/invoices/{invoice['id']}"

        self.assertEqual(self.client.get(path, headers=self.other_headers).status_code, 404)
        self.assertEqual(self.client.delete(path, headers=self.other_headers).status_code, 404)
        response = self.client.patch(f"{path}/status", json={"status": "paid"}, headers=self.other_headers)
        self.assertEqual(response.status_code, 404)

        response = self.client.patch(f"{path}/status", json={"status": "PAID"}, headers=self.headers)
        self.assertEqual(response.json()["status"], "paid")
        response = self.client.patch(f"{path}/status", json={"status": "void"}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_fx_rate_endpoint(self) -> None:
        response = self.client.get("/api/fx/rate?from=eur&to=usd", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()["rate"]), Decimal("1.10"))


if __name__ == "__main__":
    unittest.main()
