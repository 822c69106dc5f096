import os
import tempfile
import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from pocketbook import main
from pocketbook.db import init_db, make_engine
from pocketbook.exchange_rates import StaticRateProvider

TEST_RATES = {"USD": Decimal("1"), "PEN": Decimal("4"), "EUR": Decimal("0.5")}


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.engine = make_engine(f"sqlite:///{os.path.join(tmpdir.name, 'test.db')}")
        self.addCleanup(self.engine.dispose)
        init_db(self.engine)

        for target, value in (
            ("engine", self.engine),
            ("RATE_PROVIDER", StaticRateProvider(rates=TEST_RATES)),
        ):
            patcher = patch.object(main, target, value)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.client = TestClient(main.app)

    def signup(self, email: str = "ana@example.com", password: str = "secret") -> dict:
        response = self.client.post("/auth/signup", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        user = response.json()
        return {"x-user-id": str(user["id"])}

    def category_id(self, headers: dict, name: str) -> int:
        response = self.client.get("/categories", headers=headers)
        return next(item["id"] for item in response.json() if item["name"] == name)


class AuthTests(ApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.json(), {"status": "ok"})

    def test_signup_then_login(self) -> None:
        self.signup()

        response = self.client.post(
            "/auth/login", json={"email": "ANA@example.com", "password": "secret"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "ana@example.com")

    def test_duplicate_signup_conflicts(self) -> None:
        self.signup()

        response = self.client.post(
            "/auth/signup", json={"email": "ana@example.com", "password": "other"}
        )

        self.assertEqual(response.status_code, 409)

    def test_wrong_password_is_rejected(self) -> None:
        self.signup()

        response = self.client.post(
            "/auth/login", json={"email": "ana@example.com", "password": "nope"}
        )

        self.assertEqual(response.status_code, 401)

    def test_password_over_bcrypt_limit_is_rejected(self) -> None:
        response = self.client.post(
            "/auth/signup", json={"email": "ana@example.com", "password": "p" * 100}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Password must be at most 72 bytes.")

    def test_login_with_over_long_password_is_unauthorized(self) -> None:
        self.signup()

        response = self.client.post(
            "/auth/login", json={"email": "ana@example.com", "password": "ñ" * 40}
        )

        self.assertEqual(response.status_code, 401)

    def test_missing_identity_is_rejected(self) -> None:
        self.assertEqual(self.client.get("/accounts").status_code, 401)
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "abc"}).status_code, 400)
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "999"}).status_code, 404)


class CatalogTests(ApiTestCase):
    def test_currencies_are_seeded(self) -> None:
        codes = [item["code"] for item in self.client.get("/currencies").json()]

        self.assertIn("USD", codes)
        self.assertIn("PEN", codes)
        self.assertEqual(codes, sorted(codes))

    def test_default_categories_filtered_by_type(self) -> None:
        headers = self.signup()

        response = self.client.get("/categories", params={"type": "income"}, headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json())
        self.assertTrue(all(item["type"] == "income" for item in response.json()))
        self.assertTrue(all(item["is_default"] for item in response.json()))

    def test_create_category_uses_default_icon(self) -> None:
        headers = self.signup()

        response = self.client.post("/categories", json={"name": "  Gym "}, headers=headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["name"], "Gym")
        self.assertEqual(body["type"], "expense")
        self.assertEqual(body["icon"], "📌")
        self.assertFalse(body["is_default"])

    def test_duplicate_category_conflicts_within_type(self) -> None:
        headers = self.signup()
        self.client.post("/categories", json={"name": "Pets", "icon": "🐶"}, headers=headers)

        duplicate = self.client.post("/categories", json={"name": "Pets"}, headers=headers)
        other_type = self.client.post(
            "/categories", json={"name": "Pets", "type": "income"}, headers=headers
        )

        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["detail"], "Category already exists.")
        self.assertEqual(other_type.status_code, 200)

    def test_category_names_are_scoped_per_user(self) -> None:
        first = self.signup("a@example.com")
        second = self.signup("b@example.com")
        self.client.post("/categories", json={"name": "Pets"}, headers=first)

        response = self.client.post("/categories", json={"name": "Pets"}, headers=second)

        self.assertEqual(response.status_code, 200)

    def test_blank_category_name_is_rejected(self) -> None:
        headers = self.signup()

        response = self.client.post("/categories", json={"name": "   "}, headers=headers)

        self.assertEqual(response.status_code, 400)

    def test_icon_suggestions(self) -> None:
        response = self.client.get("/categories/icons", params={"type": "income"})

        self.assertEqual(response.status_code, 200)
        self.assertIn("💰", response.json()["icons"])

    def test_accounts_and_payment_methods(self) -> None:
        headers = self.signup()

        account = self.client.post(
            "/accounts", json={"name": "Wallet", "type": "cash", "balance": "20"}, headers=headers
        )
        method = self.client.post("/payment-methods", json={"name": "Debit card"}, headers=headers)
        bad_account = self.client.post(
            "/accounts", json={"name": "X", "type": "piggy"}, headers=headers
        )

        self.assertEqual(account.status_code, 200)
        self.assertEqual(Decimal(account.json()["balance"]), Decimal("20"))
        self.assertEqual(method.status_code, 200)
        self.assertEqual(bad_account.status_code, 400)
        self.assertEqual(len(self.client.get("/payment-methods", headers=headers).json()), 1)


class TransactionTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.signup()
        response = self.client.post(
            "/accounts",
            json={"name": "Checking", "type": "checking", "balance": "1000"},
            headers=self.headers,
        )
        self.account_id = response.json()["id"]

    def balance(self) -> Decimal:
        accounts = self.client.get("/accounts", headers=self.headers).json()
        return Decimal(next(item["balance"] for item in accounts if item["id"] == self.account_id))

    def test_foreign_expense_is_converted_and_debited(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "type": "expense",
                "amount": "100",
                "currency": "pen",
                "description": "Lunch",
                "category_id": self.category_id(self.headers, "Food"),
                "account_id": self.account_id,
                "date": date.today().isoformat(),
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["currency"], "PEN")
        self.assertEqual(body["currency_symbol"], "S/")
        self.assertEqual(Decimal(body["amount_in_base"]), Decimal("25"))
        self.assertEqual(Decimal(body["exchange_rate_used"]), Decimal("0.25"))
        self.assertEqual(body["category"], "Food")
        self.assertEqual(self.balance(), Decimal("900"))

    def test_income_is_credited_to_account(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "type": "income",
                "amount": "250",
                "account_id": self.account_id,
                "date": date.today().isoformat(),
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["exchange_rate_used"]), Decimal("1"))
        self.assertEqual(self.balance(), Decimal("1250"))

    def test_unavailable_rate_writes_nothing(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "type": "expense",
                "amount": "50",
                "currency": "BRL",
                "account_id": self.account_id,
                "date": date.today().isoformat(),
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(self.client.get("/transactions", headers=self.headers).json(), [])
        self.assertEqual(self.balance(), Decimal("1000"))

    def test_validation_errors(self) -> None:
        base = {"type": "expense", "amount": "10", "date": date.today().isoformat()}

        cases = [
            (dict(base, amount="0"), 400),
            (dict(base, type="transfer"), 400),
            (dict(base, currency="XYZ"), 400),
            (dict(base, account_id=9999), 404),
            (dict(base, category_id=self.category_id(self.headers, "Salary")), 400),
        ]
        for payload, status in cases:
            with self.subTest(payload=payload):
                response = self.client.post("/transactions", json=payload, headers=self.headers)
                self.assertEqual(response.status_code, status, response.text)

    def test_recent_transactions_newest_first(self) -> None:
        for day, amount in (("2024-01-05", "1"), ("2024-03-05", "3"), ("2024-02-05", "2")):
            self.client.post(
                "/transactions",
                json={"type": "expense", "amount": amount, "date": day},
                headers=self.headers,
            )

        response = self.client.get("/transactions", params={"limit": 2}, headers=self.headers)

        self.assertEqual([item["date"] for item in response.json()], ["2024-03-05", "2024-02-05"])

    def test_exchange_rate_lookup(self) -> None:
        response = self.client.get(
            "/exchange-rates", params={"from": "PEN", "to": "USD", "amount": "100"}
        )
        invalid = self.client.get("/exchange-rates", params={"from": "SOLES"})
        missing = self.client.get("/exchange-rates", params={"from": "JPY"})

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["rate"]), Decimal("0.25"))
        self.assertEqual(Decimal(response.json()["converted_amount"]), Decimal("25"))
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(missing.status_code, 503)


class MonthlyBudgetTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.signup()

    def configure(self, fixed_income: str = "1000", savings_percent: int = 30):
        return self.client.put(
            "/monthly-config",
            json={"fixed_income": fixed_income, "savings_percent": savings_percent},
            headers=self.headers,
        )

    def spend(self, amount: str, category: str | None = "Food") -> None:
        payload = {"type": "expense", "amount": amount, "date": date.today().isoformat()}
        if category:
            payload["category_id"] = self.category_id(self.headers, category)
        response = self.client.post("/transactions", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)

    def test_config_is_upserted_for_current_month(self) -> None:
        self.assertEqual(self.client.get("/monthly-config", headers=self.headers).status_code, 404)

        created = self.configure()
        updated = self.configure("2000", 50)

        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(Decimal(created.json()["budget"]), Decimal("700"))
        self.assertEqual(Decimal(created.json()["savings_goal"]), Decimal("300"))
        self.assertEqual(created.json()["month"], date.today().replace(day=1).isoformat())
        self.assertEqual(updated.json()["id"], created.json()["id"])
        self.assertEqual(Decimal(updated.json()["budget"]), Decimal("1000"))
        self.assertIsNotNone(updated.json()["updated_at"])

        fetched = self.client.get(
            "/monthly-config", params={"month": date.today().strftime("%Y-%m")}, headers=self.headers
        )
        self.assertEqual(fetched.json()["savings_percent"], 50)

    def test_invalid_config_is_rejected(self) -> None:
        self.assertEqual(self.configure("1000", 120).status_code, 400)
        self.assertEqual(self.configure("-5", 10).status_code, 400)

    def test_budget_summary_flags_overspending(self) -> None:
        self.configure()
        self.spend("750")

        response = self.client.get("/budget/summary", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(body["spent_this_month"]), Decimal("750"))
        self.assertEqual(Decimal(body["remaining"]), Decimal("-50"))
        self.assertEqual(body["status"], "over")
        self.assertIn("50.00", body["warning"])

    def test_budget_summary_requires_config(self) -> None:
        self.assertEqual(self.client.get("/budget/summary", headers=self.headers).status_code, 404)
        self.assertEqual(self.client.get("/reports/stats", headers=self.headers).status_code, 404)

    def test_stats_break_down_current_month(self) -> None:
        self.configure()
        self.spend("300", "Food")
        self.spend("100", "Transport")
        self.spend("50", None)

        response = self.client.get("/reports/stats", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(body["total_spent"]), Decimal("450"))
        self.assertEqual(Decimal(body["actual_savings"]), Decimal("250"))
        self.assertEqual(
            [item["name"] for item in body["categories"]], ["Food", "Transport", "Uncategorized"]
        )
        self.assertEqual(body["top_category"]["name"], "Food")
        self.assertEqual(len(body["monthly_comparison"]), 1)
        self.assertEqual(Decimal(body["monthly_comparison"][0]["expenses"]), Decimal("450"))
        self.assertIsNone(body["trend"])

    def test_dashboard_asks_for_config_first(self) -> None:
        response = self.client.get("/dashboard", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["needs_config"])
        self.assertIsNone(body["budget"])
        self.assertTrue(body["categories"])

    def test_dashboard_with_config(self) -> None:
        self.configure()
        self.spend("100")

        body = self.client.get("/dashboard", headers=self.headers).json()

        self.assertFalse(body["needs_config"])
        self.assertEqual(body["budget"]["status"], "ok")
        self.assertEqual(Decimal(body["stats"]["total_spent"]), Decimal("100"))
        self.assertEqual(len(body["recent_transactions"]), 1)


if __name__ == "__main__":
    unittest.main()
