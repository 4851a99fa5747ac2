"""
Integration tests for the Lending Core API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from datetime import timedelta
from fastapi.testclient import TestClient

from lending_core.api import create_app, LendingSystem, create_access_token
from lending_core.config import LendingConfig
from lending_core.storage import InMemoryStorage, SQLiteStorage


def make_system() -> LendingSystem:
    return LendingSystem(storage=InMemoryStorage(), config=LendingConfig(storage_backend="memory"))


@pytest.fixture
def client():
    """Test client with authentication disabled; every caller is an admin"""
    system = make_system()
    with TestClient(create_app(system=system, auth_enabled=False)) as test_client:
        yield test_client
    system.close()


def create_product(client) -> dict:
    r = client.post("/products", json={
        "name": "Personal Loan",
        "min_amount": "1,000",
        "max_amount": "500000",
        "interest_rate_percent": "12",
        "min_term_months": 1,
        "max_term_months": 36,
        "processing_fee_percent": "2",
        "late_payment_fee": "100"
    })
    assert r.status_code == 201
    return r.json()


def create_customer(client, customer_id: str = "test_user", approve_kyc: bool = True) -> dict:
    r = client.post("/customers", json={
        "first_name": "Grace",
        "last_name": "Achieng",
        "email": f"{customer_id}@example.com",
        "phone": "+254711000000",
        "customer_id": customer_id
    })
    assert r.status_code == 201
    if approve_kyc:
        r = client.put(f"/customers/{customer_id}/kyc", json={"status": "approved"})
        assert r.status_code == 200
    return r.json()


def apply(client, product_id: str, amount: str = "120000", term: int = 12, **extra) -> dict:
    r = client.post("/loans/apply", json={
        "product_id": product_id,
        "amount": amount,
        "term_months": term,
        "purpose": "Business stock",
        **extra
    })
    assert r.status_code == 201, r.text
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Lending Core API"
        assert "loans" in data["endpoints"]


class TestProductEndpoints:
    """Test loan product management"""

    def test_create_and_list_products(self, client):
        product = create_product(client)

        assert product["interest_rate"] == "0.12"
        assert product["processing_fee_rate"] == "0.02"
        assert product["min_amount"] == "1000.00"

        r = client.get("/loans/products")
        assert [p["id"] for p in r.json()["products"]] == [product["id"]]

        r = client.get(f"/products/{product['id']}")
        assert r.json()["name"] == "Personal Loan"

    def test_deactivated_product_not_listed(self, client):
        product = create_product(client)
        r = client.delete(f"/products/{product['id']}")
        assert r.status_code == 200
        assert r.json()["is_active"] is False
        assert client.get("/products").json()["products"] == []

    def test_invalid_product_bounds(self, client):
        r = client.post("/products", json={
            "name": "Broken",
            "min_amount": "5000",
            "max_amount": "1000",
            "interest_rate_percent": "12",
            "min_term_months": 1,
            "max_term_months": 12
        })
        assert r.status_code == 400

    def test_unknown_product(self, client):
        assert client.get("/products/missing").status_code == 404


class TestLoanLifecycle:
    """End-to-end loan flow"""

    def test_full_lifecycle(self, client):
        product = create_product(client)
        create_customer(client)

        loan = apply(client, product["id"])
        assert loan["status"] == "pending"
        assert loan["monthly_payment"] == "10661.85"
        assert loan["processing_fee"] == "2400.00"

        r = client.post(f"/loans/{loan['id']}/approve", json={})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"

        r = client.post(f"/loans/{loan['id']}/disburse", json={
            "method": "mobile_money",
            "account": "+254711000000",
            "reference": "MPESA-XYZ"
        })
        assert r.status_code == 200
        disbursed = r.json()
        assert disbursed["status"] == "active"

        r = client.get(f"/loans/{loan['id']}/repayments")
        schedule = r.json()["repayments"]
        assert len(schedule) == 12
        assert schedule[0]["interest_portion"] == "1200.00"
        assert all(entry["status"] == "pending" for entry in schedule)

        r = client.get(f"/loans/{loan['id']}")
        assert r.json()["is_overdue"] is False

        r = client.post(f"/loans/{loan['id']}/repay", json={
            "amount": disbursed["outstanding_balance"],
            "method": "mobile_money",
            "reference": "MPESA-PAY"
        })
        assert r.status_code == 200
        result = r.json()
        assert result["completed"] is True
        assert result["loan"]["status"] == "completed"
        assert result["loan"]["outstanding_balance"] == "0.00"

        r = client.get(f"/loans/{loan['id']}/transactions")
        types = sorted(t["type"] for t in r.json()["transactions"])
        assert types == ["disbursement", "fee", "repayment"]

        r = client.get("/loans")
        assert [l["id"] for l in r.json()["loans"]] == [loan["id"]]

    def test_partial_repayment_allocation(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"])
        client.post(f"/loans/{loan['id']}/approve", json={"approved_amount": "120,000"})
        client.post(f"/loans/{loan['id']}/disburse", json={"method": "cash", "account": "branch-01"})

        r = client.post(f"/loans/{loan['id']}/repay", json={"amount": "KES 5,000", "method": "cash"})
        assert r.status_code == 200
        allocation = r.json()["allocations"][0]
        assert allocation["interest"] == "1200.00"
        assert allocation["principal"] == "3800.00"
        assert allocation["status"] == "partial"

    def test_reject_and_reapply(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"])

        r = client.post(f"/loans/{loan['id']}/reject", json={"reason": "Incomplete documents"})
        assert r.json()["status"] == "rejected"
        assert r.json()["rejection_reason"] == "Incomplete documents"

        assert apply(client, product["id"], amount="5000")["status"] == "pending"

    def test_suspend_resume_and_waive(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"], amount="3000", term=3)
        client.post(f"/loans/{loan['id']}/approve", json={})
        client.post(f"/loans/{loan['id']}/disburse", json={"method": "cash", "account": "branch-01"})

        r = client.post(f"/loans/{loan['id']}/suspend", json={"reason": "Customer dispute"})
        assert r.json()["status"] == "suspended"
        r = client.post(f"/loans/{loan['id']}/resume")
        assert r.json()["status"] == "active"

        r = client.post(f"/loans/{loan['id']}/repayments/3/waive")
        assert r.status_code == 200
        r = client.post(f"/loans/{loan['id']}/repayments/3/waive")
        assert r.status_code == 409

    def test_admin_listing_and_overdue_refresh(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"])
        client.post(f"/loans/{loan['id']}/approve", json={})
        disbursed = client.post(
            f"/loans/{loan['id']}/disburse", json={"method": "cash", "account": "branch-01"}
        ).json()

        r = client.get("/loans/admin/all", params={"status": "active", "limit": 5})
        assert r.status_code == 200
        assert r.json()["total"] == 1
        assert r.json()["limit"] == 5

        r = client.post("/loans/overdue/refresh", json={"as_of": disbursed["final_payment_date"]})
        assert r.status_code == 200
        assert r.json()["loans_checked"] == 1
        assert r.json()["loans_overdue"] == 1


class TestErrorResponses:
    """Domain errors map to HTTP status codes"""

    def test_amount_below_minimum(self, client):
        product = create_product(client)
        create_customer(client)
        r = client.post("/loans/apply", json={
            "product_id": product["id"], "amount": "500", "term_months": 12, "purpose": "Rent"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

    def test_unknown_loan(self, client):
        r = client.get("/loans/does-not-exist")
        assert r.status_code == 404
        assert "not found" in r.json()["detail"]

    def test_double_approval(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"])

        assert client.post(f"/loans/{loan['id']}/approve", json={}).status_code == 200
        r = client.post(f"/loans/{loan['id']}/approve", json={})
        assert r.status_code == 409
        assert r.json()["error"] == "ConflictError"

    def test_kyc_required(self, client):
        product = create_product(client)
        create_customer(client, customer_id="no_kyc", approve_kyc=False)
        r = client.post("/loans/apply", json={
            "product_id": product["id"], "amount": "5000", "term_months": 6,
            "purpose": "Rent", "user_id": "no_kyc"
        })
        assert r.status_code == 403

    def test_overpayment(self, client):
        product = create_product(client)
        create_customer(client)
        loan = apply(client, product["id"], amount="3000", term=3)
        client.post(f"/loans/{loan['id']}/approve", json={})
        client.post(f"/loans/{loan['id']}/disburse", json={"method": "cash", "account": "branch-01"})

        r = client.post(f"/loans/{loan['id']}/repay", json={"amount": "999999", "method": "cash"})
        assert r.status_code == 400
        assert "amount_owed" in r.json()["details"]


class TestStorageFailures:
    """Storage driver failures reach the client as typed 500 responses"""

    def test_storage_failure_returns_internal_error(self):
        system = LendingSystem(storage=SQLiteStorage(), config=LendingConfig(storage_backend="sqlite"))
        try:
            with TestClient(create_app(system=system, auth_enabled=False)) as client:
                create_product(client)
                system.storage._connection.execute("DROP TABLE loan_products")

                r = client.get("/products")

                assert r.status_code == 500
                assert r.json()["error"] == "InternalError"
                assert r.json()["details"]["backend"] == "sqlite"
        finally:
            system.close()


class TestAuthentication:
    """JWT bearer authentication and role checks"""

    def setup_method(self):
        self.system = make_system()
        self.client = TestClient(create_app(system=self.system, auth_enabled=True))
        self.config = self.system.config

    def teardown_method(self):
        self.system.close()

    def headers(self, user_id: str, role: str = "customer", **kwargs) -> dict:
        token = create_access_token(user_id, role, config=self.config, **kwargs)
        return {"Authorization": f"Bearer {token}"}

    def test_missing_token(self):
        assert self.client.get("/loans").status_code == 401

    def test_invalid_token(self):
        r = self.client.get("/loans", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_expired_token(self):
        r = self.client.get("/loans", headers=self.headers("cust_1", expires_minutes=-1))
        assert r.status_code == 401

    def test_health_is_public(self):
        assert self.client.get("/health").status_code == 200

    def test_customer_and_officer_roles(self):
        officer = self.headers("officer_1", "loan_officer")
        customer = self.headers("cust_1")

        r = self.client.post("/products", headers=customer, json={
            "name": "Sneaky", "min_amount": "1", "max_amount": "2",
            "interest_rate_percent": "1", "min_term_months": 1, "max_term_months": 2
        })
        assert r.status_code == 403

        product = self.client.post("/products", headers=officer, json={
            "name": "Personal Loan", "min_amount": "1000", "max_amount": "500000",
            "interest_rate_percent": "12", "min_term_months": 1, "max_term_months": 36
        }).json()

        # Customers create their own profile regardless of the id they send
        r = self.client.post("/customers", headers=customer, json={
            "first_name": "Grace", "last_name": "Achieng",
            "email": "grace@example.com", "customer_id": "someone_else"
        })
        assert r.json()["id"] == "cust_1"

        r = self.client.put("/customers/cust_1/kyc", headers=customer, json={"status": "approved"})
        assert r.status_code == 403
        r = self.client.put("/customers/cust_1/kyc", headers=officer, json={"status": "approved"})
        assert r.status_code == 200

        r = self.client.post("/loans/apply", headers=customer, json={
            "product_id": product["id"], "amount": "10000", "term_months": 6, "purpose": "Rent"
        })
        assert r.status_code == 201
        loan_id = r.json()["id"]

        assert self.client.get("/loans", headers=customer).status_code == 200
        assert self.client.post(f"/loans/{loan_id}/approve", headers=customer, json={}).status_code == 403
        r = self.client.post(f"/loans/{loan_id}/approve", headers=officer, json={})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"

        # Another customer cannot see the loan
        other = self.headers("cust_2")
        assert self.client.get(f"/loans/{loan_id}", headers=other).status_code == 404
        assert self.client.get(f"/customers/cust_1", headers=other).status_code == 403

    def test_customer_repayment_is_charged_late_fee(self):
        officer = self.headers("officer_1", "loan_officer")
        customer = self.headers("cust_1")

        product = self.client.post("/products", headers=officer, json={
            "name": "Personal Loan", "min_amount": "1000", "max_amount": "500000",
            "interest_rate_percent": "12", "min_term_months": 1, "max_term_months": 36,
            "late_payment_fee": "100"
        }).json()
        self.client.post("/customers", headers=customer, json={
            "first_name": "Grace", "last_name": "Achieng", "email": "grace@example.com"
        })
        self.client.put("/customers/cust_1/kyc", headers=officer, json={"status": "approved"})
        loan_id = self.client.post("/loans/apply", headers=customer, json={
            "product_id": product["id"], "amount": "10000", "term_months": 6, "purpose": "Rent"
        }).json()["id"]
        self.client.post(f"/loans/{loan_id}/approve", headers=officer, json={})
        r = self.client.post(f"/loans/{loan_id}/disburse", headers=officer, json={
            "method": "mobile_money", "account": "+254711000000"
        })
        assert r.status_code == 200

        # Push every due date 100 days into the past
        ledger = self.system.repayment_ledger
        for entry in ledger.get_schedule(loan_id):
            entry.due_date = entry.due_date - timedelta(days=100)
            self.system.storage.save(ledger.table_name, entry.id, entry.to_dict())

        r = self.client.post(f"/loans/{loan_id}/repay", headers=customer, json={
            "amount": "2500", "method": "mobile_money", "as_of": "2000-01-01"
        })
        assert r.status_code == 403
        assert ledger.get_installment(loan_id, 1).amount_paid.is_zero()

        r = self.client.post(f"/loans/{loan_id}/repay", headers=customer, json={
            "amount": "2500", "method": "mobile_money"
        })
        assert r.status_code == 200
        first = r.json()["allocations"][0]
        assert first["payment_number"] == 1
        assert Decimal(first["late_fee"]) > Decimal('100')
        assert "penalty" in [t["type"] for t in r.json()["transactions"]]
