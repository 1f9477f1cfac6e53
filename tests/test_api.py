"""
Integration tests for the Loan Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from loan_ledger.api import create_app


@pytest.fixture
def client(ledger):
    """Test client over an in-memory ledger"""
    return TestClient(create_app(ledger))


@pytest.fixture
def customer_id(client):
    r = client.post("/customers", json={"name": "Maria Silva", "phone": "555-0100"})
    assert r.status_code == 201
    return r.json()["id"]


@pytest.fixture
def loan(client, customer_id):
    r = client.post("/loans", json={
        "customer_id": customer_id,
        "principal": "1000",
        "repayable": "1200",
        "installment_count": 4,
        "origination_date": "2024-01-01"
    })
    assert r.status_code == 201
    return r.json()


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestCustomerFlow:
    """End-to-end customer management tests"""

    def test_create_and_get(self, client, customer_id):
        r = client.get(f"/customers/{customer_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Maria Silva"
        assert data["aggregates"]["total_loans"] == 0

    def test_duplicate_is_conflict(self, client, customer_id):
        r = client.post("/customers", json={"name": "Maria Silva"})
        assert r.status_code == 409
        assert r.json()["detail"]["kind"] == "conflict"

    def test_missing_is_404(self, client):
        r = client.get("/customers/nope")
        assert r.status_code == 404
        assert r.json()["detail"]["kind"] == "not_found"

    def test_update_and_note(self, client, customer_id):
        r = client.put(f"/customers/{customer_id}", json={"address": "Rua A, 10"})
        assert r.status_code == 200
        assert r.json()["address"] == "Rua A, 10"

        r = client.put(f"/customers/{customer_id}/note", json={"note": "pays on Fridays"})
        assert r.json()["note"] == "pays on Fridays"

    def test_list_and_delete(self, client, customer_id):
        assert len(client.get("/customers").json()) == 1
        r = client.delete(f"/customers/{customer_id}")
        assert r.status_code == 200
        assert client.get("/customers").json() == []


class TestLoanFlow:
    """End-to-end loan tests"""

    def test_create_returns_schedule(self, loan):
        assert loan["status"] == "Pending"
        assert [i["amount"] for i in loan["installments"]] == ["300.00"] * 4
        assert loan["installments"][0]["due_date"] == "2024-02-01"

    def test_invalid_terms_are_400(self, client, customer_id):
        r = client.post("/loans", json={
            "customer_id": customer_id,
            "principal": "1000",
            "repayable": "900",
            "installment_count": 4,
            "origination_date": "2024-01-01"
        })
        assert r.status_code == 400
        assert r.json()["detail"]["kind"] == "validation_error"

    def test_pay_installment_and_aggregates(self, client, customer_id, loan):
        first = loan["installments"][0]["id"]
        r = client.patch(f"/installments/{first}/status", json={"status": "Paid"})
        assert r.status_code == 200
        assert r.json()["installment_status"] == "Paid"
        assert r.json()["loan_status"] == "Pending"

        aggregates = client.get(f"/customers/{customer_id}/aggregates").json()
        assert aggregates["total_profit"] == "50.00"
        assert aggregates["open_loans"] == 1

    def test_invalid_status_is_400(self, client, loan):
        first = loan["installments"][0]["id"]
        r = client.patch(f"/installments/{first}/status", json={"status": "Overdue"})
        assert r.status_code == 400

    def test_edit_loan(self, client, loan):
        r = client.put(f"/loans/{loan['id']}", json={"installment_count": 6})
        assert r.status_code == 200
        data = r.json()
        assert data["installment_count"] == 6
        assert [i["amount"] for i in data["installments"]] == ["200.00"] * 6

    def test_mark_paid(self, client, loan):
        r = client.patch(f"/loans/{loan['id']}/paid")
        assert r.status_code == 400

        for installment in loan["installments"]:
            client.patch(f"/installments/{installment['id']}/status", json={"status": "Paid"})
        r = client.patch(f"/loans/{loan['id']}/paid")
        assert r.status_code == 200
        assert r.json()["status"] == "Paid"

        assert [l["id"] for l in client.get("/loans/paid").json()] == [loan["id"]]
        assert client.get("/loans").json() == []

    def test_delete_loan(self, client, loan):
        assert client.delete(f"/loans/{loan['id']}").status_code == 200
        assert client.get(f"/loans/{loan['id']}").status_code == 404


class TestSweepFlow:
    """Overdue sweep through the API"""

    def test_sweep_and_overdue_listing(self, client, clock, customer_id, loan):
        clock.set_date(date(2024, 6, 1))

        r = client.post("/sweeps")
        assert r.status_code == 200
        assert r.json()["ran"] is True
        assert r.json()["installments_marked"] == 4

        overdue = client.get("/installments/overdue").json()
        assert len(overdue) == 4
        assert overdue[0]["customer_name"] == "Maria Silva"
        assert overdue[0]["loan_status"] == "OverdueStatus"

        installments = client.get("/installments", params={"customer_id": customer_id}).json()
        assert {i["status"] for i in installments} == {"Overdue"}
