from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_session_token
from database import Base
import main
from main import app, get_clock, get_db


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_clock] = lambda: (lambda: date(2024, 1, 3))
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _headers(user_id: int = 1) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def _create_category(client: TestClient, user_id: int = 1) -> int:
    resp = client.post(
        "/api/categories",
        json={"name": "Bills", "type": "expense"},
        headers=_headers(user_id),
    )
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _create_expense(client: TestClient, category_id: int, **overrides) -> dict:
    payload = {
        "name": "Gym",
        "categoryId": category_id,
        "amount": 50,
        "frequency": "weekly",
        "nextDue": "2024-01-01",
        "autoAdd": True,
    }
    payload.update(overrides)
    resp = client.post("/api/recurring-expenses", json=payload, headers=_headers())
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_requests_without_identity_are_rejected(client):
    resp = client.get("/api/recurring-expenses/due")
    assert resp.status_code == 401
    assert resp.json() == {"data": None, "error": "Not authenticated"}

    resp = client.get(
        "/api/recurring-expenses", headers={"Authorization": "Bearer forged"}
    )
    assert resp.status_code == 401


def test_session_cookie_is_accepted(client):
    client.cookies.set("session", issue_session_token(1))
    try:
        resp = client.get("/api/categories")
    finally:
        client.cookies.clear()
    assert resp.status_code == 200
    assert resp.json() == {"data": [], "error": None}


def test_create_expense_uses_camel_case(client):
    category_id = _create_category(client)
    expense = _create_expense(client, category_id)

    assert expense["name"] == "Gym"
    assert expense["categoryId"] == category_id
    assert expense["amount"] == 50.0
    assert expense["nextDue"] == "2024-01-01"
    assert expense["isActive"] is True
    assert expense["autoAdd"] is True


def test_invalid_amount_is_rejected(client):
    category_id = _create_category(client)
    resp = client.post(
        "/api/recurring-expenses",
        json={
            "name": "Gym",
            "categoryId": category_id,
            "amount": -5,
            "frequency": "weekly",
        },
        headers=_headers(),
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["data"] is None
    assert "Amount must be positive" in body["error"]


def test_due_list_honours_auto_add_filter(client):
    category_id = _create_category(client)
    auto = _create_expense(client, category_id, name="Auto")
    manual = _create_expense(client, category_id, name="Manual", autoAdd=False)
    _create_expense(client, category_id, name="Later", nextDue="2024-02-01")

    resp = client.get("/api/recurring-expenses/due", headers=_headers())
    assert [e["id"] for e in resp.json()["data"]] == [auto["id"], manual["id"]]

    resp = client.get(
        "/api/recurring-expenses/due",
        params={"autoAddOnly": "true"},
        headers=_headers(),
    )
    assert [e["id"] for e in resp.json()["data"]] == [auto["id"]]


def test_materialize_with_custom_amount(client):
    category_id = _create_category(client)
    expense = _create_expense(client, category_id)

    resp = client.post(
        f"/api/recurring-expenses/{expense['id']}/materialize",
        json={"amount": 75},
        headers=_headers(),
    )

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["amount"] == 75.0
    assert data["status"] == "materialized"
    assert data["occurrenceDate"] == "2024-01-01"
    assert data["nextDue"] == "2024-01-08"

    txn = client.get(
        f"/api/transactions/{data['transactionId']}", headers=_headers()
    ).json()["data"]
    assert txn["amount"] == 75.0
    assert txn["date"] == "2024-01-03"
    assert txn["isRecurring"] is True
    assert txn["recurringPattern"] == "weekly"
    assert txn["category"] == "Bills"

    stored = client.get(
        f"/api/recurring-expenses/{expense['id']}", headers=_headers()
    ).json()["data"]
    assert stored["amount"] == 50.0
    assert stored["nextDue"] == "2024-01-08"


def test_materialize_without_body_uses_expense_amount(client):
    category_id = _create_category(client)
    expense = _create_expense(client, category_id)

    resp = client.post(
        f"/api/recurring-expenses/{expense['id']}/materialize", headers=_headers()
    )

    assert resp.status_code == 201
    assert resp.json()["data"]["amount"] == 50.0


def test_process_due_reports_per_item_outcomes(client):
    category_id = _create_category(client)
    gym = _create_expense(client, category_id, name="Gym")
    music = _create_expense(
        client, category_id, name="Music", frequency="monthly", nextDue="2024-01-02"
    )
    _create_expense(client, category_id, name="Manual", autoAdd=False)

    resp = client.post("/api/recurring-expenses/process-due", headers=_headers())

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["processed"] == 2
    assert data["failed"] == 0
    assert [(o["expenseId"], o["status"]) for o in data["outcomes"]] == [
        (gym["id"], "materialized"),
        (music["id"], "materialized"),
    ]

    txns = client.get("/api/transactions", headers=_headers()).json()["data"]
    assert sorted(t["description"] for t in txns["items"]) == ["Gym", "Music"]
    assert txns["hasMore"] is False

    again = client.post("/api/recurring-expenses/process-due", headers=_headers())
    assert again.json()["data"]["processed"] == 0


def test_other_users_expense_is_not_found(client):
    category_id = _create_category(client)
    expense = _create_expense(client, category_id)

    resp = client.post(
        f"/api/recurring-expenses/{expense['id']}/materialize", headers=_headers(2)
    )

    assert resp.status_code == 404
    assert resp.json() == {"data": None, "error": "Recurring expense not found"}
    assert client.get("/api/transactions", headers=_headers()).json()["data"][
        "items"
    ] == []


def test_toggle_and_delete(client):
    category_id = _create_category(client)
    expense = _create_expense(client, category_id)

    resp = client.post(
        f"/api/recurring-expenses/{expense['id']}/toggle", headers=_headers()
    )
    assert resp.json()["data"]["isActive"] is False
    assert client.get("/api/recurring-expenses/active", headers=_headers()).json()[
        "data"
    ] == []

    resp = client.delete(f"/api/recurring-expenses/{expense['id']}", headers=_headers())
    assert resp.json() == {"data": {"success": True}, "error": None}
    resp = client.get(f"/api/recurring-expenses/{expense['id']}", headers=_headers())
    assert resp.status_code == 404


def test_statistics(client):
    category_id = _create_category(client)
    _create_expense(client, category_id, name="Rent", amount=1000, frequency="monthly")
    _create_expense(
        client,
        category_id,
        name="Insurance",
        amount=120,
        frequency="yearly",
        nextDue="2024-06-01",
        autoAdd=False,
    )

    resp = client.get("/api/recurring-expenses/statistics", headers=_headers())

    data = resp.json()["data"]
    assert data["activeCount"] == 2
    assert data["autoAddCount"] == 1
    assert data["dueCount"] == 1
    assert data["estimatedMonthly"] == 1010.0
    assert data["totalsByFrequency"] == {
        "weekly": 0.0,
        "monthly": 1000.0,
        "yearly": 120.0,
    }


def test_lifespan_starts_and_stops_scheduler(monkeypatch):
    calls = []
    monkeypatch.setattr(main.scheduler_manager, "start", lambda: calls.append("start"))
    monkeypatch.setattr(main.scheduler_manager, "stop", lambda: calls.append("stop"))

    with TestClient(app) as client:
        assert client.get("/healthz").json() == {"status": "ok"}
        assert calls == ["start"]

    assert calls == ["start", "stop"]
