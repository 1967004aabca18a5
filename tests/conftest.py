from datetime import date
from pathlib import Path

import pytest

from finance_tracker import create_app
from finance_tracker.reference import ReferenceSnapshot

AS_OF = date(2024, 6, 30)

ACCOUNTS = [
    {"id": 1, "name": "My Checking", "currency": "USD", "balance": 1000.0},
    {"id": 2, "name": "Savings Account", "currency": "USD", "balance": 5000.0},
    {"id": 3, "name": "Credit Card", "currency": "EUR", "balance": 0.0},
]
CATEGORIES = [
    {"id": 10, "name": "Salary", "type": "income"},
    {"id": 11, "name": "Groceries", "type": "expense"},
    {"id": 12, "name": "Transport", "type": "expense"},
    {"id": 13, "name": "Gifts", "type": "expense"},
]
GOALS = [
    {"id": 20, "name": "Emergency Fund", "current_amount": 300.0, "target_amount": 5000.0},
    {"id": 21, "name": "Vacation", "current_amount": 0.0, "target_amount": 2000.0},
]


@pytest.fixture()
def ref():
    return ReferenceSnapshot(accounts=ACCOUNTS, categories=CATEGORIES, goals=GOALS, as_of=AS_OF)


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, username="user1", password="password"):
    return client.post("/register", data={"username": username, "password": password})


def login(client, username="user1", password="password"):
    return client.post("/login", data={"username": username, "password": password})


def seed_reference_data(app, username="user1"):
    """Give a registered user the accounts, categories and goals the sample CSV names."""
    with app.app_context():
        db = app.get_db()
        user_id = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()["id"]
        for name, balance in [("My Checking", 1000.0), ("Savings Account", 5000.0), ("Credit Card", 0.0)]:
            db.execute(
                "INSERT INTO accounts (user_id, name, currency, balance) VALUES (?, ?, 'USD', ?)",
                (user_id, name, balance),
            )
        for name, category_type in [("Salary", "income"), ("Groceries", "expense"), ("Transport", "expense")]:
            db.execute(
                "INSERT INTO categories (user_id, name, type) VALUES (?, ?, ?)",
                (user_id, name, category_type),
            )
        db.execute(
            "INSERT INTO goals (user_id, name, current_amount, target_amount) VALUES (?, 'Emergency Fund', 300, 5000)",
            (user_id,),
        )
        db.commit()
    return user_id
