import argparse
import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from finance_tracker import create_app

ACCOUNTS = [
    ("My Checking", "checking", 2500.0),
    ("Savings Account", "savings", 10000.0),
    ("Credit Card", "credit", 0.0),
]
CATEGORIES = [
    ("Salary", "income"),
    ("Freelance", "income"),
    ("Groceries", "expense"),
    ("Transport", "expense"),
    ("Utilities", "expense"),
    ("Entertainment", "expense"),
]
GOALS = [
    ("Emergency Fund", 1500.0, 5000.0),
    ("Vacation", 400.0, 2000.0),
]
EXPENSE_TITLES = {
    "Groceries": ["Supermarket", "Farmers market", "Bakery"],
    "Transport": ["Gas", "Bus pass", "Parking"],
    "Utilities": ["Electricity", "Internet", "Water"],
    "Entertainment": ["Cinema", "Concert", "Streaming"],
}


def build_csv_lines(count):
    lines = ["Type,Title,Amount,Transaction Date,Account,Category,From Account,To Account,Frequency,Notes"]
    start = date.today() - timedelta(days=count * 2)
    for i in range(count):
        day = (start + timedelta(days=i * 2)).isoformat()
        roll = random.random()
        if roll < 0.1:
            lines.append(f"INCOME,Salary,{random.uniform(2500, 4000):.2f},{day},My Checking,Salary,,,monthly,")
        elif roll < 0.2:
            lines.append(f"TRANSFER,Savings top-up,{random.uniform(50, 300):.2f},{day},,,My Checking,Savings Account,,")
        else:
            category = random.choice(list(EXPENSE_TITLES))
            title = random.choice(EXPENSE_TITLES[category])
            account = random.choice(["My Checking", "Credit Card"])
            lines.append(f"EXPENSE,{title},{random.uniform(5, 200):.2f},{day},{account},{category},,,none,")
    return lines


def main():
    parser = argparse.ArgumentParser(description="Seed a demo user and write a sample import CSV")
    parser.add_argument("--rows", type=int, default=40, help="Number of CSV rows to generate")
    parser.add_argument("--output", default="sample_import.csv", help="Where to write the CSV")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        user_id = db.insert(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        for name, account_type, balance in ACCOUNTS:
            db.execute(
                "INSERT INTO accounts (user_id, name, type, currency, balance) VALUES (?, ?, ?, ?, ?)",
                (user_id, name, account_type, app.config["DEFAULT_CURRENCY"], balance),
            )
        for name, category_type in CATEGORIES:
            db.execute(
                "INSERT INTO categories (user_id, name, type) VALUES (?, ?, ?)",
                (user_id, name, category_type),
            )
        for name, current_amount, target_amount in GOALS:
            db.execute(
                "INSERT INTO goals (user_id, name, current_amount, target_amount) VALUES (?, ?, ?, ?)",
                (user_id, name, current_amount, target_amount),
            )
        db.commit()

    with open(args.output, "w", encoding="utf-8") as handle:
        handle.write("\n".join(build_csv_lines(args.rows)) + "\n")

    print(f"Sample data generated. Login with demo / demo123, then import {args.output}")
    print(f"  flask --app finance_tracker import-csv {args.output} --username demo")


if __name__ == "__main__":
    main()
