import io
import json
from datetime import datetime, timedelta

import pytest

from conftest import login, register, seed_reference_data

from finance_tracker import committer
from finance_tracker.committer import commit_row
from finance_tracker.csv_parser import sample_csv
from finance_tracker.errors import WriteError
from finance_tracker.store import SqlTransactionStore


def login_with_reference_data(client):
    register(client)
    seed_reference_data(client.application)
    login(client)


def upload(client, text, filename="transactions.csv", **data):
    payload = {"csv_file": (io.BytesIO(text.encode("utf-8")), filename)}
    payload.update(data)
    return client.post("/import/csv", data=payload, content_type="multipart/form-data")


def test_register_login_logout(client):
    response = register(client)
    assert response.status_code == 201

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE username = ?", ("user1",)).fetchone()
    assert user is not None
    assert user["password_hash"] != "password"

    assert register(client).status_code == 409
    assert login(client).get_json()["username"] == "user1"
    assert client.get("/logout").get_json() == {"ok": True}
    assert client.get("/api/reference").status_code == 401


def test_login_rejects_incorrect_password(client):
    register(client)

    response = login(client, password="wrong")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Incorrect username or password."


def test_import_requires_login(client):
    response = upload(client, sample_csv())

    assert response.status_code == 401


def test_reference_endpoint_lists_user_data(client):
    login_with_reference_data(client)

    data = client.get("/api/reference").get_json()

    assert [account["name"] for account in data["accounts"]] == ["Credit Card", "My Checking", "Savings Account"]
    assert {category["type"] for category in data["categories"]} == {"income", "expense"}
    assert data["goals"][0]["name"] == "Emergency Fund"


def test_sample_csv_download(client):
    response = client.get("/import/sample.csv")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "attachment" in response.headers["Content-Disposition"]
    assert response.get_data(as_text=True).startswith("Type,Title,Amount,Transaction Date")


def test_full_import_flow(client):
    login_with_reference_data(client)

    response = upload(client, sample_csv())
    assert response.status_code == 201
    staged = response.get_json()
    import_id = staged["import_id"]
    assert staged["mapping"]["Title"] == "description"
    assert staged["mapping_problems"] == []
    assert staged["counts"]["total"] == 4

    validated = client.post(f"/import/{import_id}/validate").get_json()
    assert validated["stage"] == "review"
    assert validated["counts"]["invalid"] == 0

    result = client.post(f"/import/{import_id}/commit").get_json()
    assert result["success"] is True
    assert result["successful_imports"] == 4
    assert result["summary"] == "Imported 4 transactions successfully"

    with client.application.app_context():
        db = client.application.get_db()
        transactions = db.execute("SELECT type, amount, import_id FROM transactions ORDER BY id").fetchall()
        balances = {
            row["name"]: row["balance"]
            for row in db.execute("SELECT name, balance FROM accounts").fetchall()
        }
        audit = db.execute("SELECT action, entity_id, meta_json FROM audit_logs").fetchall()

    assert [row["type"] for row in transactions] == [
        "expense",
        "expense",
        "income",
        "transfer-sender",
        "transfer-receiver",
    ]
    assert all(row["amount"] > 0 for row in transactions)
    assert {row["import_id"] for row in transactions} == {import_id}
    assert balances["My Checking"] == 1000 - 150.50 + 5000 - 1000
    assert balances["Credit Card"] == -75.0
    assert balances["Savings Account"] == 6000.0
    assert audit[0]["action"] == "import_csv"
    assert json.loads(audit[0]["meta_json"])["successful_imports"] == 4

    assert client.get(f"/import/{import_id}").status_code == 404


def test_correction_flow_with_edits_and_selection(client):
    login_with_reference_data(client)
    text = "\n".join(
        [
            "Type,Title,Amount,Date,Account,Category",
            "expense,Lunch,12.00,2024-01-05,My Checking,Groceries",
            "expense,Taxi,abc,2024-01-06,My Checking,Transport",
            "income,Gift,50,2024-01-07,Wallet,Salary",
        ]
    )
    import_id = upload(client, text).get_json()["import_id"]

    validated = client.post(f"/import/{import_id}/validate").get_json()
    assert validated["counts"] == {"total": 3, "valid": 1, "invalid": 2, "included": 3, "committable": 1}

    errors_only = client.get(f"/import/{import_id}?errors_only=1").get_json()
    assert [row["row_index"] for row in errors_only["rows"]] == [1, 2]

    edited = client.post(f"/import/{import_id}/rows/1", json={"column": "Amount", "value": "23.40"}).get_json()
    assert edited["row"]["errors"] == []
    assert edited["counts"]["valid"] == 2

    selection = client.post(f"/import/{import_id}/selection", json={"action": "unselect_error_rows"}).get_json()
    assert selection["included"] == [0, 1]

    state = client.get(f"/import/{import_id}").get_json()
    assert state["rows"][1]["edits"] == {"Amount": "23.40"}
    assert state["counts"]["committable"] == 2

    result = client.post(f"/import/{import_id}/commit").get_json()
    assert result["successful_imports"] == 2
    assert result["failed_imports"] == 0


def test_mapping_endpoint_and_gate(client):
    login_with_reference_data(client)
    import_id = upload(client, "Kind,Value,When\nexpense,10,2024-01-01\n", has_header="1").get_json()["import_id"]

    response = client.post(f"/import/{import_id}/validate")
    assert response.status_code == 400
    assert any("Type is mandatory" in problem for problem in response.get_json()["problems"])

    mapped = client.post(
        f"/import/{import_id}/mapping",
        json={"mapping": {"Kind": "type", "Value": "amount", "When": "date"}},
    ).get_json()
    assert mapped["mapping_problems"] == []
    assert "amount" not in mapped["available_fields"]["Kind"]

    bad = client.post(f"/import/{import_id}/mapping", json={"column": "Kind", "field": "colour"})
    assert bad.status_code == 400

    validated = client.post(f"/import/{import_id}/validate").get_json()
    assert validated["rows"][0]["errors"][0]["field"] == "account_id"


def test_commit_before_validation_is_rejected(client):
    login_with_reference_data(client)
    import_id = upload(client, sample_csv()).get_json()["import_id"]

    response = client.post(f"/import/{import_id}/commit")

    assert response.status_code == 400
    assert client.get(f"/import/{import_id}").status_code == 200


def test_commit_succeeds_when_audit_log_fails(client, monkeypatch):
    login_with_reference_data(client)
    import_id = upload(client, sample_csv()).get_json()["import_id"]
    client.post(f"/import/{import_id}/validate")

    def broken_audit(self, *args, **kwargs):
        raise WriteError("Database error: disk I/O error")

    monkeypatch.setattr(SqlTransactionStore, "record_audit", broken_audit)
    response = client.post(f"/import/{import_id}/commit")

    assert response.status_code == 200
    assert response.get_json()["successful_imports"] == 4
    assert client.post(f"/import/{import_id}/commit").status_code == 404


def test_interrupted_commit_cannot_be_replayed(client, monkeypatch):
    login_with_reference_data(client)
    import_id = upload(client, sample_csv()).get_json()["import_id"]
    client.post(f"/import/{import_id}/validate")
    calls = []

    def crash_on_second_row(row, *args, **kwargs):
        calls.append(row.row_index)
        if len(calls) == 2:
            raise RuntimeError("worker died")
        return commit_row(row, *args, **kwargs)

    monkeypatch.setattr(committer, "commit_row", crash_on_second_row)
    with pytest.raises(RuntimeError):
        client.post(f"/import/{import_id}/commit")

    assert client.post(f"/import/{import_id}/commit").status_code == 404
    with client.application.app_context():
        count = client.application.get_db().execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
    assert count == 1


def test_upload_errors(client):
    login_with_reference_data(client)

    assert upload(client, "", filename="empty.csv").get_json()["error"] == "CSV file is empty"
    wrong_type = upload(client, "Type,Amount\nexpense,1", filename="statement.pdf")
    assert wrong_type.status_code == 400
    assert "File must be one of" in wrong_type.get_json()["error"]

    pasted = client.post("/import/csv", data={"csv_text": "Type,Amount,Date\n"})
    assert pasted.get_json()["error"] == "CSV file has no data rows"


def test_upload_truncation_warning_and_preview_limit(client):
    login_with_reference_data(client)
    lines = ["Type,Amount,Date,Account"] + [f"expense,{i},2024-01-01,My Checking" for i in range(1, 601)]

    staged = upload(client, "\n".join(lines)).get_json()

    assert staged["total_rows"] == 600
    assert staged["counts"]["total"] == 500
    assert "maximum allowed is 500" in staged["warning"]
    assert len(staged["rows"]) == 25
    full = client.get(f"/import/{staged['import_id']}?show_all=1").get_json()
    assert len(full["rows"]) == 500


def test_unknown_and_discarded_sessions(client):
    login_with_reference_data(client)
    import_id = upload(client, sample_csv()).get_json()["import_id"]

    assert client.delete(f"/import/{import_id}").get_json() == {"ok": True}
    missing = client.get(f"/import/{import_id}")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "Import session expired. Please re-upload the file."
    assert client.delete(f"/import/{import_id}").status_code == 404


def test_sessions_are_private_to_their_owner(client):
    login_with_reference_data(client)
    import_id = upload(client, sample_csv()).get_json()["import_id"]
    client.get("/logout")
    register(client, username="user2")
    login(client, username="user2")

    assert client.get(f"/import/{import_id}").status_code == 404


def test_expired_sessions_are_purged_on_upload(client):
    login_with_reference_data(client)
    old_id = upload(client, sample_csv()).get_json()["import_id"]
    stale = (datetime.utcnow() - timedelta(hours=48)).isoformat()
    with client.application.app_context():
        db = client.application.get_db()
        db.execute("UPDATE import_sessions SET updated_at = ?, created_at = ? WHERE id = ?", (stale, stale, old_id))
        db.execute("UPDATE import_staging SET created_at = ? WHERE import_id = ?", (stale, old_id))
        db.commit()

    upload(client, sample_csv())

    with client.application.app_context():
        db = client.application.get_db()
        remaining = db.execute("SELECT COUNT(*) FROM import_staging WHERE import_id = ?", (old_id,)).fetchone()[0]
    assert remaining == 0
    assert client.get(f"/import/{old_id}").status_code == 404


def test_health_endpoint(client):
    data = client.get("/health/db").get_json()

    assert data["ok"] is True
    assert data["schema_version"] == 3


def test_import_csv_command(app, tmp_path):
    client = app.test_client()
    register(client)
    seed_reference_data(app)
    csv_path = tmp_path / "sample.csv"
    csv_path.write_text(sample_csv() + "EXPENSE,Mystery,5,2024-01-02,Nowhere,,,,none,\n", encoding="utf-8")

    runner = app.test_cli_runner()
    dry = runner.invoke(args=["import-csv", str(csv_path), "--username", "user1", "--dry-run"])
    assert dry.exit_code == 0
    assert "4 of 5 rows are valid." in dry.output
    assert 'Row 5 [account_id]: Account "Nowhere" not found' in dry.output
    assert "Dry run" in dry.output

    result = runner.invoke(args=["import-csv", str(csv_path), "--username", "user1"])
    assert result.exit_code == 0
    assert "Imported 4 transactions successfully" in result.output

    unknown = runner.invoke(args=["import-csv", str(csv_path), "--username", "ghost"])
    assert unknown.exit_code != 0
    assert "Unknown user: ghost" in unknown.output
