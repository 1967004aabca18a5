import json
import logging
from contextlib import contextmanager, nullcontext
from decimal import Decimal

from .db import DB_ERRORS, row_to_dict
from .errors import WriteError
from .reference import ReferenceSnapshot, normalize_name

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = [
    "account_id",
    "category_id",
    "type",
    "amount",
    "currency",
    "description",
    "notes",
    "transaction_date",
    "frequency",
    "goal_id",
    "goal_amount",
    "goal_allocation_type",
    "linked_transaction_id",
    "import_id",
]
GOAL_UPDATE_COLUMNS = ["current_amount", "target_amount", "status"]


class TransactionStore:
    """Data-access operations the import committer relies on.

    Every method may raise ``WriteError``; the committer treats each call as
    fallible and recovers per row.
    """

    def insert_transaction(self, fields):
        raise NotImplementedError

    def update_account_balance(self, account_id, delta):
        raise NotImplementedError

    def get_goal(self, goal_id):
        raise NotImplementedError

    def update_goal(self, goal_id, fields):
        raise NotImplementedError

    def find_account_by_name(self, name):
        raise NotImplementedError

    def find_category_by_name(self, name, category_type):
        raise NotImplementedError

    def row_transaction(self):
        return nullcontext()


def _db_value(value):
    # sqlite3 cannot bind Decimal.
    if isinstance(value, Decimal):
        return float(value)
    return value


class SqlTransactionStore(TransactionStore):
    def __init__(self, db, user_id):
        self.db = db
        self.user_id = user_id

    def _execute(self, sql, params=()):
        try:
            return self.db.execute(sql, params)
        except DB_ERRORS as exc:
            raise WriteError(f"Database error: {exc}") from exc

    def _insert(self, sql, params):
        try:
            return self.db.insert(sql, params)
        except DB_ERRORS as exc:
            raise WriteError(f"Database error: {exc}") from exc

    @contextmanager
    def row_transaction(self):
        """Commit everything a row wrote, or roll all of it back."""
        try:
            yield self
            self.db.commit()
        except DB_ERRORS as exc:
            self.db.rollback()
            raise WriteError(f"Database error: {exc}") from exc
        except Exception:
            self.db.rollback()
            raise

    def insert_transaction(self, fields):
        unknown = set(fields) - set(TRANSACTION_COLUMNS)
        if unknown:
            raise WriteError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")
        columns = ["user_id"] + [column for column in TRANSACTION_COLUMNS if column in fields]
        values = [self.user_id] + [_db_value(fields[column]) for column in columns[1:]]
        placeholders = ", ".join("?" for _ in columns)
        return self._insert(
            f"INSERT INTO transactions ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(values),
        )

    def update_account_balance(self, account_id, delta):
        cursor = self._execute(
            "UPDATE accounts SET balance = balance + ? WHERE id = ? AND user_id = ?",
            (_db_value(delta), account_id, self.user_id),
        )
        if cursor.rowcount == 0:
            raise WriteError(f"Account {account_id} not found")

    def get_goal(self, goal_id):
        row = self._execute(
            "SELECT id, name, current_amount, target_amount, status FROM goals WHERE id = ? AND user_id = ?",
            (goal_id, self.user_id),
        ).fetchone()
        if row is None:
            raise WriteError(f"Goal {goal_id} not found")
        return row_to_dict(row)

    def update_goal(self, goal_id, fields):
        columns = [column for column in GOAL_UPDATE_COLUMNS if column in fields]
        if not columns:
            return
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [_db_value(fields[column]) for column in columns] + [goal_id, self.user_id]
        cursor = self._execute(f"UPDATE goals SET {assignments} WHERE id = ? AND user_id = ?", tuple(params))
        if cursor.rowcount == 0:
            raise WriteError(f"Goal {goal_id} not found")

    def list_accounts(self):
        rows = self._execute(
            "SELECT id, name, type, currency, balance FROM accounts WHERE user_id = ? ORDER BY name",
            (self.user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def list_categories(self):
        rows = self._execute(
            "SELECT id, name, type FROM categories WHERE user_id = ? ORDER BY type, name",
            (self.user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def list_goals(self):
        rows = self._execute(
            "SELECT id, name, current_amount, target_amount, status FROM goals WHERE user_id = ? ORDER BY name",
            (self.user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def find_account_by_name(self, name):
        wanted = normalize_name(name)
        for account in self.list_accounts():
            if normalize_name(account["name"]) == wanted:
                return account
        return None

    def find_category_by_name(self, name, category_type):
        wanted = normalize_name(name)
        for category in self.list_categories():
            if category["type"] == category_type and normalize_name(category["name"]) == wanted:
                return category
        return None

    def load_reference_snapshot(self, as_of=None):
        return ReferenceSnapshot(
            accounts=self.list_accounts(),
            categories=self.list_categories(),
            goals=self.list_goals(),
            as_of=as_of,
        )

    def record_audit(self, action, entity=None, entity_id=None, details=None):
        self._execute(
            "INSERT INTO audit_logs (user_id, action, entity, entity_id, meta_json) VALUES (?, ?, ?, ?, ?)",
            (self.user_id, action, entity, entity_id, json.dumps(details or {})),
        )
        self.db.commit()
        logger.debug("audit %s %s=%s", action, entity, entity_id)
