"""Write validated import rows to the store, one row at a time.

Each row is its own unit of work: the store's ``row_transaction`` wraps the
row's inserts and balance/goal updates, a failure is recorded against that
row and the batch moves on. Rows are processed strictly in order so progress
reports follow completion order and balance updates never interleave.
"""

import logging
from decimal import Decimal

from .errors import ReferenceResolutionError, WriteError
from .mapping import require_complete_mapping
from .validation import EXPENSE, INCOME, TRANSFER_RECEIVER, TRANSFER_SENDER, coerce_row, is_transfer

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
CANCELLED_MESSAGE = "Import cancelled before this row was processed"


class ImportResult:
    def __init__(self, successful_imports=0, failed_imports=0, errors=None, cancelled=False, summary=None):
        self.successful_imports = successful_imports
        self.failed_imports = failed_imports
        self.errors = list(errors or [])
        self.cancelled = cancelled
        self.summary = summary or build_summary(successful_imports, failed_imports, cancelled)

    @property
    def success(self):
        return self.failed_imports == 0

    def to_dict(self):
        return {
            "success": self.success,
            "successful_imports": self.successful_imports,
            "failed_imports": self.failed_imports,
            "errors": self.errors,
            "summary": self.summary,
            "cancelled": self.cancelled,
        }


def build_summary(successful, failed, cancelled=False):
    noun = "transaction" if successful == 1 else "transactions"
    summary = f"Imported {successful} {noun} successfully"
    if failed:
        summary += f" with {failed} error{'' if failed == 1 else 's'}"
    if cancelled:
        summary += " (import cancelled)"
    return summary


def row_error(row_index, message):
    return {"row_index": row_index, "row_number": row_index + 1, "message": message}


def _resolve_account(ref, name, label="Account"):
    account = ref.find_account(name)
    if account is None:
        raise ReferenceResolutionError(f'{label} "{name}" not found')
    return account


def _commit_regular(values, ref, store, import_id, currency):
    transaction_type = values["type"]
    amount = values["amount"]
    account = _resolve_account(ref, values["account"])

    category = None
    if values["category"]:
        category = ref.find_category(values["category"], transaction_type)
        if category is None:
            raise ReferenceResolutionError(
                f'Category "{values["category"]}" not found for {transaction_type} transactions'
            )

    goal = None
    goal_amount = None
    if values["goal_name"]:
        goal = ref.find_goal(values["goal_name"])
        if goal is None:
            raise ReferenceResolutionError(f'Goal "{values["goal_name"]}" not found')
        goal_amount = values["split_amount"] if values["deduction_type"] == "split" else amount

    transaction_id = store.insert_transaction(
        {
            "account_id": account["id"],
            "category_id": category["id"] if category else None,
            "type": transaction_type,
            "amount": amount,
            "currency": account.get("currency") or currency,
            "description": values["description"] or None,
            "notes": values["notes"] or None,
            "transaction_date": values["date"].isoformat(),
            "frequency": values["frequency"],
            "goal_id": goal["id"] if goal else None,
            "goal_amount": goal_amount,
            "goal_allocation_type": values["deduction_type"] if goal else None,
            "import_id": import_id,
        }
    )
    store.update_account_balance(account["id"], amount if transaction_type == INCOME else -amount)

    if goal is not None:
        # Re-read right before writing; the snapshot may be stale.
        current = Decimal(str(store.get_goal(goal["id"]).get("current_amount") or 0))
        if transaction_type == EXPENSE:
            updated = max(Decimal("0"), current - goal_amount)
        else:
            updated = current + goal_amount
        store.update_goal(goal["id"], {"current_amount": updated})

    return [transaction_id]


def _commit_transfer(values, ref, store, import_id, currency):
    amount = values["amount"]
    source = _resolve_account(ref, values["from_account"], "From account")
    target = _resolve_account(ref, values["to_account"], "To account")
    title = values["description"] or "Transfer"
    shared = {
        "amount": amount,
        "notes": values["notes"] or None,
        "transaction_date": values["date"].isoformat(),
        "frequency": values["frequency"],
        "import_id": import_id,
    }

    sender_id = store.insert_transaction(
        dict(
            shared,
            account_id=source["id"],
            type=TRANSFER_SENDER,
            currency=source.get("currency") or currency,
            description=f"{title} (to {target['name']})",
        )
    )
    receiver_id = store.insert_transaction(
        dict(
            shared,
            account_id=target["id"],
            type=TRANSFER_RECEIVER,
            currency=target.get("currency") or currency,
            description=f"{title} (from {source['name']})",
            linked_transaction_id=sender_id,
        )
    )
    store.update_account_balance(source["id"], -amount)
    store.update_account_balance(target["id"], amount)
    return [sender_id, receiver_id]


def commit_row(row, mapping, ref, store, import_id=None, currency=DEFAULT_CURRENCY):
    """Write one validated row and return the ids of the transactions it created."""
    values = coerce_row(row.values, mapping)
    if is_transfer(values["type"]):
        return _commit_transfer(values, ref, store, import_id, currency)
    return _commit_regular(values, ref, store, import_id, currency)


def commit_import(
    rows,
    included,
    ref,
    store,
    mapping,
    on_progress=None,
    should_cancel=None,
    import_id=None,
    currency=None,
):
    require_complete_mapping(mapping)
    currency = currency or DEFAULT_CURRENCY
    included = set(included)
    candidates = sorted((row for row in rows if row.row_index in included), key=lambda row: row.row_index)

    errors = []
    failed = 0
    successful = 0
    cancelled = False

    pending = []
    for row in candidates:
        if row.is_valid:
            pending.append(row)
            continue
        failed += 1
        messages = "; ".join(error["message"] for error in row.errors)
        errors.append(row_error(row.row_index, f"Row has validation errors: {messages}"))

    total = len(pending)
    for position, row in enumerate(pending, start=1):
        if should_cancel is not None and should_cancel():
            cancelled = True
            for skipped in pending[position - 1:]:
                failed += 1
                errors.append(row_error(skipped.row_index, CANCELLED_MESSAGE))
            logger.info("Import %s cancelled with %d rows left", import_id, total - position + 1)
            break

        try:
            with store.row_transaction():
                commit_row(row, mapping, ref, store, import_id=import_id, currency=currency)
        except (ReferenceResolutionError, WriteError) as exc:
            failed += 1
            errors.append(row_error(row.row_index, str(exc)))
            logger.warning("Import row %d failed: %s", row.row_number, exc)
        else:
            successful += 1

        if on_progress is not None:
            on_progress(round(position / total * 100))

    errors.sort(key=lambda error: error["row_index"])
    result = ImportResult(successful, failed, errors, cancelled=cancelled)
    logger.info("Import %s finished: %s", import_id or "-", result.summary)
    return result
