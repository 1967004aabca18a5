"""Row validation for CSV imports.

``validate_row`` is a pure function of the raw row, the column mapping and a
reference snapshot: it performs no I/O and never mutates its inputs, so it can
be re-run on a single edited row at any time. Problems are reported as plain
dicts (``{"field", "message", "row_value"}``); an empty list means the row is
valid.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation

from .mapping import HeaderField
from .reference import normalize_name

INCOME = "income"
EXPENSE = "expense"
TRANSFER_SENDER = "transfer-sender"
TRANSFER_RECEIVER = "transfer-receiver"
TRANSFER_TYPES = {TRANSFER_SENDER, TRANSFER_RECEIVER}
REGULAR_TYPES = {INCOME, EXPENSE}

# Keys are lower-case with spaces and underscores folded to "-".
TRANSACTION_TYPE_ALIASES = {
    "income": INCOME,
    "expense": EXPENSE,
    "transfer": TRANSFER_SENDER,
    "transfer-sender": TRANSFER_SENDER,
    "bank-transfer": TRANSFER_SENDER,
    "money-transfer": TRANSFER_SENDER,
    "transfer-out": TRANSFER_SENDER,
    "transfer-receiver": TRANSFER_RECEIVER,
    "transfer-in": TRANSFER_RECEIVER,
}
VALID_FREQUENCIES = ["none", "daily", "weekly", "monthly", "yearly"]
DEDUCTION_TYPES = ["full", "split"]
DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y%m%d",
    "%m-%d-%Y",
    "%m/%d/%Y",
]


def field_error(field, message, row_value=None):
    error = {"field": field.value if isinstance(field, HeaderField) else field, "message": message}
    if row_value is not None:
        error["row_value"] = row_value
    return error


def normalize_transaction_type(value):
    cleaned = "-".join((value or "").strip().lower().replace("_", " ").split())
    return TRANSACTION_TYPE_ALIASES.get(cleaned)


def is_transfer(transaction_type):
    return transaction_type in TRANSFER_TYPES


def normalize_frequency(value):
    cleaned = (value or "").strip().lower()
    if not cleaned:
        return "none"
    return cleaned if cleaned in VALID_FREQUENCIES else None


def parse_import_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value):
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "").replace("€", "").replace("£", "").strip()
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def decimal_places(amount):
    exponent = amount.as_tuple().exponent
    return -exponent if exponent < 0 else 0


def extract_mapped_values(row, mapping):
    """Collect ``{HeaderField: stripped value}`` for every mapped, non-empty cell.

    If two columns map to the same field the later column wins.
    """
    values = {}
    for column, field in mapping.items():
        if field is HeaderField.SKIP:
            continue
        raw = row.get(column)
        if raw is None:
            continue
        cleaned = str(raw).strip()
        if cleaned:
            values[field] = cleaned
    return values


def _available(names):
    return ", ".join(names) or "none"


def _check_amount(field, raw, label):
    amount = parse_amount(raw)
    if amount is None:
        return None, field_error(field, f"{label} must be a number, got: {raw}", raw)
    if amount <= 0:
        return None, field_error(field, f"{label} must be greater than zero, got: {raw}", raw)
    if decimal_places(amount) > 2:
        return None, field_error(field, f"{label} can have at most 2 decimal places, got: {raw}", raw)
    return amount, None


def _check_account(field, raw, ref, label):
    if not raw:
        return field_error(
            field, f"{label} is required. Available: {_available(ref.account_names)}"
        )
    if ref.find_account(raw) is None:
        return field_error(
            field, f'{label} "{raw}" not found. Available: {_available(ref.account_names)}', raw
        )
    return None


def validate_row(row, mapping, ref):
    errors = []
    values = extract_mapped_values(row, mapping)
    mapped_fields = set(mapping.values())

    # 1. date
    if HeaderField.DATE in mapped_fields:
        raw_date = values.get(HeaderField.DATE)
        if not raw_date:
            errors.append(field_error(HeaderField.DATE, "Date is required"))
        else:
            parsed_date = parse_import_date(raw_date)
            if parsed_date is None:
                errors.append(
                    field_error(
                        HeaderField.DATE,
                        f"Invalid date format. Use YYYY-MM-DD or MM-DD-YYYY. Got: {raw_date}",
                        raw_date,
                    )
                )
            elif parsed_date > ref.as_of:
                errors.append(field_error(HeaderField.DATE, f"Date cannot be in the future: {raw_date}", raw_date))

    # 2. amount
    amount = None
    raw_amount = values.get(HeaderField.AMOUNT)
    if not raw_amount:
        errors.append(field_error(HeaderField.AMOUNT, "Amount is required"))
    else:
        amount, error = _check_amount(HeaderField.AMOUNT, raw_amount, "Amount")
        if error:
            errors.append(error)

    # 3. type
    transaction_type = None
    raw_type = values.get(HeaderField.TYPE)
    if not raw_type:
        errors.append(field_error(HeaderField.TYPE, "Transaction type is required (income, expense or transfer)"))
    else:
        transaction_type = normalize_transaction_type(raw_type)
        if transaction_type is None:
            errors.append(
                field_error(
                    HeaderField.TYPE,
                    f"Invalid type: {raw_type}. Must be income, expense or transfer",
                    raw_type,
                )
            )

    # 4. account for income/expense rows
    if transaction_type in REGULAR_TYPES:
        error = _check_account(HeaderField.ACCOUNT_ID, values.get(HeaderField.ACCOUNT_ID), ref, "Account")
        if error:
            errors.append(error)
        for field in (HeaderField.FROM_ACCOUNT, HeaderField.TO_ACCOUNT):
            if values.get(field):
                errors.append(
                    field_error(
                        field,
                        f"{field.value} should only be used for transfer transactions, not {transaction_type}",
                        values[field],
                    )
                )

    # 5. transfer accounts
    if is_transfer(transaction_type):
        raw_from = values.get(HeaderField.FROM_ACCOUNT)
        raw_to = values.get(HeaderField.TO_ACCOUNT)
        for field, raw, label in (
            (HeaderField.FROM_ACCOUNT, raw_from, "From account"),
            (HeaderField.TO_ACCOUNT, raw_to, "To account"),
        ):
            error = _check_account(field, raw, ref, label)
            if error:
                errors.append(error)
        if raw_from and raw_to and normalize_name(raw_from) == normalize_name(raw_to):
            errors.append(
                field_error(HeaderField.TO_ACCOUNT, "From account and to account must be different", raw_to)
            )

    # 6. category, matched against categories of the row's own type
    raw_category = values.get(HeaderField.CATEGORY)
    if raw_category:
        if is_transfer(transaction_type):
            errors.append(
                field_error(HeaderField.CATEGORY, "Categories cannot be set for transfer transactions", raw_category)
            )
        elif transaction_type in REGULAR_TYPES and ref.find_category(raw_category, transaction_type) is None:
            errors.append(
                field_error(
                    HeaderField.CATEGORY,
                    f'Category "{raw_category}" not found for {transaction_type} transactions. '
                    f"Available: {_available(ref.category_names(transaction_type))}",
                    raw_category,
                )
            )

    # 7. goal linkage
    goal = None
    raw_goal = values.get(HeaderField.GOAL_NAME)
    raw_deduction = values.get(HeaderField.DEDUCTION_TYPE)
    if raw_goal:
        if is_transfer(transaction_type):
            errors.append(
                field_error(HeaderField.GOAL_NAME, "Goals cannot be linked to transfer transactions", raw_goal)
            )
        else:
            goal = ref.find_goal(raw_goal)
            if goal is None:
                errors.append(
                    field_error(
                        HeaderField.GOAL_NAME,
                        f'Goal "{raw_goal}" does not exist. Available: {_available(ref.goal_names)}',
                        raw_goal,
                    )
                )
        if not raw_deduction:
            errors.append(
                field_error(HeaderField.DEDUCTION_TYPE, "Deduction type (full or split) is required when a goal is named")
            )
    elif raw_deduction:
        errors.append(
            field_error(
                HeaderField.DEDUCTION_TYPE,
                "Deduction type can only be specified when a goal name is provided",
                raw_deduction,
            )
        )

    # 8. deduction type and split amount
    deduction_type = raw_deduction.lower() if raw_deduction else None
    raw_split = values.get(HeaderField.SPLIT_AMOUNT)
    if deduction_type and deduction_type not in DEDUCTION_TYPES:
        errors.append(
            field_error(
                HeaderField.DEDUCTION_TYPE,
                f'Invalid deduction type: {raw_deduction}. Must be "full" or "split"',
                raw_deduction,
            )
        )
    elif deduction_type == "split":
        if not raw_split:
            errors.append(
                field_error(HeaderField.SPLIT_AMOUNT, "Split amount is required when deduction type is split")
            )
        else:
            split_amount, error = _check_amount(HeaderField.SPLIT_AMOUNT, raw_split, "Split amount")
            if error:
                errors.append(error)
            elif amount is not None and split_amount > amount:
                errors.append(
                    field_error(
                        HeaderField.SPLIT_AMOUNT,
                        f"Split amount ({split_amount}) cannot exceed the transaction amount ({amount})",
                        raw_split,
                    )
                )
            elif (
                transaction_type == EXPENSE
                and goal is not None
                and split_amount > Decimal(str(goal.get("current_amount") or 0))
            ):
                errors.append(
                    field_error(
                        HeaderField.SPLIT_AMOUNT,
                        f"Split amount ({split_amount}) exceeds the amount available in goal "
                        f'"{goal["name"]}" ({goal.get("current_amount") or 0})',
                        raw_split,
                    )
                )
    if raw_split and deduction_type != "split":
        errors.append(
            field_error(HeaderField.SPLIT_AMOUNT, "Split amount is only used when deduction type is split", raw_split)
        )

    # 9. frequency
    raw_frequency = values.get(HeaderField.FREQUENCY)
    if raw_frequency and normalize_frequency(raw_frequency) is None:
        errors.append(
            field_error(
                HeaderField.FREQUENCY,
                f"Invalid frequency: {raw_frequency}. Must be one of: {', '.join(VALID_FREQUENCIES)}",
                raw_frequency,
            )
        )

    return errors


def coerce_row(row, mapping):
    """Typed values for a row that has already passed ``validate_row``."""
    values = extract_mapped_values(row, mapping)
    deduction_type = values.get(HeaderField.DEDUCTION_TYPE)
    return {
        "date": parse_import_date(values.get(HeaderField.DATE)),
        "amount": parse_amount(values.get(HeaderField.AMOUNT)),
        "type": normalize_transaction_type(values.get(HeaderField.TYPE)),
        "account": values.get(HeaderField.ACCOUNT_ID, ""),
        "from_account": values.get(HeaderField.FROM_ACCOUNT, ""),
        "to_account": values.get(HeaderField.TO_ACCOUNT, ""),
        "category": values.get(HeaderField.CATEGORY, ""),
        "description": values.get(HeaderField.DESCRIPTION, ""),
        "notes": values.get(HeaderField.NOTES, ""),
        "goal_name": values.get(HeaderField.GOAL_NAME, ""),
        "deduction_type": deduction_type.lower() if deduction_type else None,
        "split_amount": parse_amount(values.get(HeaderField.SPLIT_AMOUNT)),
        "frequency": normalize_frequency(values.get(HeaderField.FREQUENCY)),
    }
