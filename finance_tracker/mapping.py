"""Column-to-field mapping for CSV imports.

A mapping is a plain dict of ``{csv column name: HeaderField}`` kept in column
order. Auto-detection only proposes a mapping; any column can be re-pointed
with ``set_mapping`` and the completeness check is what gates validation.
"""

from enum import Enum

from .errors import MappingIncompleteError


class HeaderField(str, Enum):
    SKIP = "skip"
    DATE = "date"
    ACCOUNT_ID = "account_id"
    FROM_ACCOUNT = "from_account"
    TO_ACCOUNT = "to_account"
    TYPE = "type"
    CATEGORY = "category"
    AMOUNT = "amount"
    DESCRIPTION = "description"
    NOTES = "notes"
    GOAL_NAME = "goal_name"
    DEDUCTION_TYPE = "deduction_type"
    SPLIT_AMOUNT = "split_amount"
    FREQUENCY = "frequency"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        cleaned = normalize_header_name(value).replace(" ", "_")
        try:
            return cls(cleaned)
        except ValueError:
            raise ValueError(f"Unknown import field: {value!r}") from None


FIELD_LABELS = {
    HeaderField.SKIP: "Skip",
    HeaderField.DATE: "Date",
    HeaderField.ACCOUNT_ID: "Account",
    HeaderField.FROM_ACCOUNT: "From Account (Transfer)",
    HeaderField.TO_ACCOUNT: "To Account (Transfer)",
    HeaderField.TYPE: "Type",
    HeaderField.CATEGORY: "Category",
    HeaderField.AMOUNT: "Amount",
    HeaderField.DESCRIPTION: "Title",
    HeaderField.NOTES: "Notes",
    HeaderField.GOAL_NAME: "Goal Name",
    HeaderField.DEDUCTION_TYPE: "Deduction Type (full/split)",
    HeaderField.SPLIT_AMOUNT: "Split Amount",
    HeaderField.FREQUENCY: "Frequency",
}
HEADER_ALIASES = {
    HeaderField.DATE: ["date", "transaction date", "transaction_date", "date_created", "date created", "posted"],
    HeaderField.ACCOUNT_ID: ["account", "account_id", "account name", "payment method"],
    HeaderField.FROM_ACCOUNT: ["from account", "from_account", "source account"],
    HeaderField.TO_ACCOUNT: ["to account", "to_account", "target account", "destination account"],
    HeaderField.TYPE: ["type", "transaction type", "transaction_type"],
    HeaderField.CATEGORY: ["category", "category_name", "category name"],
    HeaderField.AMOUNT: ["amount", "value", "sum", "total"],
    HeaderField.DESCRIPTION: ["description", "title", "memo", "name"],
    HeaderField.NOTES: ["notes", "note", "comment", "comments"],
    HeaderField.GOAL_NAME: ["goal", "goal_name", "goal name"],
    HeaderField.DEDUCTION_TYPE: ["deduction_type", "deduction type", "allocation type", "allocation_type"],
    HeaderField.SPLIT_AMOUNT: ["split_amount", "split amount", "goal amount", "goal_amount"],
    HeaderField.FREQUENCY: ["frequency", "recurring", "freq"],
}
MANDATORY_FIELDS = [HeaderField.TYPE, HeaderField.AMOUNT, HeaderField.DATE]


def normalize_header_name(value):
    return " ".join((value or "").strip().lower().split())


def detect_field(header):
    normalized = normalize_header_name(header)
    for field, aliases in HEADER_ALIASES.items():
        if normalized in aliases:
            return field
    return HeaderField.SKIP


def auto_detect_mapping(headers):
    """Propose a field for every header.

    When two headers match the same field only the first keeps it, so an
    auto-detected mapping never trips the duplicate check.
    """
    mapping = {}
    used = set()
    for header in headers:
        field = detect_field(header)
        if field is not HeaderField.SKIP and field in used:
            field = HeaderField.SKIP
        mapping[header] = field
        used.add(field)
    return mapping


def set_mapping(mapping, column, field):
    if column not in mapping:
        raise KeyError(f"Unknown CSV column: {column}")
    updated = dict(mapping)
    updated[column] = HeaderField.parse(field)
    return updated


def used_fields(mapping, exclude_column=None):
    return {
        field
        for column, field in mapping.items()
        if column != exclude_column and field is not HeaderField.SKIP
    }


def available_fields(mapping, column):
    """Fields a column may still choose: skip, its own field, and anything unused."""
    taken = used_fields(mapping, exclude_column=column)
    return [field for field in HeaderField if field is HeaderField.SKIP or field not in taken]


def columns_for_field(mapping, field):
    return [column for column, mapped in mapping.items() if mapped is field]


def validate_mapping_completeness(mapping):
    problems = []
    mapped = [field for field in mapping.values() if field is not HeaderField.SKIP]
    if not mapped:
        problems.append("At least one column must be mapped")

    for field in MANDATORY_FIELDS:
        if field not in mapped:
            problems.append(f"{FIELD_LABELS[field]} is mandatory - map a column to '{FIELD_LABELS[field]}'")

    for field in HeaderField:
        if field is HeaderField.SKIP:
            continue
        columns = columns_for_field(mapping, field)
        if len(columns) > 1:
            problems.append(
                f"{FIELD_LABELS[field]} is mapped to more than one column: {', '.join(columns)}"
            )
    return problems


def require_complete_mapping(mapping):
    problems = validate_mapping_completeness(mapping)
    if problems:
        raise MappingIncompleteError(problems)
    return mapping


def mapping_to_payload(mapping):
    return {column: field.value for column, field in mapping.items()}


def mapping_from_payload(payload, headers=None):
    mapping = {}
    for column in headers if headers is not None else list(payload or {}):
        mapping[column] = HeaderField.parse((payload or {}).get(column) or HeaderField.SKIP)
    return mapping
