"""Import session state: the correction surface between parsing and commit.

One ``ImportSession`` owns everything an operator changes while preparing an
import: the column mapping, per-row cell edits, the last validation result of
every row and the inclusion set. The committer reads the same object, so the
counts shown to the operator and the rows actually written never disagree.
"""

from .committer import commit_import
from .errors import MappingIncompleteError
from .mapping import (
    auto_detect_mapping,
    available_fields,
    mapping_from_payload,
    mapping_to_payload,
    require_complete_mapping,
    set_mapping,
    validate_mapping_completeness,
)
from .reference import ReferenceSnapshot
from .validation import validate_row

STAGE_MAPPING = "mapping"
STAGE_REVIEW = "review"


class ImportRow:
    def __init__(self, row_index, original, edits=None, errors=None, included=True):
        self.row_index = row_index
        self.original = dict(original)
        self.edits = dict(edits or {})
        self.errors = list(errors or [])
        self.included = included

    @property
    def row_number(self):
        return self.row_index + 1

    @property
    def values(self):
        merged = dict(self.original)
        merged.update(self.edits)
        return merged

    @property
    def is_valid(self):
        return not self.errors

    def to_dict(self):
        return {
            "row_index": self.row_index,
            "original": self.original,
            "edits": self.edits,
            "errors": self.errors,
            "included": self.included,
        }

    @classmethod
    def from_dict(cls, payload):
        return cls(
            payload["row_index"],
            payload.get("original") or {},
            edits=payload.get("edits"),
            errors=payload.get("errors"),
            included=bool(payload.get("included", True)),
        )


class ImportSession:
    def __init__(self, headers, rows, mapping=None, ref=None, stage=STAGE_MAPPING, warning=None, import_id=None):
        self.import_id = import_id
        self.headers = list(headers)
        self.rows = list(rows)
        self.mapping = dict(mapping) if mapping is not None else auto_detect_mapping(self.headers)
        self.ref = ref
        self.stage = stage
        self.warning = warning

    @classmethod
    def from_parse_result(cls, result, import_id=None):
        result.raise_for_error()
        rows = [ImportRow(index, row) for index, row in enumerate(result.rows)]
        return cls(result.headers, rows, warning=result.warning, import_id=import_id)

    @property
    def validated(self):
        return self.stage == STAGE_REVIEW

    def row(self, row_index):
        if not 0 <= row_index < len(self.rows):
            raise IndexError(f"Row {row_index + 1} does not exist")
        return self.rows[row_index]

    # Mapping stage

    def auto_map(self):
        self.mapping = auto_detect_mapping(self.headers)
        self._invalidate()
        return self.mapping

    def set_mapping(self, column, field):
        self.mapping = set_mapping(self.mapping, column, field)
        self._invalidate()
        return self.mapping

    def replace_mapping(self, payload):
        self.mapping = mapping_from_payload(payload, headers=self.headers)
        self._invalidate()
        return self.mapping

    def mapping_problems(self):
        return validate_mapping_completeness(self.mapping)

    def available_fields(self, column):
        return available_fields(self.mapping, column)

    def _invalidate(self):
        # A new mapping makes every previous error list stale.
        self.stage = STAGE_MAPPING
        for row in self.rows:
            row.errors = []

    # Review stage

    def validate_all(self, ref=None):
        require_complete_mapping(self.mapping)
        if ref is not None:
            self.ref = ref
        if self.ref is None:
            self.ref = ReferenceSnapshot()
        for row in self.rows:
            row.errors = validate_row(row.values, self.mapping, self.ref)
        self.stage = STAGE_REVIEW
        return self.counts()

    def require_review(self):
        if not self.validated:
            raise MappingIncompleteError(["Rows have not been validated against the current mapping"])

    def edit_cell(self, row_index, column, value):
        """Apply one edit and re-validate that row only."""
        self.require_review()
        if column not in self.headers:
            raise KeyError(f"Unknown CSV column: {column}")
        row = self.row(row_index)
        value = "" if value is None else str(value)
        if value == row.original.get(column, ""):
            row.edits.pop(column, None)
        else:
            row.edits[column] = value
        row.errors = validate_row(row.values, self.mapping, self.ref)
        return row

    def toggle(self, row_index):
        row = self.row(row_index)
        row.included = not row.included
        return row.included

    def include(self, row_indices):
        for row_index in row_indices:
            self.row(row_index).included = True

    def exclude(self, row_indices):
        for row_index in row_indices:
            self.row(row_index).included = False

    def select_all(self):
        for row in self.rows:
            row.included = True

    def unselect_all(self):
        for row in self.rows:
            row.included = False

    def unselect_error_rows(self):
        changed = []
        for row in self.rows:
            if row.included and not row.is_valid:
                row.included = False
                changed.append(row.row_index)
        return changed

    @property
    def included_indices(self):
        return {row.row_index for row in self.rows if row.included}

    def committable_rows(self):
        if not self.validated:
            return []
        return [row for row in self.rows if row.included and row.is_valid]

    def counts(self):
        total = len(self.rows)
        invalid = sum(1 for row in self.rows if not row.is_valid) if self.validated else 0
        return {
            "total": total,
            "valid": total - invalid if self.validated else 0,
            "invalid": invalid,
            "included": len(self.included_indices),
            "committable": len(self.committable_rows()),
        }

    def error_rows(self):
        return [row for row in self.rows if not row.is_valid]

    def reset(self):
        for row in self.rows:
            row.edits = {}
            row.errors = []
            row.included = True
        self.mapping = auto_detect_mapping(self.headers)
        self.stage = STAGE_MAPPING

    def commit(self, store, on_progress=None, should_cancel=None, currency=None):
        self.require_review()
        return commit_import(
            self.rows,
            self.included_indices,
            self.ref,
            store,
            self.mapping,
            on_progress=on_progress,
            should_cancel=should_cancel,
            import_id=self.import_id,
            currency=currency,
        )

    def to_dict(self, rows=None):
        return {
            "import_id": self.import_id,
            "stage": self.stage,
            "headers": self.headers,
            "mapping": mapping_to_payload(self.mapping),
            "mapping_problems": self.mapping_problems(),
            "warning": self.warning,
            "counts": self.counts(),
            "rows": [row.to_dict() for row in (self.rows if rows is None else rows)],
        }
