"""Delimited-text parsing for the bulk transaction import.

The parser is intentionally forgiving: it never raises on malformed quoting,
it works one physical line at a time and it reports problems through
``ParseResult.error`` (fatal for the current step) or ``ParseResult.warning``
(the rows are still usable).

Known limitation: the delimiter is picked by a heuristic on the first line
(``;`` when the line has semicolons and no commas, ``,`` otherwise). It is not
RFC 4180 sniffing, and quoted fields cannot span multiple lines.
"""

import csv
import io
import os
import re

from .errors import ParseError

MAX_IMPORT_ROWS = 500
MAX_FILE_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = (".csv", ".txt")
HEADER_KEYWORDS = [
    "type",
    "title",
    "amount",
    "date",
    "account",
    "category",
    "frequency",
    "notes",
    "from",
    "to",
    "description",
    "goal",
    "deduction",
]
VALUE_PATTERN = re.compile(r"^[-+($€£]*\d[\d,./ -]*\)?$")


class ParseResult:
    def __init__(self, headers=None, rows=None, error=None, warning=None, total_rows=None):
        self.headers = list(headers or [])
        self.rows = list(rows or [])
        self.error = error
        self.warning = warning
        self.total_rows = len(self.rows) if total_rows is None else total_rows

    @property
    def ok(self):
        return self.error is None

    @property
    def truncated(self):
        return self.total_rows > len(self.rows)

    def raise_for_error(self):
        if self.error:
            raise ParseError(self.error)
        return self


def detect_delimiter(text):
    first_line = text.split("\n", 1)[0]
    if ";" in first_line and "," not in first_line:
        return ";"
    return ","


def split_line(line, delimiter=","):
    cells = []
    current = []
    inside_quotes = False
    index = 0
    while index < len(line):
        char = line[index]
        if char == '"':
            if inside_quotes and index + 1 < len(line) and line[index + 1] == '"':
                current.append('"')
                index += 1
            else:
                inside_quotes = not inside_quotes
        elif char == delimiter and not inside_quotes:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        index += 1
    # An unterminated quote simply runs to the end of the line.
    cells.append("".join(current).strip())
    return cells


def looks_like_value(cell):
    return bool(VALUE_PATTERN.match(cell.strip()))


def looks_like_header(cells):
    non_empty = [cell.strip().lower() for cell in cells if cell.strip()]
    if not non_empty:
        return False
    matches = sum(1 for cell in non_empty if any(keyword in cell for keyword in HEADER_KEYWORDS))
    if matches * 2 >= len(non_empty):
        return True
    # Amounts and dates only show up on data lines.
    return not any(looks_like_value(cell) for cell in non_empty)


def build_headers(cells):
    headers = []
    used = set()
    for position, cell in enumerate(cells, start=1):
        base = cell.strip() or f"Col {position}"
        name = base
        count = 1
        while name.lower() in used:
            count += 1
            name = f"{base} ({count})"
        used.add(name.lower())
        headers.append(name)
    return headers


def synthetic_headers(width):
    return [f"Col {position}" for position in range(1, width + 1)]


def parse_csv(text, has_header=None, max_rows=MAX_IMPORT_ROWS):
    """Turn raw delimited text into headers plus one dict per data line.

    ``has_header`` may be True/False to force the header decision; the default
    ``None`` guesses from the first line's cells.
    """
    text = (text or "").lstrip("\ufeff")
    if not text.strip():
        return ParseResult(error="CSV file is empty")

    delimiter = detect_delimiter(text)
    lines = [line for line in text.splitlines() if line.strip()]
    grid = [split_line(line, delimiter) for line in lines]

    if has_header is None:
        has_header = looks_like_header(grid[0])

    if has_header:
        if not any(cell for cell in grid[0]):
            return ParseResult(error="No headers found in CSV")
        headers = build_headers(grid[0])
        data_lines = grid[1:]
    else:
        headers = synthetic_headers(max(len(cells) for cells in grid))
        data_lines = grid

    rows = []
    for cells in data_lines:
        if not any(cells):
            continue
        row = {}
        for position, header in enumerate(headers):
            row[header] = cells[position] if position < len(cells) else ""
        if any(value for value in row.values()):
            rows.append(row)

    if not rows:
        return ParseResult(headers=headers, error="CSV file has no data rows")

    total_rows = len(rows)
    if total_rows > max_rows:
        return ParseResult(
            headers=headers,
            rows=rows[:max_rows],
            warning=(
                f"CSV has {total_rows} rows, but the maximum allowed is {max_rows}. "
                f"Only the first {max_rows} rows were loaded."
            ),
            total_rows=total_rows,
        )

    return ParseResult(headers=headers, rows=rows)


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def check_upload(filename, size, max_bytes=MAX_FILE_BYTES, allowed_extensions=ALLOWED_EXTENSIONS):
    if not filename:
        raise ParseError("Please choose a CSV file.")
    extension = os.path.splitext(filename)[1].lower()
    if extension not in allowed_extensions:
        raise ParseError(
            f"File must be one of {', '.join(allowed_extensions)}. Received: {filename}"
        )
    if size > max_bytes:
        raise ParseError(
            f"File size ({size / 1024 / 1024:.2f}MB) exceeds maximum of {max_bytes / 1024 / 1024:.0f}MB"
        )


def read_upload(filename, file_bytes, max_bytes=MAX_FILE_BYTES, allowed_extensions=ALLOWED_EXTENSIONS):
    check_upload(filename, len(file_bytes), max_bytes=max_bytes, allowed_extensions=allowed_extensions)
    if not file_bytes:
        raise ParseError("CSV file is empty")
    content = decode_csv_bytes(file_bytes)
    if content is None:
        raise ParseError("Could not read file encoding. Please re-save as CSV UTF-8.")
    return content


SAMPLE_CSV_ROWS = [
    ["Type", "Title", "Amount", "Transaction Date", "Account", "Category", "From Account", "To Account", "Frequency", "Notes"],
    ["EXPENSE", "Groceries", "150.50", "2024-01-15", "My Checking", "Groceries", "", "", "none", "Weekly shopping"],
    ["EXPENSE", "Gas", "75.00", "2024-01-16", "Credit Card", "Transport", "", "", "none", ""],
    ["INCOME", "Salary", "5000.00", "2024-01-01", "My Checking", "Salary", "", "", "monthly", "Monthly salary"],
    ["TRANSFER", "Monthly Savings", "1000.00", "2024-01-20", "", "", "My Checking", "Savings Account", "", "Monthly savings"],
]


def sample_csv():
    """Reference import layout offered to users as a download."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerows(SAMPLE_CSV_ROWS)
    return output.getvalue()
