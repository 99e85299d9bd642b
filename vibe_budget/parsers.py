import csv
import io
import logging
import os
import re
import unicodedata
import zipfile
from datetime import date, datetime, timedelta

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError


logger = logging.getLogger(__name__)


class StatementParseError(ValueError):
    """Raised when an uploaded statement cannot be read or holds no rows."""


HEADER_SCAN_LIMIT = 50
CSV_DELIMITERS = [",", ";", "\t", "|"]
MAX_DESCRIPTION_LENGTH = 200
MIN_DESCRIPTION_LENGTH = 3
EXCEL_EPOCH = date(1899, 12, 30)

COLUMN_KEYS = {
    "date": ["completed", "data", "date", "început", "inceput", "start", "data operatiunii", "data tranzactiei"],
    "description": ["descriere", "description", "detalii", "details", "beneficiar"],
    "amount": ["sumă", "suma", "amount", "valoare", "value", "total"],
    "debit": ["debit"],
    "credit": ["credit"],
    "currency": ["moneda", "currency", "valuta"],
}

MONTH_ABBREVIATIONS = {
    "jan": 1, "ian": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5, "mai": 5,
    "jun": 6, "iun": 6,
    "jul": 7, "iul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11, "noi": 11,
    "dec": 12,
}

ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
MONTH_NAME_DATE_RE = re.compile(r"^(\d{1,2})\s+([^\W\d_]{3,})\.?\s+(\d{4})$")
NUMERIC_DATE_RE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{4}|\d{2})(?:[ T]\d{1,2}:\d{2}(?::\d{2})?)?$")
DATE_LIKE_RE = re.compile(r"^\d{1,2}[./-]\d{1,2}[./-]\d{2,4}$|^\d{4}-\d{2}-\d{2}([ T]\d{2}:\d{2}(:\d{2})?)?$")

PDF_DATE_FORMS = [
    r"^(\d{2}[./]\d{2}[./]\d{4})\s+(.+?)",
    r"^(\d{1,2}\s+[A-Za-z]{3}\s+\d{4})\s+(.+?)",
    r"(\d{2}[./]\d{2}[./]\d{4})\s+(.{10,}?)",
]
PDF_MONEY = r"[-+]?\d[\d.,]*[.,]\d{2}"
# Amount followed by a running balance; the balance is dropped.
PDF_AMOUNT_AND_BALANCE = rf"\s+({PDF_MONEY})(?:\s*([A-Za-z]{{3}}))?\s+{PDF_MONEY}(?:\s*[A-Za-z]{{3}})?\s*$"
PDF_SINGLE_AMOUNT = r"\s+([-+]?\d[\d.,]*)\s*([A-Za-z]{3})?\s*$"
PDF_LINE_PATTERNS = [
    re.compile(prefix + tail)
    for prefix in PDF_DATE_FORMS
    for tail in (PDF_AMOUNT_AND_BALANCE, PDF_SINGLE_AMOUNT)
]


def normalize_header_name(value):
    if value is None:
        return ""
    return " ".join(str(value).strip().lower().split())


def _strip_accents(value):
    normalized = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def _excel_serial_to_iso(number):
    if 40000 < number < 60000:
        return (EXCEL_EPOCH + timedelta(days=int(number))).isoformat()
    return None


def _safe_iso(year, month, day):
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def format_date(value):
    """Return an ISO ``YYYY-MM-DD`` string for a statement date cell, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return _excel_serial_to_iso(value)

    text = str(value).strip()
    if not text:
        return None

    if re.fullmatch(r"\d+(\.\d+)?", text):
        return _excel_serial_to_iso(float(text))

    iso_match = ISO_DATE_RE.match(text)
    if iso_match:
        return _safe_iso(*iso_match.groups())

    named_match = MONTH_NAME_DATE_RE.match(text)
    if named_match:
        day, month_name, year = named_match.groups()
        month = MONTH_ABBREVIATIONS.get(_strip_accents(month_name.lower())[:3])
        if month is None:
            return None
        return _safe_iso(year, month, day)

    numeric_match = NUMERIC_DATE_RE.match(text)
    if numeric_match:
        day, month, year = numeric_match.groups()
        if len(year) == 2:
            year = f"20{year}"
        return _safe_iso(year, month, day)

    return None


def looks_like_date(value):
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    return bool(DATE_LIKE_RE.match(value.strip()))


def parse_amount(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().replace("−", "-")
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    cleaned = re.sub(r"[^\d,.+-]", "", text)
    if cleaned.endswith("-"):
        negative = True
        cleaned = cleaned[:-1]
    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    cleaned = cleaned.lstrip("+")
    if not re.search(r"\d", cleaned) or re.search(r"[+-]", cleaned):
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        if re.fullmatch(r"\d*,\d{1,2}", cleaned):
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return -amount if negative else amount


def detect_columns(header_row):
    """Map each column role to the index of the first header that names it.

    A column is given at most one role; roles are claimed in the order of
    ``COLUMN_KEYS``. Debit/credit columns are only kept when there is no
    single amount column.
    """
    columns = {role: None for role in COLUMN_KEYS}
    headers = [normalize_header_name(cell) for cell in (header_row or [])]
    claimed = set()
    for role, keys in COLUMN_KEYS.items():
        for idx, header in enumerate(headers):
            if idx in claimed or not header:
                continue
            if any(key in header for key in keys):
                columns[role] = idx
                claimed.add(idx)
                break

    if columns["amount"] is not None:
        columns["debit"] = None
        columns["credit"] = None
    return columns


def detect_header_row(rows):
    scan_limit = min(len(rows), HEADER_SCAN_LIMIT)
    for idx in range(scan_limit):
        columns = detect_columns(rows[idx])
        has_amount = any(columns[role] is not None for role in ("amount", "debit", "credit"))
        if columns["date"] is not None and columns["description"] is not None and has_amount:
            return idx
    return 0


def _cell(row, idx):
    if idx is None or idx >= len(row):
        return None
    value = row[idx]
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _json_cell(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is None or isinstance(value, (int, float, str)):
        return value
    return str(value)


def _normalize_currency(value, default_currency):
    text = (str(value).strip().upper() if value is not None else "")
    if re.fullmatch(r"[A-Z]{3}", text):
        return text
    return default_currency


def _is_blank_row(row):
    return all(cell is None or (isinstance(cell, str) and not cell.strip()) for cell in row)


def build_transaction(date_iso, description, amount, currency, original_data):
    amount = round(amount, 2)
    return {
        "date": date_iso,
        "description": description,
        "amount": amount,
        "currency": currency,
        "type": "debit" if amount < 0 else "credit",
        "original_data": original_data,
    }


def parse_rows(rows, default_currency="RON", source_format="csv"):
    """Turn a grid of cells (first sheet or CSV) into normalized transactions."""
    default_currency = (default_currency or "RON").upper()
    rows = [list(row) for row in rows if row is not None and not _is_blank_row(row)]
    if not rows:
        raise StatementParseError("The statement is empty.")

    header_index = detect_header_row(rows)
    header = rows[header_index]
    columns = detect_columns(header)
    header_names = [
        str(cell).strip() if cell is not None and str(cell).strip() else f"column_{idx + 1}"
        for idx, cell in enumerate(header)
    ]

    data_rows = rows[header_index + 1:]
    if not data_rows:
        raise StatementParseError("The statement has a header but no transaction rows.")

    transactions = []
    skipped = 0
    for row_number, row in enumerate(data_rows, start=header_index + 2):
        raw_date = _cell(row, columns["date"])
        if columns["date"] is None:
            raw_date = next((value for value in row if looks_like_date(value)), None)
        date_iso = format_date(raw_date)

        raw_description = _cell(row, columns["description"])
        description = " ".join(str(raw_description).split()) if raw_description is not None else ""

        if columns["amount"] is not None:
            amount = parse_amount(_cell(row, columns["amount"]))
        else:
            debit = parse_amount(_cell(row, columns["debit"]))
            credit = parse_amount(_cell(row, columns["credit"]))
            if debit:
                amount = -abs(debit)
            elif credit is not None:
                amount = abs(credit)
            else:
                amount = None

        if date_iso is None or not description or amount is None:
            skipped += 1
            logger.debug(
                "Skipping %s row %s: date=%r description=%r amount=%r",
                source_format,
                row_number,
                raw_date,
                raw_description,
                amount,
            )
            continue

        original = {}
        for idx, value in enumerate(row):
            name = header_names[idx] if idx < len(header_names) else f"column_{idx + 1}"
            original[name] = _json_cell(value)

        currency = _normalize_currency(_cell(row, columns["currency"]), default_currency)
        transactions.append(build_transaction(date_iso, description, amount, currency, original))

    logger.info(
        "Parsed %s statement: %s transactions, %s skipped rows",
        source_format,
        len(transactions),
        skipped,
    )
    return {
        "transactions": transactions,
        "row_count": len(data_rows),
        "skipped": skipped,
        "format": source_format,
    }


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def detect_delimiter(text):
    sample = [line for line in text.splitlines() if line.strip()][:10]
    if not sample:
        return ","

    def score(delimiter):
        counts = [line.count(delimiter) for line in sample]
        return min(counts), sum(counts)

    best = max(CSV_DELIMITERS, key=score)
    return best if score(best)[1] > 0 else ","


def parse_csv(data, default_currency="RON"):
    text = decode_csv_bytes(data)
    if text is None:
        raise StatementParseError("Unable to decode the CSV file.")
    delimiter = detect_delimiter(text)
    rows = [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text), delimiter=delimiter)]
    return parse_rows(rows, default_currency, "csv")


def parse_excel(data, default_currency="RON"):
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise StatementParseError(f"Unable to read the Excel workbook: {exc}") from exc

    try:
        if not workbook.worksheets:
            raise StatementParseError("The Excel workbook has no worksheets.")
        sheet = workbook.worksheets[0]
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()
    return parse_rows(rows, default_currency, "excel")


def parse_pdf_text(text, default_currency="RON"):
    default_currency = (default_currency or "RON").upper()
    transactions = []
    matched = 0
    skipped = 0

    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if len(line) < 10:
            continue

        for pattern in PDF_LINE_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            matched += 1
            date_text, description, amount_text, currency = match.groups()
            description = " ".join(description.split())
            date_iso = format_date(date_text)
            amount = parse_amount(amount_text)
            if date_iso is None or amount is None or len(description) < MIN_DESCRIPTION_LENGTH:
                skipped += 1
                logger.debug("Skipping PDF line %r", line)
                break
            transactions.append(
                build_transaction(
                    date_iso,
                    description[:MAX_DESCRIPTION_LENGTH],
                    amount,
                    _normalize_currency(currency, default_currency),
                    {"line": line},
                )
            )
            break

    logger.info("Parsed PDF text: %s transactions, %s skipped lines", len(transactions), skipped)
    return {
        "transactions": transactions,
        "row_count": matched,
        "skipped": skipped,
        "format": "pdf",
    }


def extract_pdf_text(data):
    try:
        reader = PdfReader(io.BytesIO(data))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    except (PdfReadError, ValueError, OSError) as exc:
        raise StatementParseError(f"Unable to read the PDF file: {exc}") from exc


def parse_pdf(data, default_currency="RON"):
    text = extract_pdf_text(data)
    if not text.strip():
        raise StatementParseError("The PDF has no extractable text. Scanned statements are not supported.")
    result = parse_pdf_text(text, default_currency)
    if result["row_count"] == 0:
        raise StatementParseError("No transaction lines were found in the PDF.")
    return result


def parse_statement(filename, data, default_currency="RON"):
    """Parse an uploaded bank statement, picking the reader from name and content."""
    if not data:
        raise StatementParseError("The uploaded file is empty.")

    extension = os.path.splitext(filename or "")[1].lower()
    if data.startswith(b"%PDF") or extension == ".pdf":
        return parse_pdf(data, default_currency)
    if extension in {".xlsx", ".xlsm"}:
        return parse_excel(data, default_currency)
    if extension == ".xls":
        raise StatementParseError("Legacy .xls workbooks are not supported. Save the file as .xlsx or CSV.")
    if extension in {".csv", ".txt"}:
        return parse_csv(data, default_currency)
    if data.startswith(b"PK"):
        return parse_excel(data, default_currency)
    raise StatementParseError(f"Unsupported statement type: {extension or 'unknown'}")
