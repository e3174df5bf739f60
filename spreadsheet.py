"""Reading donor and spending spreadsheets into import rows."""
import io
import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from reconcile import clean_name
from schemas import DonorRow, SpendingRow

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
# Data starts on the second spreadsheet row, below the header
FIRST_DATA_ROW = 2

FIRST_NAME_COLUMNS = ("first name", "firstname", "first_name", "donor name", "donorname",
                      "donor_name", "donor", "name")
LAST_NAME_COLUMNS = ("last name", "lastname", "last_name", "father name", "fathername",
                     "father_name", "father's name", "secondary name", "secondary_name", "surname")
ITEM_COLUMNS = ("spending item", "spendingitem", "spending_item", "item", "category", "name",
                "description")
ITEM_HINTS = ("spend", "item", "category", "name")
AMOUNT_COLUMNS = ("amount", "cost", "price", "value")

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm", ".xls", ".csv")


def read_sheet(content: bytes, filename: str) -> pd.DataFrame:
    """Load the first sheet of an upload, keeping cells as raw objects."""
    name = (filename or "").lower()
    if not name.endswith(SUPPORTED_EXTENSIONS):
        raise ValueError("Please upload a valid spreadsheet (.xlsx, .xls or .csv)")
    buffer = io.BytesIO(content)
    if name.endswith(".csv"):
        df = pd.read_csv(buffer, dtype=object)
    else:
        df = pd.read_excel(buffer, sheet_name=0, dtype=object)
    return df.rename(columns={c: str(c).strip() for c in df.columns})


def _blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        pass
    return isinstance(value, str) and not value.strip()


def _first_value(record: Dict[str, object], candidates: Iterable[str]):
    lowered = {str(column).lower(): column for column in record}
    for candidate in candidates:
        column = lowered.get(candidate)
        if column is not None and not _blank(record[column]):
            return record[column]
    return None


def _hinted_value(record: Dict[str, object], hints: Iterable[str]):
    for column, value in record.items():
        lowered = str(column).lower()
        if any(hint in lowered for hint in hints) and not _blank(value):
            return value
    return None


def parse_amount(value) -> Tuple[Optional[float], Optional[str]]:
    """Return ``(amount, None)`` or ``(None, reason)``; zero is allowed."""
    if _blank(value):
        return None, "Amount is required"
    if isinstance(value, bool):
        return None, "Amount must be a valid number"
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        try:
            amount = float(str(value).strip().replace(",", ""))
        except ValueError:
            return None, "Amount must be a valid number"
    if not math.isfinite(amount):
        return None, "Amount must be a valid number"
    if amount < 0:
        return None, "Amount cannot be negative"
    return amount, None


def _records(content: bytes, filename: str) -> Tuple[List[dict], List[str], List[str]]:
    try:
        df = read_sheet(content, filename)
    except Exception as exc:
        logger.warning("Could not read spreadsheet %r: %s", filename, exc)
        return [], [], [f"Failed to parse Excel file: {exc}"]
    if df.empty:
        return [], [], ["Excel file is empty"]
    columns = [str(column) for column in df.columns]
    logger.info("Spreadsheet %r has %d rows, columns: %s", filename, len(df), columns)
    return df.to_dict(orient="records"), columns, []


def parse_donor_sheet(content: bytes, filename: str) -> Tuple[List[DonorRow], List[str]]:
    """
    Parse a donor sheet with a name column, an optional father's name column
    and an optional amount column. A blank amount registers the donor only.
    """
    records, columns, errors = _records(content, filename)
    rows: List[DonorRow] = []
    for index, record in enumerate(records):
        row_number = index + FIRST_DATA_ROW
        first_name = clean_name(_first_value(record, FIRST_NAME_COLUMNS))
        if len(first_name) < MIN_NAME_LENGTH:
            errors.append(f"Row {row_number}: Donor name is required and must be at least "
                          f"{MIN_NAME_LENGTH} characters. Available columns: {', '.join(columns)}")
            continue
        last_name = clean_name(_first_value(record, LAST_NAME_COLUMNS)) or None

        raw_amount = _first_value(record, AMOUNT_COLUMNS)
        if _blank(raw_amount):
            amount = 0.0
        else:
            amount, reason = parse_amount(raw_amount)
            if reason:
                errors.append(f"Row {row_number}: {reason}")
                continue
        rows.append(DonorRow(first_name=first_name, last_name=last_name, amount=amount,
                             row_number=row_number))
    return rows, errors


def parse_spending_sheet(content: bytes, filename: str) -> Tuple[List[SpendingRow], List[str]]:
    """Parse a spending sheet with an item column and an amount column."""
    records, columns, errors = _records(content, filename)
    rows: List[SpendingRow] = []
    for index, record in enumerate(records):
        row_number = index + FIRST_DATA_ROW
        raw_item = _first_value(record, ITEM_COLUMNS)
        if raw_item is None:
            raw_item = _hinted_value(record, ITEM_HINTS)
        item = clean_name(raw_item)
        if len(item) < MIN_NAME_LENGTH:
            errors.append(f"Row {row_number}: Spending Item is required and must be at least "
                          f"{MIN_NAME_LENGTH} characters. Available columns: {', '.join(columns)}")
            continue

        amount, reason = parse_amount(_first_value(record, AMOUNT_COLUMNS))
        if reason:
            if reason == "Amount is required":
                reason = f"{reason}. Available columns: {', '.join(columns)}"
            errors.append(f"Row {row_number}: {reason}")
            continue
        rows.append(SpendingRow(spending_item=item, amount=amount, row_number=row_number))
    return rows, errors
