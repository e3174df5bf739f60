"""
Bulk import of donations and spending from pre-parsed spreadsheet rows.

Batch preconditions (admin session, bhandara id, bhandara exists and is not
locked, non-empty data) reject the whole upload before anything is written.
Past that point nothing raises: every problem is reported against the row
number it came from and the remaining rows go through.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from bson import ObjectId
from pymongo.errors import BulkWriteError

from database import utcnow
from policy import ensure_bhandara_unlocked, is_bhandara_locked
from reconcile import DonorReconciler, SpendingItemReconciler
from schemas import (
    PAYMENT_MODE_CASH,
    PAYMENT_STATUS_DONE,
    BhandaraSpending,
    Donation,
    DonorRow,
    SpendingRow,
)

logger = logging.getLogger(__name__)


@dataclass
class ResolvedRow:
    entity_id: str
    amount: float
    row_number: int
    label: str = ""


@dataclass
class WriteResult:
    inserted_count: int = 0
    skipped_count: int = 0
    row_errors: Dict[int, str] = field(default_factory=dict)


def _word(count: int, word: str) -> str:
    return word if count == 1 else f"{word}s"


def _plural(count: int, word: str) -> str:
    return f"{count} {_word(count, word)}"


def upload_result(success: bool, message: str, resolved: int = 0,
                  errors: Optional[List[str]] = None) -> dict:
    errors = errors or []
    return {
        "success": success,
        "message": message,
        "results": {"success": resolved, "failed": len(errors), "errors": errors},
    }


def _failure(message: str, error: Optional[str] = None, extra_errors: Sequence[str] = ()) -> dict:
    errors = list(extra_errors) + [error or message]
    return {
        "success": False,
        "message": message,
        "results": {"success": 0, "failed": len(errors), "errors": errors},
    }


def map_write_errors(exc: BulkWriteError, row_numbers: Sequence[int], fallback: str) -> Dict[int, str]:
    """Attach each write error of an unordered insert to the row that produced it."""
    errors = {}
    for write_error in (exc.details or {}).get("writeErrors", []):
        index = write_error.get("index", -1)
        message = write_error.get("errmsg") or fallback
        if 0 <= index < len(row_numbers):
            row_number = row_numbers[index]
            errors[row_number] = f"Row {row_number}: {message}"
        else:
            errors[-1 - len(errors)] = f"Write {index + 1}: {message}"
    return errors


def _insert_unordered(collection, documents: List[dict], row_numbers: List[int],
                      fallback: str, result: WriteResult) -> None:
    if not documents:
        return
    try:
        inserted = collection.insert_many(documents, ordered=False)
        result.inserted_count = len(inserted.inserted_ids)
    except BulkWriteError as exc:
        details = exc.details or {}
        write_errors = details.get("writeErrors", [])
        result.inserted_count = details.get("nInserted", len(documents) - len(write_errors))
        result.row_errors.update(map_write_errors(exc, row_numbers, fallback))
        logger.warning("Partial insert into %s: %d inserted, %d failed", collection.name,
                       result.inserted_count, len(write_errors))


def write_donations(db, resolved: Iterable[ResolvedRow], bhandara: dict, admin_id: str) -> WriteResult:
    """
    Insert one donation per resolved row in a single unordered insert.

    Rows with amount 0 only register the donor and are skipped. Donations are
    never deduplicated: a donor may give several times to the same bhandara.
    """
    ensure_bhandara_unlocked(bhandara, "add", "donations")
    result = WriteResult()
    bhandara_id = str(bhandara["_id"])
    today = date.today().isoformat()
    now = utcnow()

    documents, row_numbers = [], []
    for row in resolved:
        if row.amount == 0:
            result.skipped_count += 1
            continue
        document = Donation(
            donor_id=row.entity_id,
            bhandara_id=bhandara_id,
            amount=row.amount,
            payment_status=PAYMENT_STATUS_DONE,
            payment_mode=PAYMENT_MODE_CASH,
            date=today,
            admin_id=admin_id,
            is_locked=False,
        ).model_dump(exclude_none=True)
        document["created_at"] = now
        document["updated_at"] = now
        documents.append(document)
        row_numbers.append(row.row_number)

    _insert_unordered(db["donation"], documents, row_numbers, "Failed to create donation", result)
    return result


def write_spendings(db, resolved: Iterable[ResolvedRow], bhandara: dict, admin_id: str) -> WriteResult:
    """
    Insert spending records, refusing items already spent on in this bhandara.

    An item may appear only once per bhandara; a second occurrence (stored or
    earlier in the same batch) is a row error and is never overwritten.
    """
    ensure_bhandara_unlocked(bhandara, "add", "spending")
    resolved = list(resolved)
    result = WriteResult()
    bhandara_id = str(bhandara["_id"])
    today = date.today().isoformat()
    now = utcnow()

    item_ids = list({row.entity_id for row in resolved})
    taken = set(db["bhandaraspending"].distinct(
        "spending_item_id", {"bhandara_id": bhandara_id, "spending_item_id": {"$in": item_ids}}
    )) if item_ids else set()

    documents, row_numbers = [], []
    for row in resolved:
        if row.amount == 0:
            result.skipped_count += 1
            continue
        if row.entity_id in taken:
            result.row_errors[row.row_number] = (
                f'Row {row.row_number}: Spending record already exists for "{row.label}" in this bhandara'
            )
            continue
        taken.add(row.entity_id)
        document = BhandaraSpending(
            spending_item_id=row.entity_id,
            bhandara_id=bhandara_id,
            amount=row.amount,
            payment_mode=PAYMENT_MODE_CASH,
            date=today,
            note=f"Uploaded from Excel - Row {row.row_number}",
            admin_id=admin_id,
            is_locked=False,
        ).model_dump(exclude_none=True)
        document["created_at"] = now
        document["updated_at"] = now
        documents.append(document)
        row_numbers.append(row.row_number)

    _insert_unordered(db["bhandaraspending"], documents, row_numbers,
                      "Failed to create bhandara spending", result)
    return result


def _check_batch(db, bhandara_id: str, current: Optional[dict], rows: Sequence,
                 noun: str, parse_errors: Sequence[str]):
    """Return ``(bhandara, None)`` or ``(None, failure_result)``."""
    if not current:
        return None, _failure("Unauthorized", "Unauthorized access")
    if not ObjectId.is_valid(bhandara_id):
        return None, _failure("Invalid bhandara ID format")
    bhandara = db["bhandara"].find_one({"_id": ObjectId(bhandara_id)})
    if not bhandara:
        return None, _failure("Bhandara not found")
    if is_bhandara_locked(bhandara["date"]):
        return None, _failure("Bhandara is locked",
                              f"Bhandara is locked. Cannot add {noun} after the event date.")
    if not rows:
        return None, _failure("No data provided", "No valid data to upload", parse_errors)
    return bhandara, None


def _merge_errors(parse_errors: Sequence[str], *row_error_maps: Dict[int, str]) -> List[str]:
    merged: Dict[int, str] = {}
    for row_errors in row_error_maps:
        merged.update(row_errors)
    return list(parse_errors) + [merged[row_number] for row_number in sorted(merged)]


def bulk_upload_donations(db, rows: Sequence[DonorRow], bhandara_id: str, current: Optional[dict],
                          parse_errors: Sequence[str] = ()) -> dict:
    """Register donors and record their donations for one bhandara."""
    try:
        bhandara, failure = _check_batch(db, bhandara_id, current, rows, "donations", parse_errors)
        if failure:
            return failure

        logger.info("Processing %d donation rows for bhandara %s (%s)", len(rows),
                    bhandara.get("name"), bhandara_id)
        reconciler = DonorReconciler(db["donor"])
        reconciled = reconciler.reconcile(rows)

        resolved = []
        for row in rows:
            donor_id = reconciled.id_for_key(reconciler.key_for_row(row))
            if donor_id is None:
                continue
            resolved.append(ResolvedRow(str(donor_id), row.amount, row.row_number))

        written = write_donations(db, resolved, bhandara, current["admin_id"])
        errors = _merge_errors(parse_errors, reconciled.row_errors, written.row_errors)

        donors = len(resolved)
        message = f"Processed {_plural(donors, 'donor')} successfully"
        if written.inserted_count:
            message += f", {written.inserted_count} with {_word(written.inserted_count, 'donation')}"
        if written.skipped_count:
            message += f", {written.skipped_count} without {_word(written.skipped_count, 'donation')} (amount 0)"
        if errors:
            message += f", {len(errors)} failed"
        return upload_result(True, message, donors, errors)
    except Exception as exc:
        logger.exception("Bulk donation upload failed for bhandara %s", bhandara_id)
        return _failure(getattr(exc, "detail", None) or str(exc) or "Failed to process bulk upload")


def bulk_upload_spendings(db, rows: Sequence[SpendingRow], bhandara_id: str, current: Optional[dict],
                          parse_errors: Sequence[str] = ()) -> dict:
    """Register spending items and record one spending per item for one bhandara."""
    try:
        bhandara, failure = _check_batch(db, bhandara_id, current, rows, "spending", parse_errors)
        if failure:
            return failure

        logger.info("Processing %d spending rows for bhandara %s (%s)", len(rows),
                    bhandara.get("name"), bhandara_id)
        reconciler = SpendingItemReconciler(db["spendingitem"])
        reconciled = reconciler.reconcile(rows)

        resolved = []
        for row in rows:
            item_id = reconciled.id_for_key(reconciler.key_for_row(row))
            if item_id is None:
                continue
            label = reconciler.row_values(row)["name"]
            resolved.append(ResolvedRow(str(item_id), row.amount, row.row_number, label=label))

        written = write_spendings(db, resolved, bhandara, current["admin_id"])
        errors = _merge_errors(parse_errors, reconciled.row_errors, written.row_errors)

        total_rows = len(rows)
        duplicates = reconciled.duplicate_count
        message = f"Processed {_plural(total_rows, 'row')}"
        if duplicates > 0:
            message += f" ({_plural(duplicates, 'duplicate')} found)"
        message += f", resolved {_plural(reconciled.unique_count, 'unique spending item')}"
        if written.inserted_count:
            message += f", {_plural(written.inserted_count, 'bhandara spending')} created"
        if written.skipped_count:
            message += f", {_plural(written.skipped_count, 'spending item')} without amount (amount 0)"
        if errors:
            message += f", {_plural(len(errors), 'error')}"
        return upload_result(True, message, len(resolved), errors)
    except Exception as exc:
        logger.exception("Bulk spending upload failed for bhandara %s", bhandara_id)
        return _failure(getattr(exc, "detail", None) or str(exc) or "Failed to process bulk spending upload")
