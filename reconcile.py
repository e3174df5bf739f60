"""
Reconciliation of spreadsheet rows against donors and spending items.

Rows naming the same real-world entity are collapsed on a canonical key
(trimmed, whitespace-collapsed, lowercased). The key function and the store
filter are built from the same cleaned value so that batch dedup and store
dedup always agree.

Each reconcile call is a find / upsert / re-find sequence:

1. one ``$or`` lookup for every distinct key in the batch,
2. one unordered ``bulk_write`` of ``$setOnInsert`` upserts for the keys that
   were not found,
3. a second lookup for exactly those keys, which also picks up rows that a
   concurrent import created between steps 1 and 2.

Keys still unresolved after step 3 become per-row errors.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError

from database import utcnow

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|||"


def clean_name(value: Optional[str]) -> str:
    """Trim and collapse internal whitespace, keeping case."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_name(value: Optional[str]) -> str:
    return clean_name(value).lower()


def normalize_key(primary: Optional[str], secondary: Optional[str] = None) -> str:
    """Canonical matching key; a missing secondary name normalizes to ''."""
    return f"{normalize_name(primary)}{KEY_SEPARATOR}{normalize_name(secondary)}"


def name_pattern(value: str) -> "re.Pattern":
    """Anchored, case-insensitive pattern matching ``value`` modulo whitespace."""
    parts = [re.escape(part) for part in clean_name(value).split(" ")]
    return re.compile(r"^\s*" + r"\s+".join(parts) + r"\s*$", re.IGNORECASE)


def absent_filter(field_name: str) -> dict:
    """Match documents where ``field_name`` is missing, empty or null."""
    return {"$or": [
        {field_name: {"$exists": False}},
        {field_name: ""},
        {field_name: None},
    ]}


@dataclass
class PendingEntity:
    key: str
    values: dict
    row_numbers: List[int] = field(default_factory=list)


@dataclass
class ReconcileResult:
    key_to_id: dict
    row_errors: Dict[int, str]
    unique_count: int = 0
    created_count: int = 0
    duplicate_count: int = 0

    def id_for_key(self, key: str):
        return self.key_to_id.get(key)


class _Reconciler:
    """Shared find / upsert / re-find flow; subclasses describe the entity."""

    label = "entity"
    primary_field = "name"

    def __init__(self, collection):
        self.collection = collection

    # -- entity description -------------------------------------------------

    def row_values(self, row) -> dict:
        raise NotImplementedError

    def key_for(self, values: dict) -> str:
        raise NotImplementedError

    def document_key(self, document: dict) -> str:
        raise NotImplementedError

    def match_filter(self, values: dict) -> dict:
        raise NotImplementedError

    def insert_fields(self, values: dict) -> dict:
        raise NotImplementedError

    def unresolved_message(self, entity: PendingEntity, row_number: int) -> str:
        return f"Row {row_number}: Failed to find or create {self.label}"

    def missing_name_message(self, row_number: int) -> str:
        return f"Row {row_number}: {self.label.capitalize()} name is required"

    # -- flow -----------------------------------------------------------------

    def key_for_row(self, row) -> str:
        return self.key_for(self.row_values(row))

    def reconcile(self, rows: Iterable) -> ReconcileResult:
        pending: Dict[str, PendingEntity] = {}
        row_errors: Dict[int, str] = {}
        duplicates = 0

        for row in rows:
            values = self.row_values(row)
            if not values[self.primary_field]:
                row_errors[row.row_number] = self.missing_name_message(row.row_number)
                continue
            key = self.key_for(values)
            entity = pending.get(key)
            if entity is None:
                pending[key] = PendingEntity(key=key, values=values, row_numbers=[row.row_number])
            else:
                entity.row_numbers.append(row.row_number)
                duplicates += 1

        key_to_id = self._lookup(list(pending.values()))
        missing = [entity for key, entity in pending.items() if key not in key_to_id]

        created = 0
        if missing:
            created = self._upsert(missing)
            key_to_id.update(self._lookup(missing))

        for entity in pending.values():
            if entity.key in key_to_id:
                continue
            logger.error("Could not resolve %s %r for rows %s", self.label, entity.key, entity.row_numbers)
            for row_number in entity.row_numbers:
                row_errors[row_number] = self.unresolved_message(entity, row_number)

        logger.info("Reconciled %d %s keys (%d existing, %d created, %d unresolved)",
                    len(pending), self.label, len(pending) - len(missing), created,
                    len(pending) - len(key_to_id))
        return ReconcileResult(key_to_id=key_to_id, row_errors=row_errors,
                               unique_count=len(pending), created_count=created,
                               duplicate_count=duplicates)

    def _lookup(self, entities: List[PendingEntity]) -> dict:
        if not entities:
            return {}
        wanted = {entity.key for entity in entities}
        query = {"$or": [self.match_filter(entity.values) for entity in entities]}
        found = {}
        # Oldest document wins if the store already holds duplicates
        for document in self.collection.find(query).sort("_id", 1):
            key = self.document_key(document)
            if key in wanted:
                found.setdefault(key, document["_id"])
        return found

    def _upsert(self, entities: List[PendingEntity]) -> int:
        now = utcnow()
        operations = []
        for entity in entities:
            fields = self.insert_fields(entity.values)
            fields["created_at"] = now
            fields["updated_at"] = now
            operations.append(UpdateOne(self.match_filter(entity.values),
                                        {"$setOnInsert": fields}, upsert=True))
        try:
            result = self.collection.bulk_write(operations, ordered=False)
        except BulkWriteError as exc:
            # Failed upserts surface as unresolved keys after the re-find
            details = exc.details or {}
            logger.warning("Upsert of %d %s records reported %d write errors", len(operations),
                           self.label, len(details.get("writeErrors", [])))
            return details.get("nUpserted", 0)
        return len(result.upserted_ids or {})


class DonorReconciler(_Reconciler):
    """Resolves (first name, father's name) rows to donor ids."""

    label = "donor"
    primary_field = "donor_name"

    def row_values(self, row) -> dict:
        donor_name = clean_name(row.first_name)
        secondary_name = clean_name(getattr(row, "last_name", None))
        return {"donor_name": donor_name, "secondary_name": secondary_name}

    def key_for(self, values: dict) -> str:
        return normalize_key(values["donor_name"], values["secondary_name"])

    def document_key(self, document: dict) -> str:
        return normalize_key(document.get("donor_name"), document.get("secondary_name"))

    def match_filter(self, values: dict) -> dict:
        query = {"donor_name": name_pattern(values["donor_name"])}
        if values["secondary_name"]:
            query["secondary_name"] = name_pattern(values["secondary_name"])
        else:
            query.update(absent_filter("secondary_name"))
        return query

    def insert_fields(self, values: dict) -> dict:
        fields = {"donor_name": values["donor_name"]}
        if values["secondary_name"]:
            fields["secondary_name"] = values["secondary_name"]
        return fields


class SpendingItemReconciler(_Reconciler):
    """Resolves spending item names to spending item ids."""

    label = "spending item"

    def row_values(self, row) -> dict:
        name = clean_name(row.spending_item)
        return {"name": name}

    def key_for(self, values: dict) -> str:
        return normalize_key(values["name"])

    def document_key(self, document: dict) -> str:
        return normalize_key(document.get("name"))

    def match_filter(self, values: dict) -> dict:
        return {"name": name_pattern(values["name"])}

    def insert_fields(self, values: dict) -> dict:
        return {"name": values["name"]}

    def unresolved_message(self, entity: PendingEntity, row_number: int) -> str:
        return f'Row {row_number}: Failed to find or create spending item "{entity.values["name"]}"'
