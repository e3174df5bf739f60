"""
CRUD services for admins, donors, bhandaras, financial records and stats.

Every function takes the database handle first. Validation, missing records
and lock violations are raised as HTTPException before anything is written.
"""
import logging
import math
import os
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException
from passlib.context import CryptContext

from database import create_document, get_documents, utcnow
from policy import (
    ensure_bhandara_unlocked,
    ensure_record_mutable,
    is_bhandara_locked,
    summarize_bhandara,
    to_day,
)
from reconcile import DonorReconciler, clean_name, name_pattern, normalize_key
from schemas import (
    ADMIN_ROLES,
    BHANDARA_STATUS_ACTIVE,
    BHANDARA_STATUSES,
    DONATION_CREATE_PAYMENT_MODES,
    MIN_NOTE_LENGTH,
    PAYMENT_MODES,
    PAYMENT_STATUS_DONE,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    Admin,
    AdminCreate,
    Bhandara,
    BhandaraCreate,
    BhandaraSpending,
    BhandaraUpdate,
    Donation,
    DonationCreate,
    DonationUpdate,
    Donor,
    DonorCreate,
    DonorUpdate,
    SpendingCreate,
    SpendingItem,
    SpendingItemCreate,
    SpendingItemUpdate,
    SpendingUpdate,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PIN_PATTERN = re.compile(r"^\d{5}$")


# ===== Helpers =====

def oid(id_str: str, label: str = "id") -> ObjectId:
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(id_str)


def serialize_doc(doc: dict):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for key in ("created_at", "updated_at"):
        if key in doc and hasattr(doc[key], "isoformat"):
            doc[key] = doc[key].isoformat()
    return doc


def validate_amount(amount) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise HTTPException(status_code=400, detail="Invalid amount")
    if not math.isfinite(amount) or amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")
    return float(amount)


def _find_by_ids(db, collection: str, ids: Iterable[str]) -> dict:
    object_ids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not object_ids:
        return {}
    return {str(d["_id"]): d for d in db[collection].find({"_id": {"$in": object_ids}})}


# ===== Admins =====

def hash_pin(pin: str) -> str:
    return pwd_context.hash(pin)


def verify_pin(pin: str, hashed: str) -> bool:
    return pwd_context.verify(pin, hashed)


def format_admin(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "username": doc["username"],
        "role": doc.get("role", ROLE_ADMIN),
        "created_at": doc["created_at"].isoformat() if doc.get("created_at") else None,
    }


def create_admin(db, payload: AdminCreate) -> dict:
    username = (payload.username or "").strip().upper()
    if len(username) < 3:
        raise HTTPException(status_code=400, detail="Username must be at least 3 characters")
    if not PIN_PATTERN.match(payload.pin or ""):
        raise HTTPException(status_code=400, detail="PIN must be exactly 5 digits")
    if payload.role not in ADMIN_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    if db["admin"].find_one({"username": username}):
        raise HTTPException(status_code=400, detail="Username already exists")

    admin_id = create_document(db, "admin", Admin(username=username, pin=hash_pin(payload.pin),
                                                  role=payload.role))
    logger.info("Created %s %s", payload.role, username)
    return format_admin(db["admin"].find_one({"_id": ObjectId(admin_id)}))


def verify_admin(db, username: str, pin: str) -> Optional[dict]:
    admin = db["admin"].find_one({"username": (username or "").strip().upper()})
    if not admin or not verify_pin(pin or "", admin.get("pin", "")):
        return None
    return admin


def get_admin(db, admin_id: str) -> Optional[dict]:
    if not ObjectId.is_valid(admin_id):
        return None
    return db["admin"].find_one({"_id": ObjectId(admin_id)})


def list_admins(db) -> List[dict]:
    return [format_admin(d) for d in get_documents(db, "admin", sort=[("username", 1)])]


def seed_super_admin(db) -> Optional[str]:
    """Create the default super-admin when no admin exists yet."""
    if db["admin"].count_documents({}) > 0:
        return None
    username = os.getenv("DEFAULT_SUPER_ADMIN_USERNAME", "superadmin")
    pin = os.getenv("DEFAULT_SUPER_ADMIN_PIN", "12345")
    admin = create_admin(db, AdminCreate(username=username, pin=pin, role=ROLE_SUPER_ADMIN))
    logger.warning("No admins found; created default super-admin %s. Change the PIN after first login.",
                   admin["username"])
    return admin["id"]


# ===== Donors =====

def format_donor(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "donor_name": doc.get("donor_name"),
        "secondary_name": doc.get("secondary_name") or None,
        "created_at": doc["created_at"].isoformat() if doc.get("created_at") else None,
    }


def _donor_name(value: Optional[str]) -> str:
    donor_name = clean_name(value)
    if len(donor_name) < 2:
        raise HTTPException(status_code=400, detail="Donor name must be at least 2 characters")
    return donor_name


def _secondary_name(value: Optional[str]) -> str:
    secondary_name = clean_name(value)
    if secondary_name and len(secondary_name) < 2:
        raise HTTPException(status_code=400, detail="Father name must be at least 2 characters if provided")
    return secondary_name


def _same_donor(db, donor_name: str, secondary_name: str, exclude: Optional[ObjectId] = None):
    reconciler = DonorReconciler(db["donor"])
    values = {"donor_name": donor_name, "secondary_name": secondary_name}
    key = reconciler.key_for(values)
    for doc in db["donor"].find(reconciler.match_filter(values)):
        if doc["_id"] != exclude and reconciler.document_key(doc) == key:
            return doc
    return None


def create_donor(db, payload: DonorCreate) -> dict:
    donor_name = _donor_name(payload.donor_name)
    secondary_name = _secondary_name(payload.secondary_name)
    if _same_donor(db, donor_name, secondary_name):
        raise HTTPException(status_code=400, detail="A donor with this name already exists")
    donor_id = create_document(db, "donor", Donor(donor_name=donor_name,
                                                  secondary_name=secondary_name or None))
    return format_donor(db["donor"].find_one({"_id": ObjectId(donor_id)}))


def list_donors(db) -> List[dict]:
    return [format_donor(d) for d in get_documents(db, "donor", sort=[("donor_name", 1)])]


def get_donor(db, donor_id: str) -> dict:
    donor = db["donor"].find_one({"_id": oid(donor_id, "donor ID")})
    if not donor:
        raise HTTPException(status_code=404, detail="Donor not found")
    return format_donor(donor)


def search_donors(db, donor_name: str, secondary_name: Optional[str] = None) -> List[dict]:
    query = {"donor_name": {"$regex": re.escape(clean_name(donor_name)), "$options": "i"}}
    if clean_name(secondary_name):
        query["secondary_name"] = {"$regex": re.escape(clean_name(secondary_name)), "$options": "i"}
    return [format_donor(d) for d in get_documents(db, "donor", query, sort=[("donor_name", 1)])]


def update_donor(db, donor_id: str, payload: DonorUpdate) -> dict:
    _id = oid(donor_id, "donor ID")
    existing = db["donor"].find_one({"_id": _id})
    if not existing:
        raise HTTPException(status_code=404, detail="Donor not found")

    set_data, unset_data = {}, {}
    if payload.donor_name is not None:
        set_data["donor_name"] = _donor_name(payload.donor_name)
    if payload.secondary_name is not None:
        secondary_name = _secondary_name(payload.secondary_name)
        if secondary_name:
            set_data["secondary_name"] = secondary_name
        else:
            unset_data["secondary_name"] = ""
    if not set_data and not unset_data:
        raise HTTPException(status_code=400, detail="No fields to update")

    donor_name = set_data.get("donor_name", existing.get("donor_name"))
    secondary_name = "" if unset_data else set_data.get("secondary_name", existing.get("secondary_name") or "")
    if _same_donor(db, donor_name, secondary_name, exclude=_id):
        raise HTTPException(status_code=400, detail="A donor with this name already exists")

    update = {"$set": dict(set_data, updated_at=utcnow())}
    if unset_data:
        update["$unset"] = unset_data
    db["donor"].update_one({"_id": _id}, update)
    return format_donor(db["donor"].find_one({"_id": _id}))


# ===== Bhandaras =====

def format_bhandara(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "date": to_day(doc["date"]).isoformat(),
        "description": doc.get("description"),
        "status": doc.get("status", BHANDARA_STATUS_ACTIVE),
        "created_at": doc["created_at"].isoformat() if doc.get("created_at") else None,
        "is_locked": is_bhandara_locked(doc["date"]),
    }


def _bhandara_name(value: Optional[str]) -> str:
    name = clean_name(value)
    name = name[:1].upper() + name[1:].lower()
    if len(name) < 3:
        raise HTTPException(status_code=400, detail="Bhandara name must be at least 3 characters")
    return name


def _event_date(value: Optional[str]) -> str:
    try:
        return to_day(value).isoformat()
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid date format")


def _description(value: Optional[str]) -> Optional[str]:
    description = clean_name(value)
    return description or None


def load_bhandara(db, bhandara_id: str) -> dict:
    bhandara = db["bhandara"].find_one({"_id": oid(bhandara_id, "bhandara ID")})
    if not bhandara:
        raise HTTPException(status_code=404, detail="Bhandara not found")
    return bhandara


def create_bhandara(db, payload: BhandaraCreate) -> dict:
    bhandara = Bhandara(
        name=_bhandara_name(payload.name),
        date=_event_date(payload.date),
        description=_description(payload.description),
        status=BHANDARA_STATUS_ACTIVE,
    )
    bhandara_id = create_document(db, "bhandara", bhandara)
    return format_bhandara(db["bhandara"].find_one({"_id": ObjectId(bhandara_id)}))


def list_bhandaras(db, status: Optional[str] = None) -> List[dict]:
    query = {"status": status} if status else {}
    return [format_bhandara(d) for d in get_documents(db, "bhandara", query, sort=[("date", -1)])]


def get_bhandara(db, bhandara_id: str) -> dict:
    return format_bhandara(load_bhandara(db, bhandara_id))


def update_bhandara(db, bhandara_id: str, payload: BhandaraUpdate) -> dict:
    existing = load_bhandara(db, bhandara_id)
    ensure_bhandara_unlocked(existing, "update", "information")

    update = {}
    if payload.name is not None:
        update["name"] = _bhandara_name(payload.name)
    if payload.date is not None:
        update["date"] = _event_date(payload.date)
    unset = {}
    if payload.description is not None:
        description = _description(payload.description)
        if description:
            update["description"] = description
        else:
            unset["description"] = ""
    if not update and not unset:
        raise HTTPException(status_code=400, detail="No fields to update")

    operation = {"$set": dict(update, updated_at=utcnow())}
    if unset:
        operation["$unset"] = unset
    db["bhandara"].update_one({"_id": existing["_id"]}, operation)
    return get_bhandara(db, bhandara_id)


def update_bhandara_status(db, bhandara_id: str, status: str) -> dict:
    if status not in BHANDARA_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")
    existing = load_bhandara(db, bhandara_id)
    db["bhandara"].update_one({"_id": existing["_id"]}, {"$set": {"status": status, "updated_at": utcnow()}})
    return get_bhandara(db, bhandara_id)


def delete_bhandara(db, bhandara_id: str) -> None:
    existing = load_bhandara(db, bhandara_id)
    ensure_bhandara_unlocked(existing, "delete", "the bhandara")
    if db["donation"].count_documents({"bhandara_id": bhandara_id}, limit=1):
        raise HTTPException(status_code=400,
                            detail="Cannot delete bhandara. There are donations associated with this bhandara.")
    if db["bhandaraspending"].count_documents({"bhandara_id": bhandara_id}, limit=1):
        raise HTTPException(status_code=400,
                            detail="Cannot delete bhandara. There is spending associated with this bhandara.")
    db["bhandara"].delete_one({"_id": existing["_id"]})
    logger.info("Deleted bhandara %s (%s)", existing["name"], bhandara_id)


def bhandara_details(db, bhandara_id: str) -> dict:
    bhandara = get_bhandara(db, bhandara_id)
    return {
        "bhandara": bhandara,
        "donations": list_donations(db, bhandara_id=bhandara_id),
        "spendings": list_spendings(db, bhandara_id=bhandara_id),
        "summary": summarize_bhandara(db, bhandara_id),
    }


# ===== Financial records =====

@dataclass(frozen=True)
class RecordKind:
    """Describes one financial record collection (donations or spending)."""
    collection: str
    ref_field: str
    ref_collection: str
    ref_label: str
    label: str
    noun: str
    create_modes: Tuple[str, ...]


DONATIONS = RecordKind(
    collection="donation",
    ref_field="donor_id",
    ref_collection="donor",
    ref_label="donor",
    label="Donation",
    noun="donations",
    create_modes=DONATION_CREATE_PAYMENT_MODES,
)

SPENDINGS = RecordKind(
    collection="bhandaraspending",
    ref_field="spending_item_id",
    ref_collection="spendingitem",
    ref_label="spending item",
    label="Bhandara spending",
    noun="spending",
    create_modes=PAYMENT_MODES,
)


def _format_ref(kind: RecordKind, doc: Optional[dict], ref_id: str) -> dict:
    doc = doc or {}
    if kind is DONATIONS:
        return {"id": ref_id, "donor_name": doc.get("donor_name"),
                "secondary_name": doc.get("secondary_name") or None}
    return {"id": ref_id, "name": doc.get("name"), "description": doc.get("description")}


def _format_records(db, kind: RecordKind, docs: List[dict]) -> List[dict]:
    refs = _find_by_ids(db, kind.ref_collection, (d[kind.ref_field] for d in docs))
    bhandaras = _find_by_ids(db, "bhandara", (d["bhandara_id"] for d in docs))
    admins = _find_by_ids(db, "admin", (d.get("admin_id") for d in docs))

    formatted = []
    for doc in docs:
        bhandara = bhandaras.get(doc["bhandara_id"], {})
        admin = admins.get(doc.get("admin_id"), {})
        record = {
            "id": str(doc["_id"]),
            kind.ref_label.replace(" ", "_"): _format_ref(kind, refs.get(doc[kind.ref_field]), doc[kind.ref_field]),
            "bhandara": {
                "id": doc["bhandara_id"],
                "name": bhandara.get("name"),
                "date": to_day(bhandara["date"]).isoformat() if bhandara.get("date") else None,
                "is_locked": is_bhandara_locked(bhandara["date"]) if bhandara.get("date") else False,
            },
            "amount": doc["amount"],
            "payment_mode": doc.get("payment_mode"),
            "date": doc.get("date"),
            "note": doc.get("note"),
            "admin": {"id": doc.get("admin_id"), "username": admin.get("username")},
            "is_locked": doc.get("is_locked", False),
            "created_at": doc["created_at"].isoformat() if doc.get("created_at") else None,
            "updated_at": doc["updated_at"].isoformat() if doc.get("updated_at") else None,
        }
        if kind is DONATIONS:
            record["payment_status"] = doc.get("payment_status", PAYMENT_STATUS_DONE)
        formatted.append(record)
    return formatted


def _load_record(db, kind: RecordKind, record_id: str) -> dict:
    record = db[kind.collection].find_one({"_id": oid(record_id, f"{kind.label.lower()} ID")})
    if not record:
        raise HTTPException(status_code=404, detail=f"{kind.label} not found")
    return record


def _get_record(db, kind: RecordKind, record_id: str) -> dict:
    return _format_records(db, kind, [_load_record(db, kind, record_id)])[0]


def _list_records(db, kind: RecordKind, query: dict) -> List[dict]:
    docs = get_documents(db, kind.collection, query, sort=[("date", -1), ("created_at", -1)])
    return _format_records(db, kind, docs)


def _create_record(db, kind: RecordKind, ref_id: str, bhandara_id: str, amount, payment_mode: str,
                   current: dict) -> dict:
    ref_oid = oid(ref_id, f"{kind.ref_label} ID")
    oid(bhandara_id, "bhandara ID")
    amount = validate_amount(amount)
    if payment_mode not in kind.create_modes:
        raise HTTPException(status_code=400, detail="Invalid payment mode")

    if not db[kind.ref_collection].find_one({"_id": ref_oid}):
        raise HTTPException(status_code=404, detail=f"{kind.ref_label.capitalize()} not found")
    bhandara = load_bhandara(db, bhandara_id)
    ensure_bhandara_unlocked(bhandara, "add", kind.noun)

    fields = dict(
        bhandara_id=bhandara_id,
        amount=amount,
        payment_mode=payment_mode,
        date=date.today().isoformat(),
        admin_id=current["admin_id"],
        is_locked=False,
    )
    fields[kind.ref_field] = ref_id
    model = Donation(payment_status=PAYMENT_STATUS_DONE, **fields) if kind is DONATIONS \
        else BhandaraSpending(**fields)
    record_id = create_document(db, kind.collection, model)
    logger.info("%s %s created by %s", kind.label, record_id, current.get("username"))
    return _get_record(db, kind, record_id)


def _update_record(db, kind: RecordKind, record_id: str, amount, payment_mode: Optional[str],
                   note: Optional[str], current: dict) -> dict:
    oid(record_id, f"{kind.label.lower()} ID")
    note = (note or "").strip()
    if len(note) < MIN_NOTE_LENGTH:
        raise HTTPException(status_code=400,
                            detail=f"Note is mandatory and must be at least {MIN_NOTE_LENGTH} characters")
    if amount is not None:
        amount = validate_amount(amount)
    if payment_mode and payment_mode not in PAYMENT_MODES:
        raise HTTPException(status_code=400, detail="Invalid payment mode")

    existing = _load_record(db, kind, record_id)
    bhandara = load_bhandara(db, existing["bhandara_id"])
    ensure_record_mutable(bhandara, existing, current, "update", kind.noun, kind.label)

    update = {"note": note, "admin_id": current["admin_id"], "updated_at": utcnow()}
    if amount is not None:
        update["amount"] = amount
    if payment_mode:
        update["payment_mode"] = payment_mode
    if kind is DONATIONS:
        update["payment_status"] = PAYMENT_STATUS_DONE
    db[kind.collection].update_one({"_id": existing["_id"]}, {"$set": update})
    logger.info("%s %s updated by %s: %s", kind.label, record_id, current.get("username"), note)
    return _get_record(db, kind, record_id)


def _delete_record(db, kind: RecordKind, record_id: str, current: dict) -> None:
    existing = _load_record(db, kind, record_id)
    bhandara = load_bhandara(db, existing["bhandara_id"])
    ensure_record_mutable(bhandara, existing, current, "delete", kind.noun, kind.label)
    db[kind.collection].delete_one({"_id": existing["_id"]})
    logger.info("%s %s deleted by %s", kind.label, record_id, current.get("username"))


def _set_record_lock(db, kind: RecordKind, record_id: str, locked: bool, current: dict) -> dict:
    if not locked and current.get("role") != ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail=f"Only super-admin can unlock {kind.noun}")
    existing = _load_record(db, kind, record_id)
    db[kind.collection].update_one({"_id": existing["_id"]},
                                   {"$set": {"is_locked": locked, "updated_at": utcnow()}})
    logger.info("%s %s %s by %s", kind.label, record_id, "locked" if locked else "unlocked",
                current.get("username"))
    return _get_record(db, kind, record_id)


def create_donation(db, payload: DonationCreate, current: dict) -> dict:
    return _create_record(db, DONATIONS, payload.donor_id, payload.bhandara_id, payload.amount,
                          payload.payment_mode, current)


def list_donations(db, bhandara_id: Optional[str] = None, donor_id: Optional[str] = None) -> List[dict]:
    query = {}
    if bhandara_id:
        oid(bhandara_id, "bhandara ID")
        query["bhandara_id"] = bhandara_id
    if donor_id:
        oid(donor_id, "donor ID")
        query["donor_id"] = donor_id
    return _list_records(db, DONATIONS, query)


def get_donation(db, donation_id: str) -> dict:
    return _get_record(db, DONATIONS, donation_id)


def update_donation(db, donation_id: str, payload: DonationUpdate, current: dict) -> dict:
    return _update_record(db, DONATIONS, donation_id, payload.amount, payload.payment_mode,
                          payload.note, current)


def delete_donation(db, donation_id: str, current: dict) -> None:
    _delete_record(db, DONATIONS, donation_id, current)


def set_donation_lock(db, donation_id: str, locked: bool, current: dict) -> dict:
    return _set_record_lock(db, DONATIONS, donation_id, locked, current)


def create_spending(db, payload: SpendingCreate, current: dict) -> dict:
    return _create_record(db, SPENDINGS, payload.spending_item_id, payload.bhandara_id, payload.amount,
                          payload.payment_mode, current)


def list_spendings(db, bhandara_id: Optional[str] = None, spending_item_id: Optional[str] = None) -> List[dict]:
    query = {}
    if bhandara_id:
        oid(bhandara_id, "bhandara ID")
        query["bhandara_id"] = bhandara_id
    if spending_item_id:
        oid(spending_item_id, "spending item ID")
        query["spending_item_id"] = spending_item_id
    return _list_records(db, SPENDINGS, query)


def get_spending(db, spending_id: str) -> dict:
    return _get_record(db, SPENDINGS, spending_id)


def update_spending(db, spending_id: str, payload: SpendingUpdate, current: dict) -> dict:
    return _update_record(db, SPENDINGS, spending_id, payload.amount, payload.payment_mode,
                          payload.note, current)


def delete_spending(db, spending_id: str, current: dict) -> None:
    _delete_record(db, SPENDINGS, spending_id, current)


def set_spending_lock(db, spending_id: str, locked: bool, current: dict) -> dict:
    return _set_record_lock(db, SPENDINGS, spending_id, locked, current)


# ===== Spending items =====

def format_spending_item(doc: dict) -> dict:
    return serialize_doc(doc)


def _item_name(value: Optional[str]) -> str:
    name = clean_name(value)
    if len(name) < 2:
        raise HTTPException(status_code=400,
                            detail="Spending item name is required and must be at least 2 characters")
    return name


def _same_item(db, name: str, exclude: Optional[ObjectId] = None):
    key = normalize_key(name)
    for doc in db["spendingitem"].find({"name": name_pattern(name)}):
        if doc["_id"] != exclude and normalize_key(doc.get("name")) == key:
            return doc
    return None


def create_spending_item(db, payload: SpendingItemCreate) -> dict:
    name = _item_name(payload.name)
    if _same_item(db, name):
        raise HTTPException(status_code=400, detail="A spending item with this name already exists")
    item_id = create_document(db, "spendingitem",
                              SpendingItem(name=name, description=_description(payload.description)))
    return format_spending_item(db["spendingitem"].find_one({"_id": ObjectId(item_id)}))


def list_spending_items(db) -> List[dict]:
    return [format_spending_item(d) for d in get_documents(db, "spendingitem", sort=[("name", 1)])]


def get_spending_item(db, item_id: str) -> dict:
    item = db["spendingitem"].find_one({"_id": oid(item_id, "spending item ID")})
    if not item:
        raise HTTPException(status_code=404, detail="Spending item not found")
    return format_spending_item(item)


def update_spending_item(db, item_id: str, payload: SpendingItemUpdate) -> dict:
    _id = oid(item_id, "spending item ID")
    if not db["spendingitem"].find_one({"_id": _id}):
        raise HTTPException(status_code=404, detail="Spending item not found")

    update, unset = {}, {}
    if payload.name is not None:
        name = _item_name(payload.name)
        if _same_item(db, name, exclude=_id):
            raise HTTPException(status_code=400, detail="A spending item with this name already exists")
        update["name"] = name
    if payload.description is not None:
        description = _description(payload.description)
        if description:
            update["description"] = description
        else:
            unset["description"] = ""
    if not update and not unset:
        raise HTTPException(status_code=400, detail="No fields to update")

    operation = {"$set": dict(update, updated_at=utcnow())}
    if unset:
        operation["$unset"] = unset
    db["spendingitem"].update_one({"_id": _id}, operation)
    return get_spending_item(db, item_id)


def delete_spending_item(db, item_id: str) -> None:
    _id = oid(item_id, "spending item ID")
    if not db["spendingitem"].find_one({"_id": _id}):
        raise HTTPException(status_code=404, detail="Spending item not found")
    if db["bhandaraspending"].count_documents({"spending_item_id": item_id}, limit=1):
        raise HTTPException(status_code=400,
                            detail="Cannot delete spending item. It is used in bhandara spending.")
    db["spendingitem"].delete_one({"_id": _id})


# ===== Stats =====

def _sum_amount(db, collection: str) -> float:
    rows = list(db[collection].aggregate([{"$group": {"_id": None, "total": {"$sum": "$amount"}}}]))
    return (rows[0]["total"] if rows else 0) or 0


def overall_stats(db) -> dict:
    total_collected = _sum_amount(db, "donation")
    total_spent = _sum_amount(db, "bhandaraspending")
    week_ago = utcnow() - timedelta(days=7)
    return {
        "total_bhandaras": db["bhandara"].count_documents({}),
        "active_bhandaras": db["bhandara"].count_documents({"status": BHANDARA_STATUS_ACTIVE}),
        "total_donors": db["donor"].count_documents({}),
        "total_donations": db["donation"].count_documents({}),
        "total_collected_amount": total_collected,
        "total_spent_amount": total_spent,
        "net_balance": total_collected - total_spent,
        "recent_donations": db["donation"].count_documents({"created_at": {"$gte": week_ago}}),
    }


def bhandara_stats(db) -> List[dict]:
    stats = []
    for bhandara in get_documents(db, "bhandara"):
        summary = summarize_bhandara(db, str(bhandara["_id"]))
        summary["bhandara_name"] = bhandara["name"]
        stats.append(summary)
    stats.sort(key=lambda s: s["total_collected"], reverse=True)
    return stats


def get_stats(db) -> dict:
    return {"overall": overall_stats(db), "bhandaras": bhandara_stats(db)}
