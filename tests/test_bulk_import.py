import pytest
from bson import ObjectId
from fastapi import HTTPException
from pymongo.errors import BulkWriteError

from bulk_import import (
    ResolvedRow,
    bulk_upload_donations,
    bulk_upload_spendings,
    map_write_errors,
    write_donations,
)
from schemas import DonorRow, SpendingRow


def _donor(first, last=None, amount=100, row=2):
    return DonorRow(first_name=first, last_name=last, amount=amount, row_number=row)


def _item(name, amount=100, row=2):
    return SpendingRow(spending_item=name, amount=amount, row_number=row)


def test_same_donor_twice_gives_one_donor_two_donations(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    rows = [_donor("Ram", "Shah", 100, row=2), _donor("ram", "shah", 50, row=3)]

    result = bulk_upload_donations(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert result["success"] is True
    assert result["results"] == {"success": 2, "failed": 0, "errors": []}
    assert result["message"] == "Processed 2 donors successfully, 2 with donations"
    assert mongo_db["donor"].count_documents({}) == 1
    donations = list(mongo_db["donation"].find({}))
    assert sorted(d["amount"] for d in donations) == [50, 100]
    donor_id = str(mongo_db["donor"].find_one({})["_id"])
    for donation in donations:
        assert donation["donor_id"] == donor_id
        assert donation["bhandara_id"] == str(bhandara["_id"])
        assert donation["payment_mode"] == "cash"
        assert donation["payment_status"] == "done"
        assert donation["admin_id"] == admin_current["admin_id"]
        assert donation["is_locked"] is False


def test_zero_amount_registers_donor_without_donation(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    rows = [_donor("Sita", amount=0, row=2), _donor("Gita", amount=25, row=3)]

    result = bulk_upload_donations(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert result["results"]["success"] == 2
    assert result["message"] == ("Processed 2 donors successfully, 1 with donation, "
                                 "1 without donation (amount 0)")
    assert mongo_db["donor"].count_documents({}) == 2
    assert mongo_db["donation"].count_documents({}) == 1


def test_reimport_keeps_donors_and_doubles_donations(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    rows = [_donor("Ram", "Shah", row=2), _donor("Mohan", row=3)]

    bulk_upload_donations(mongo_db, rows, str(bhandara["_id"]), admin_current)
    bulk_upload_donations(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert mongo_db["donor"].count_documents({}) == 2
    assert mongo_db["donation"].count_documents({}) == 4


def test_unauthorized_upload_writes_nothing(mongo_db, make_bhandara):
    bhandara = make_bhandara()

    result = bulk_upload_donations(mongo_db, [_donor("Ram")], str(bhandara["_id"]), None)

    assert result == {
        "success": False,
        "message": "Unauthorized",
        "results": {"success": 0, "failed": 1, "errors": ["Unauthorized access"]},
    }
    assert mongo_db["donor"].count_documents({}) == 0


def test_invalid_and_missing_bhandara(mongo_db, admin_current):
    invalid = bulk_upload_donations(mongo_db, [_donor("Ram")], "not-an-id", admin_current)
    missing = bulk_upload_donations(mongo_db, [_donor("Ram")], str(ObjectId()), admin_current)

    assert invalid["message"] == "Invalid bhandara ID format"
    assert missing["message"] == "Bhandara not found"
    assert mongo_db["donor"].count_documents({}) == 0


def test_empty_batch_reports_parse_errors(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()

    result = bulk_upload_donations(mongo_db, [], str(bhandara["_id"]), admin_current,
                                   parse_errors=["Row 2: Amount cannot be negative"])

    assert result["success"] is False
    assert result["message"] == "No data provided"
    assert result["results"]["errors"] == ["Row 2: Amount cannot be negative", "No valid data to upload"]
    assert result["results"]["failed"] == 2


def test_locked_bhandara_rejects_whole_batch(mongo_db, make_bhandara, admin_current, enable_lock):
    bhandara = make_bhandara(days_ago=1)

    result = bulk_upload_donations(mongo_db, [_donor("Ram")], str(bhandara["_id"]), admin_current)

    assert result["success"] is False
    assert result["message"] == "Bhandara is locked"
    assert result["results"]["errors"] == ["Bhandara is locked. Cannot add donations after the event date."]
    assert mongo_db["donor"].count_documents({}) == 0
    assert mongo_db["donation"].count_documents({}) == 0


def test_event_day_is_never_locked(mongo_db, make_bhandara, admin_current, enable_lock):
    bhandara = make_bhandara(days_ago=0)

    result = bulk_upload_donations(mongo_db, [_donor("Ram")], str(bhandara["_id"]), admin_current)

    assert result["success"] is True
    assert mongo_db["donation"].count_documents({}) == 1


def test_write_donations_refuses_locked_bhandara(mongo_db, make_bhandara, enable_lock):
    bhandara = make_bhandara(days_ago=3)

    with pytest.raises(HTTPException) as exc_info:
        write_donations(mongo_db, [ResolvedRow(str(ObjectId()), 10, 2)], bhandara, str(ObjectId()))

    assert exc_info.value.status_code == 403


def test_locked_bhandara_rejects_spending_batch(mongo_db, make_bhandara, admin_current, enable_lock):
    bhandara = make_bhandara(days_ago=1)

    result = bulk_upload_spendings(mongo_db, [_item("Tent")], str(bhandara["_id"]), admin_current)

    assert result["success"] is False
    assert result["results"]["errors"] == ["Bhandara is locked. Cannot add spending after the event date."]
    assert mongo_db["spendingitem"].count_documents({}) == 0
    assert mongo_db["bhandaraspending"].count_documents({}) == 0


def test_row_sharing_a_number_with_a_bad_row_is_still_written(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    rows = [_donor(" ", amount=10, row=2), _donor("Ram", amount=100, row=2)]

    result = bulk_upload_donations(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert result["results"] == {"success": 1, "failed": 1, "errors": ["Row 2: Donor name is required"]}
    assert mongo_db["donor"].count_documents({}) == 1
    assert [d["amount"] for d in mongo_db["donation"].find({})] == [100]


def test_spending_row_sharing_a_number_with_a_bad_row_is_still_written(mongo_db, make_bhandara,
                                                                       admin_current):
    bhandara = make_bhandara()
    rows = [_item("  ", row=4), _item("Tent", 300, row=4)]

    result = bulk_upload_spendings(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert result["results"]["success"] == 1
    assert result["results"]["errors"] == ["Row 4: Spending item name is required"]
    assert mongo_db["bhandaraspending"].count_documents({"amount": 300}) == 1


def test_spending_upload_flags_in_batch_duplicates(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    rows = [_item("Ghee", 100, row=2), _item("ghee ", 50, row=3), _item("Atta", 200, row=4)]

    result = bulk_upload_spendings(mongo_db, rows, str(bhandara["_id"]), admin_current)

    assert result["success"] is True
    assert result["message"] == ("Processed 3 rows (1 duplicate found), resolved 2 unique spending items, "
                                 "2 bhandara spendings created, 1 error")
    assert result["results"]["errors"] == [
        'Row 3: Spending record already exists for "ghee" in this bhandara'
    ]
    assert mongo_db["spendingitem"].count_documents({}) == 2
    assert mongo_db["bhandaraspending"].count_documents({}) == 2
    notes = sorted(s["note"] for s in mongo_db["bhandaraspending"].find({}))
    assert notes == ["Uploaded from Excel - Row 2", "Uploaded from Excel - Row 4"]


def test_spending_upload_keeps_existing_record(mongo_db, make_bhandara, admin_current):
    bhandara = make_bhandara()
    bhandara_id = str(bhandara["_id"])
    item_id = mongo_db["spendingitem"].insert_one({"name": "Atta"}).inserted_id
    mongo_db["bhandaraspending"].insert_one({
        "spending_item_id": str(item_id), "bhandara_id": bhandara_id, "amount": 500,
        "payment_mode": "cash", "date": bhandara["date"], "admin_id": admin_current["admin_id"],
    })

    result = bulk_upload_spendings(mongo_db, [_item("atta", 10, row=2), _item("Sugar", 80, row=3)],
                                   bhandara_id, admin_current)

    assert result["results"]["errors"] == [
        'Row 2: Spending record already exists for "atta" in this bhandara'
    ]
    assert mongo_db["spendingitem"].count_documents({}) == 2
    atta = mongo_db["bhandaraspending"].find_one({"spending_item_id": str(item_id)})
    assert atta["amount"] == 500
    assert mongo_db["bhandaraspending"].count_documents({}) == 2


def test_spending_upload_in_other_bhandara_is_allowed(mongo_db, make_bhandara, admin_current):
    first = make_bhandara(name="First")
    second = make_bhandara(name="Second")

    bulk_upload_spendings(mongo_db, [_item("Tent")], str(first["_id"]), admin_current)
    result = bulk_upload_spendings(mongo_db, [_item("TENT")], str(second["_id"]), admin_current)

    assert result["results"]["errors"] == []
    assert mongo_db["spendingitem"].count_documents({}) == 1
    assert mongo_db["bhandaraspending"].count_documents({}) == 2


def test_map_write_errors_uses_row_numbers():
    exc = BulkWriteError({
        "writeErrors": [{"index": 1, "code": 11000, "errmsg": "duplicate key"}],
        "nInserted": 2,
    })

    assert map_write_errors(exc, [2, 5, 9], "Failed to create donation") == {5: "Row 5: duplicate key"}


def test_partial_insert_failure_is_reported_per_row(mongo_db, make_bhandara, admin_current, monkeypatch):
    bhandara = make_bhandara()
    def failing_insert(self, documents, ordered=True):
        raise BulkWriteError({"writeErrors": [{"index": 0, "errmsg": "write conflict"}], "nInserted": 1})

    monkeypatch.setattr(type(mongo_db["donation"]), "insert_many", failing_insert)

    result = bulk_upload_donations(mongo_db, [_donor("Ram", row=2), _donor("Mohan", row=3)],
                                   str(bhandara["_id"]), admin_current)

    assert result["success"] is True
    assert result["results"]["errors"] == ["Row 2: write conflict"]
    assert result["message"] == "Processed 2 donors successfully, 1 with donation, 1 failed"
