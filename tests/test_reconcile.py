from reconcile import (
    DonorReconciler,
    SpendingItemReconciler,
    name_pattern,
    normalize_key,
)
from schemas import DonorRow, SpendingRow


def _donor(first, last=None, row=2, amount=0):
    return DonorRow(first_name=first, last_name=last, amount=amount, row_number=row)


def _item(name, row=2, amount=10):
    return SpendingRow(spending_item=name, amount=amount, row_number=row)


def test_normalize_key_treats_missing_secondary_as_empty():
    assert normalize_key("Ram", None) == normalize_key("Ram", "") == normalize_key(" ram ", "  ")
    assert normalize_key("Ram", "Shah") != normalize_key("Ram")


def test_name_pattern_matches_whitespace_and_case_variants():
    pattern = name_pattern("Ram  Kumar")
    assert pattern.match("ram kumar")
    assert pattern.match("  RAM   KUMAR ")
    assert not pattern.match("ram kumari")


def test_case_and_whitespace_variants_resolve_to_one_donor(mongo_db):
    rows = [_donor(" ram ", row=2), _donor("RAM", "", row=3), _donor("Ram", None, row=4)]

    result = DonorReconciler(mongo_db["donor"]).reconcile(rows)

    assert result.row_errors == {}
    assert result.unique_count == 1
    assert result.duplicate_count == 2
    assert result.created_count == 1
    assert mongo_db["donor"].count_documents({}) == 1
    stored = mongo_db["donor"].find_one({})
    assert stored["donor_name"] == "ram"
    assert "secondary_name" not in stored


def test_secondary_name_separates_donors(mongo_db):
    reconciler = DonorReconciler(mongo_db["donor"])
    rows = [_donor("Ram", "Shah", row=2), _donor("Ram", None, row=3), _donor("Ram", "Verma", row=4)]

    result = reconciler.reconcile(rows)

    assert result.unique_count == 3
    assert mongo_db["donor"].count_documents({}) == 3
    ids = {result.id_for_key(reconciler.key_for_row(row)) for row in rows}
    assert len(ids) == 3


def test_reconcile_is_idempotent(mongo_db):
    rows = [_donor("Sita", "Devi", row=2)]

    first = DonorReconciler(mongo_db["donor"]).reconcile(rows)
    second = DonorReconciler(mongo_db["donor"]).reconcile(rows)

    assert first.created_count == 1
    assert second.created_count == 0
    assert mongo_db["donor"].count_documents({}) == 1
    key = normalize_key("Sita", "Devi")
    assert first.id_for_key(key) == second.id_for_key(key)


def test_existing_donor_with_messy_storage_is_reused(mongo_db):
    existing = mongo_db["donor"].insert_one({"donor_name": "Ram  ", "secondary_name": ""}).inserted_id

    result = DonorReconciler(mongo_db["donor"]).reconcile([_donor("ram")])

    assert result.created_count == 0
    assert result.id_for_key(normalize_key("ram")) == existing
    assert mongo_db["donor"].count_documents({}) == 1


def test_donor_inserted_between_lookup_and_upsert_is_reused(mongo_db, monkeypatch):
    reconciler = DonorReconciler(mongo_db["donor"])
    real_lookup = reconciler._lookup
    calls = []

    def racing_lookup(entities):
        calls.append(len(entities))
        if len(calls) == 1:
            # Another import commits the same donor right after our first lookup
            mongo_db["donor"].insert_one({"donor_name": "Mohan", "secondary_name": "Lal"})
            return {}
        return real_lookup(entities)

    monkeypatch.setattr(reconciler, "_lookup", racing_lookup)

    result = reconciler.reconcile([_donor("Mohan", "Lal")])

    assert calls == [1, 1]
    assert result.row_errors == {}
    assert result.created_count == 0
    assert mongo_db["donor"].count_documents({}) == 1


def test_unresolved_key_becomes_row_error(mongo_db, monkeypatch):
    reconciler = DonorReconciler(mongo_db["donor"])
    monkeypatch.setattr(reconciler, "_upsert", lambda entities: 0)

    result = reconciler.reconcile([_donor("Gopal", row=2), _donor("gopal", row=7)])

    assert result.row_errors == {
        2: "Row 2: Failed to find or create donor",
        7: "Row 7: Failed to find or create donor",
    }


def test_blank_donor_name_is_a_row_error(mongo_db):
    result = DonorReconciler(mongo_db["donor"]).reconcile([_donor("   ", row=5)])

    assert result.row_errors == {5: "Row 5: Donor name is required"}
    assert mongo_db["donor"].count_documents({}) == 0


def test_item_names_with_regex_characters(mongo_db):
    reconciler = SpendingItemReconciler(mongo_db["spendingitem"])
    mongo_db["spendingitem"].insert_one({"name": "axb"})

    first = reconciler.reconcile([_item("Ghee (1kg)", row=2), _item("a.b", row=3)])
    second = reconciler.reconcile([_item("ghee  (1KG)", row=2)])

    assert first.row_errors == {}
    assert first.created_count == 2
    assert second.created_count == 0
    assert mongo_db["spendingitem"].count_documents({}) == 3
    assert mongo_db["spendingitem"].count_documents({"name": "a.b"}) == 1


def test_spending_item_unresolved_message_names_the_item(mongo_db, monkeypatch):
    reconciler = SpendingItemReconciler(mongo_db["spendingitem"])
    monkeypatch.setattr(reconciler, "_upsert", lambda entities: 0)

    result = reconciler.reconcile([_item("Tent", row=4)])

    assert result.row_errors == {4: 'Row 4: Failed to find or create spending item "Tent"'}
