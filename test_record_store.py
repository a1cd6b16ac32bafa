"""Tests for the SQLite record store"""
import pytest

from slabdesk.record_store import open_record_store


def snipe_row(snipe_id="s1", status="pending"):
    return {
        "id": snipe_id,
        "user_id": "user-1",
        "item_id": "1234567890",
        "max_bid": "50",
        "status": status,
        "created_at": "2026-10-19T12:00:00+00:00",
        "updated_at": "2026-10-19T12:00:00+00:00",
    }


def test_upsert_keeps_one_row_per_cert(store):
    store.upsert("card_psa_data", {"cert_number": "1", "grade": "9", "updated_at": "2026-10-18T00:00:00+00:00"})
    store.upsert("card_psa_data", {"cert_number": "1", "grade": "10", "updated_at": "2026-10-19T00:00:00+00:00"})

    rows = store.select("card_psa_data")
    assert len(rows) == 1
    assert rows[0]["grade"] == "10"
    assert rows[0]["psa10_count"] == 0


def test_get_missing_returns_none(store):
    assert store.get("card_psa_data", "nope") is None


def test_composite_key_table(store):
    token = {
        "user_id": "user-1",
        "provider": "ebay",
        "access_token": "abc",
        "expires_at": "2026-10-19T14:00:00+00:00",
        "updated_at": "2026-10-19T12:00:00+00:00",
    }
    store.upsert("user_tokens", token)

    assert store.get("user_tokens", ("user-1", "ebay"))["access_token"] == "abc"
    assert store.get("user_tokens", ("user-1", "other")) is None
    with pytest.raises(ValueError):
        store.get("user_tokens", "user-1")


def test_unknown_table_and_columns_rejected(store):
    with pytest.raises(ValueError):
        store.get("users", "1")
    with pytest.raises(ValueError):
        store.upsert("card_psa_data", {"cert_number": "1", "updated_at": "x", "grade; DROP TABLE": "1"})
    with pytest.raises(ValueError):
        store.select("snipes", order_by="-nonexistent")


def test_conditional_update_is_compare_and_swap(store):
    store.insert("snipes", snipe_row())

    first = store.conditional_update("snipes", "s1", ["pending", "queued"], {"status": "processing"})
    second = store.conditional_update("snipes", "s1", ["pending", "queued"], {"status": "processing"})

    assert first is True
    assert second is False
    assert store.get("snipes", "s1")["status"] == "processing"


def test_conditional_update_missing_row(store):
    assert store.conditional_update("snipes", "missing", ["pending"], {"status": "processing"}) is False


def test_select_filters_and_orders(store):
    store.insert("snipes", snipe_row("a"))
    store.insert("snipes", dict(snipe_row("b", "cancelled"), created_at="2026-10-19T13:00:00+00:00"))
    store.insert("snipes", dict(snipe_row("c"), created_at="2026-10-19T14:00:00+00:00"))

    assert [r["id"] for r in store.select("snipes", order_by="-created_at")] == ["c", "b", "a"]
    assert [r["id"] for r in store.select("snipes", order_by="created_at", status="pending")] == ["a", "c"]


def test_file_store_persists_between_connections(tmp_path):
    path = str(tmp_path / "nested" / "slabdesk.db")
    with open_record_store(path) as store:
        store.insert("snipes", snipe_row())
    with open_record_store(path) as store:
        assert store.get("snipes", "s1")["status"] == "pending"
