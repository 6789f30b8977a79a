"""Tests for the JSON payload store"""

import sqlite3

import pytest

from payload_store import (
    CorruptedPayloadError,
    PayloadNotFoundError,
    PayloadSerializationError,
    PayloadStore,
)


class TestPayloadStore:
    """Tests for PayloadStore reads and writes"""

    def test_round_trip(self, payload_store):
        record = payload_store.create({"foo": "bar"})
        assert record.id
        assert payload_store.get(record.id) == {"foo": "bar"}

    def test_generated_ids_are_unique(self, payload_store):
        first = payload_store.create([1])
        second = payload_store.create([1])
        assert first.id != second.id

    def test_put_is_upsert(self, payload_store):
        payload_store.put("fixed", {"version": 1})
        payload_store.put("fixed", {"version": 2})
        assert payload_store.get("fixed") == {"version": 2}

    def test_scalar_payloads(self, payload_store):
        payload_store.put("n", None)
        payload_store.put("s", "text")
        assert payload_store.get("n") is None
        assert payload_store.get("s") == "text"

    def test_missing_id_is_not_found(self, payload_store):
        with pytest.raises(PayloadNotFoundError):
            payload_store.get("never-written")

    def test_corrupted_row(self, payload_store):
        with sqlite3.connect(payload_store.db_path) as conn:
            conn.execute(
                "INSERT INTO payloads (namespace, id, data) VALUES (?, ?, ?)",
                (payload_store.namespace, "broken", "{not json"),
            )
        with pytest.raises(CorruptedPayloadError):
            payload_store.get("broken")

    def test_namespaces_are_isolated(self, tmp_path):
        db_path = str(tmp_path / "shared.db")
        first = PayloadStore(db_path, namespace="one")
        second = PayloadStore(db_path, namespace="two")
        first.put("same-id", {"owner": "one"})
        with pytest.raises(PayloadNotFoundError):
            second.get("same-id")

    def test_unserializable_payload(self, payload_store):
        with pytest.raises(PayloadSerializationError):
            payload_store.put("bad", {"value": object()})

    def test_empty_id(self, payload_store):
        with pytest.raises(ValueError):
            payload_store.get("")
