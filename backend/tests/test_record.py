from datetime import datetime, timezone

import pytest

from lovesync.models.record import (
    Record,
    RecordOrigin,
    clean_fields,
    is_remote_identity,
    is_temp_identity,
    new_temp_identity,
)


def test_temp_identities_never_look_remote():
    identity = new_temp_identity()
    assert is_temp_identity(identity)
    assert not is_remote_identity(identity)
    assert new_temp_identity() != identity


def test_remote_identity_format():
    assert is_remote_identity("5f1e2d3c4b5a69788796a5b4")
    assert not is_remote_identity("5f1e2d3c4b5a69788796a5b")
    assert not is_remote_identity("abc123")
    assert not is_remote_identity(None)


def test_clean_fields_strips_envelope_and_bookkeeping():
    fields = {"text": "hi", "objectId": "x", "createdAt": "y", "origin": "synced", "syncFailed": True, "ACL": {}}
    assert clean_fields(fields) == {"text": "hi"}
    assert clean_fields(None) == {}


def test_from_wire():
    record = Record.from_wire({
        "objectId": "5f1e2d3c4b5a69788796a5b4",
        "createdAt": "2024-03-01T10:00:00.000Z",
        "updatedAt": "2024-03-02T10:00:00.000Z",
        "title": "Anniversary",
        "date": {"__type": "Date", "iso": "2020-05-20T00:00:00.000Z"},
    })
    assert record.identity == "5f1e2d3c4b5a69788796a5b4"
    assert record.origin == RecordOrigin.SYNCED
    assert record.created_at == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert record.data["title"] == "Anniversary"


def test_from_wire_without_identity_fails():
    with pytest.raises(ValueError):
        Record.from_wire({"title": "orphan"})


def test_naive_timestamps_are_utc():
    record = Record(identity="temp_1", created_at=datetime(2024, 1, 1, 8, 0))
    assert record.created_at.tzinfo == timezone.utc


def test_confirmed_clears_flags():
    record = Record(identity="temp_1", origin=RecordOrigin.LOCAL_MODIFIED, sync_failed=True)
    confirmed = record.confirmed()
    assert confirmed.origin == RecordOrigin.SYNCED
    assert confirmed.sync_failed is False
    assert record.origin == RecordOrigin.LOCAL_MODIFIED
