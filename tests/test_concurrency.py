"""
Concurrent writers on the same record.

A second session plays the competing writer: it commits an update between
the moment our writer reads the record and the moment it writes.
"""

import pytest

from medrecords.errors import ConflictError
from medrecords.services import versioning


@pytest.fixture
def record_at_v3(db, payload, now):
    record = versioning.create_record(db, payload(), "dr-house", "patient-42", now=now)
    versioning.update_record(db, record.id, payload(primary="Dx 2"), "dr-house", now=now)
    versioning.update_record(db, record.id, payload(primary="Dx 3"), "dr-house", now=now)
    return record.id


@pytest.fixture
def interfering_writer(monkeypatch, session_factory, payload, now):
    """Commit a competing update from another session right after each read."""
    original = versioning.get_record
    state = {"remaining": 0, "busy": False}

    def get_record(db, record_id, **kwargs):
        record = original(db, record_id, **kwargs)
        if state["remaining"] and not state["busy"]:
            state["remaining"] -= 1
            state["busy"] = True
            other = session_factory()
            try:
                versioning.update_record(other, record_id, payload(primary="Competing"), "dr-wilson", now=now)
            finally:
                other.close()
                state["busy"] = False
        return record

    monkeypatch.setattr(versioning, "get_record", get_record)
    return state


def test_second_writer_with_same_base_version_conflicts(session_factory, record_at_v3, payload, now):
    first, second = session_factory(), session_factory()
    try:
        assert versioning.get_record(first, record_at_v3).version == 3
        assert versioning.get_record(second, record_at_v3).version == 3

        won = versioning.update_record(
            first, record_at_v3, payload(primary="First"), "dr-house", expected_version=3, now=now
        )
        assert won.version == 4

        with pytest.raises(ConflictError):
            versioning.update_record(
                second, record_at_v3, payload(primary="Second"), "dr-wilson", expected_version=3, now=now
            )

        # retry after a fresh read succeeds
        fresh = versioning.get_record(second, record_at_v3)
        retried = versioning.update_record(
            second,
            record_at_v3,
            payload(primary="Second"),
            "dr-wilson",
            expected_version=fresh.version,
            now=now,
        )
        assert retried.version == 5
        assert [v.version_number for v in versioning.list_versions(second, record_at_v3)] == [1, 2, 3, 4, 5]
    finally:
        first.close()
        second.close()


def test_race_after_read_is_retried_internally(db, record_at_v3, interfering_writer, payload, now):
    interfering_writer["remaining"] = 1

    record = versioning.update_record(db, record_at_v3, payload(primary="Mine"), "dr-house", now=now)

    assert record.version == 5
    assert record.payload["diagnosis"]["primary"] == "Mine"
    history = versioning.list_versions(db, record_at_v3)
    assert [v.version_number for v in history] == [1, 2, 3, 4, 5]
    assert history[3].payload["diagnosis"]["primary"] == "Competing"


def test_race_with_expected_version_is_not_retried(db, record_at_v3, interfering_writer, payload, now):
    interfering_writer["remaining"] = 1

    with pytest.raises(ConflictError):
        versioning.update_record(
            db, record_at_v3, payload(primary="Mine"), "dr-house", expected_version=3, now=now
        )

    assert versioning.get_record(db, record_at_v3).payload["diagnosis"]["primary"] == "Competing"


def test_retries_are_bounded(db, record_at_v3, interfering_writer, payload, now, monkeypatch):
    monkeypatch.setattr(versioning.settings, "VERSION_CONFLICT_RETRIES", 2)
    interfering_writer["remaining"] = 5

    with pytest.raises(ConflictError):
        versioning.update_record(db, record_at_v3, payload(primary="Mine"), "dr-house", now=now)

    assert versioning.get_record(db, record_at_v3).version == 5
