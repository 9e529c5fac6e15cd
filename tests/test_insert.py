"""
Tests for DataProvider.insert.

Tests cover:
- Returned resource paths
- Default injection reaching the stored row
- Monitor find-or-create and the monitor hash hook
- Form data inserts into the per-form table
- Rejected inserts leave storage untouched
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from rapidstore.errors import InvalidResource, NotFound, StorageError, ValidationError
from rapidstore.models import Field, Message, Monitor, Project


def id_from_uri(uri: str) -> int:
    return int(uri.rsplit("/", 1)[1])


def count_rows(engine, model) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(model.__table__)).scalar()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TestInsertMessage:

    def test_returns_item_path(self, provider, monitor_id):
        uri = provider.insert("message", {"message": "tb 3 kisumu", "monitor_id": monitor_id, "direction": "incoming"})
        assert uri == "message/1"

    def test_default_timestamp_within_call(self, provider, monitor_id):
        before = utcnow()
        uri = provider.insert("message", {"message": "hi", "monitor_id": monitor_id, "direction": "incoming"})
        after = utcnow()

        row = provider.query(uri).first()
        assert before <= row["time"] <= after
        assert row["is_virtual"] is False

    def test_null_time_stored_as_now(self, provider, monitor_id):
        before = utcnow()
        uri = provider.insert("message", {
            "message": "hi", "monitor_id": monitor_id, "direction": "incoming", "time": None,
        })
        row = provider.query(uri).first()
        assert row["time"] is not None
        assert before <= row["time"] <= utcnow()

    def test_missing_direction_writes_nothing(self, provider, engine, monitor_id):
        with pytest.raises(ValidationError) as exc_info:
            provider.insert("message", {"message": "hi", "monitor_id": monitor_id})
        assert exc_info.value.field == "direction"
        assert count_rows(engine, Message) == 0

    def test_unknown_column(self, provider, engine, monitor_id):
        with pytest.raises(ValidationError) as exc_info:
            provider.insert("message", {
                "message": "hi", "monitor_id": monitor_id, "direction": "incoming", "priority": 1,
            })
        assert exc_info.value.field == "priority"
        assert count_rows(engine, Message) == 0

    @pytest.mark.parametrize("path", ["message/1", "messagesbymonitor/1", "form/1", "field/1", "unknown"])
    def test_not_insertable(self, provider, path):
        with pytest.raises(InvalidResource):
            provider.insert(path, {"message": "hi", "monitor_id": 1, "direction": "incoming"})

    def test_insert_notifies_collection(self, provider, notifier, monitor_id):
        changes = []
        notifier.subscribe("message", changes.append)
        provider.insert("message", {"message": "hi", "monitor_id": monitor_id, "direction": "incoming"})
        assert changes == ["message"]


class TestInsertMonitor:

    def test_new_phone_creates_row(self, provider, engine, hash_calls):
        uri = provider.insert("monitor", {"phone": "+15550002"})
        assert uri == "monitor/1"
        assert count_rows(engine, Monitor) == 1
        assert hash_calls == [True]

    def test_same_phone_returns_existing(self, provider, engine, notifier, hash_calls):
        first = provider.insert("monitor", {"phone": "+15550002"})

        changes = []
        notifier.subscribe("monitor", changes.append)
        second = provider.insert("monitor", {"phone": "+15550002", "alias": "other"})

        assert second == first
        assert count_rows(engine, Monitor) == 1
        assert changes == []
        assert hash_calls == [True]

    def test_defaults_stored(self, provider):
        uri = provider.insert("monitor", {"phone": "+15550002"})
        row = provider.query(uri).first()
        assert row["alias"] == "+15550002"
        assert row["email"] == ""
        assert row["first_name"] == ""
        assert row["last_name"] == ""
        assert row["incoming_messages"] == 0

    def test_concurrent_create_resolves_to_winner(self, provider, engine, monkeypatch):
        winner = provider.insert("monitor", {"phone": "+15550003"})

        # Simulate losing the race: the first lookup misses the winner's row
        real_find = provider._find_monitor_id
        lookups = []

        def racing_find(table, phone):
            lookups.append(phone)
            if len(lookups) == 1:
                return None
            return real_find(table, phone)

        monkeypatch.setattr(provider, "_find_monitor_id", racing_find)

        assert provider.insert("monitor", {"phone": "+15550003"}) == winner
        assert len(lookups) == 2
        assert count_rows(engine, Monitor) == 1

    def test_hook_failure_does_not_fail_insert(self, engine, notifier):
        from rapidstore.provider import DataProvider

        def broken_hook():
            raise RuntimeError("hash service down")

        provider = DataProvider(engine=engine, notifier=notifier, monitor_hash_hook=broken_hook)
        assert provider.insert("monitor", {"phone": "+15550004"}) == "monitor/1"


class TestInsertProjectAndSurvey:

    def test_project_scenario(self, provider):
        before = utcnow()
        uri = provider.insert("project", {"name": "Pilot"})
        row = provider.query("project", where="id = :id", params={"id": id_from_uri(uri)}).first()

        assert row["name"] == "Pilot"
        assert row["is_active"] is True
        assert before <= row["time"] <= utcnow()

    def test_project_without_name(self, provider, engine):
        with pytest.raises(ValidationError) as exc_info:
            provider.insert("project", {"is_active": False})
        assert exc_info.value.field == "name"
        assert count_rows(engine, Project) == 0

    def test_survey_insert(self, provider):
        assert provider.insert("survey", {"surveyname": "baseline"}) == "survey/1"
        assert provider.insert("survey", {}) == "survey/2"


class TestInsertFormDefinitions:

    def test_field_round_trip(self, provider):
        provider.insert("fieldtype", {"id": 5, "name": "number", "regex": r"^\d+$", "datatype": "integer"})
        form_id = id_from_uri(provider.insert("form", {
            "formname": "nut", "description": "Nutrition", "parsemethod": "simpleregex", "prefix": "nut",
        }))
        payload = {"form_id": form_id, "name": "weight", "fieldtype_id": 5, "prompt": "Weight?", "sequence": 1}

        uri = provider.insert("field", payload)
        rows = provider.query(uri)

        assert len(rows) == 1
        row = rows.first()
        assert row.pop("id") == id_from_uri(uri)
        assert row == payload

    def test_fieldtype_keeps_caller_id(self, provider):
        assert provider.insert("fieldtype", {"id": 42, "name": "word", "regex": r"\w+", "datatype": "word"}) == "fieldtype/42"

    def test_duplicate_form_prefix(self, provider):
        form = {"formname": "a", "description": "A", "parsemethod": "simpleregex", "prefix": "dup"}
        provider.insert("form", form)
        with pytest.raises(StorageError):
            provider.insert("form", {**form, "formname": "b"})


class TestInsertFormData:

    def test_returns_row_path_under_form(self, provider, survey_form, monitor_id):
        message_id = id_from_uri(provider.insert("message", {
            "message": "tb 3 kisumu", "monitor_id": monitor_id, "direction": "incoming",
        }))
        uri = provider.insert(f"formdata/{survey_form}", {
            "message_id": message_id, "col_cases": 3, "col_village": "kisumu",
        })
        assert uri == f"formdata/{survey_form}/1"

    def test_notifies_form_data_path(self, provider, notifier, survey_form, monitor_id):
        changes = []
        notifier.subscribe(f"formdata/{survey_form}", changes.append)
        message_id = id_from_uri(provider.insert("message", {
            "message": "tb 1 kisumu", "monitor_id": monitor_id, "direction": "incoming",
        }))
        provider.insert(f"formdata/{survey_form}", {"message_id": message_id, "col_cases": 1})
        assert changes == [f"formdata/{survey_form}"]

    def test_unknown_form(self, provider):
        with pytest.raises(NotFound):
            provider.insert("formdata/99", {"message_id": 1})

    def test_unprovisioned_table(self, provider):
        form_id = id_from_uri(provider.insert("form", {
            "formname": "x", "description": "X", "parsemethod": "simpleregex", "prefix": "@x",
        }))
        with pytest.raises(NotFound):
            provider.insert(f"formdata/{form_id}", {"message_id": 1})

    def test_unknown_field_column(self, provider, survey_form):
        with pytest.raises(ValidationError) as exc_info:
            provider.insert(f"formdata/{survey_form}", {"message_id": 1, "col_weight": 3})
        assert exc_info.value.field == "col_weight"

    def test_missing_message_reference(self, provider, survey_form):
        with pytest.raises(ValidationError) as exc_info:
            provider.insert(f"formdata/{survey_form}", {"col_cases": 3})
        assert exc_info.value.field == "message_id"


class TestReferentialIntegrity:
    """Rows must reference existing parents; dangling references write nothing."""

    def test_message_for_unknown_monitor(self, provider, engine):
        with pytest.raises(StorageError):
            provider.insert("message", {"message": "hi", "monitor_id": 12345, "direction": "incoming"})
        assert count_rows(engine, Message) == 0

    def test_field_for_unknown_form(self, provider, engine):
        provider.insert("fieldtype", {"id": 1, "name": "word", "regex": r"\w+", "datatype": "word"})
        with pytest.raises(StorageError):
            provider.insert("field", {"form_id": 999, "name": "x", "fieldtype_id": 1, "prompt": "?", "sequence": 1})
        assert count_rows(engine, Field) == 0

    def test_field_with_unknown_fieldtype(self, provider, engine):
        form_id = id_from_uri(provider.insert("form", {
            "formname": "f", "description": "d", "parsemethod": "simpleregex", "prefix": "f",
        }))
        with pytest.raises(StorageError):
            provider.insert("field", {"form_id": form_id, "name": "x", "fieldtype_id": 77, "prompt": "?", "sequence": 1})
        assert count_rows(engine, Field) == 0

    def test_form_data_for_unknown_message(self, provider, survey_form):
        with pytest.raises(StorageError):
            provider.insert(f"formdata/{survey_form}", {"message_id": 999, "col_cases": 9})
        assert len(provider.query_form_data(survey_form)) == 0

    def test_monitor_with_messages_cannot_be_deleted(self, provider, monitor_id):
        provider.insert("message", {"message": "hi", "monitor_id": monitor_id, "direction": "incoming"})
        with pytest.raises(StorageError):
            provider.delete(f"monitor/{monitor_id}")
        assert provider.query("monitor").column("id") == [monitor_id]
