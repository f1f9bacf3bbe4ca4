from datetime import datetime, timedelta, timezone

from roster_sync.models.roster import Student
from roster_sync.services.change_detection import ChangeDetector, normalize_value

FIELDS = ("first_name", "last_name", "email", "grade")


def test_normalize_value_treats_blank_strings_as_missing() -> None:
    assert normalize_value(None) is None
    assert normalize_value("") is None
    assert normalize_value("   ") is None
    assert normalize_value(" Ada ") == " Ada "


def test_normalize_value_converts_aware_datetimes_to_naive_utc() -> None:
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    assert normalize_value(aware) == datetime(2024, 1, 1, 10, 0)


def test_identical_values_are_unchanged() -> None:
    detector = ChangeDetector()
    existing = Student(source_id="s1", first_name="Ada", last_name="Lovelace", email=None, grade="5")

    incoming = {"first_name": "Ada", "last_name": "Lovelace", "email": "", "grade": "5"}

    assert detector.is_changed(existing, incoming, FIELDS) is False
    assert detector.changed_fields(existing, incoming, FIELDS) == []


def test_null_versus_empty_is_unchanged_but_null_versus_value_is_changed() -> None:
    detector = ChangeDetector()

    assert detector.values_differ(None, "") is False
    assert detector.values_differ("", None) is False
    assert detector.values_differ(None, "x") is True
    assert detector.values_differ("x", None) is True


def test_changed_fields_reports_old_and_new_values() -> None:
    detector = ChangeDetector()
    existing = {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", "grade": "5"}
    incoming = {"first_name": "Ada", "last_name": "King", "email": "ada@example.com", "grade": "6"}

    changes = detector.changed_fields(existing, incoming, FIELDS)

    assert [(change.field, change.old, change.new) for change in changes] == [
        ("last_name", "Lovelace", "King"),
        ("grade", "5", "6"),
    ]
    assert detector.is_changed(existing, incoming, FIELDS) is True


def test_only_listed_fields_are_compared() -> None:
    detector = ChangeDetector()
    existing = {"first_name": "Ada", "title": "Dr"}
    incoming = {"first_name": "Ada", "title": "Prof"}

    assert detector.is_changed(existing, incoming, ("first_name",)) is False
