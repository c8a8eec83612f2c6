from __future__ import annotations

from datetime import datetime, timezone

import pytest

from hopkins.errors import ScheduleError
from hopkins.schedule import OccurrenceSet, compute_occurrence_set

UTC = timezone.utc


def test_absent_schedule_is_no_schedule() -> None:
    assert compute_occurrence_set(None) is None


def test_schedule_without_cron_never_fires() -> None:
    occurrences = compute_occurrence_set({})
    assert occurrences is not None
    assert occurrences.is_empty
    assert occurrences.next_after(datetime(2026, 1, 1, tzinfo=UTC)) is None


def test_union_next_occurrence_is_earliest_of_members() -> None:
    after = datetime(2026, 1, 1, 0, 0, tzinfo=UTC)
    first = OccurrenceSet(["0 6 * * *"])
    second = OccurrenceSet(["30 5 * * *"])
    merged = compute_occurrence_set({"cron": ["0 6 * * *", "30 5 * * *"]})

    assert merged is not None
    expected = min(first.next_after(after), second.next_after(after))
    assert merged.next_after(after) == expected == datetime(2026, 1, 1, 5, 30, tzinfo=UTC)
    assert merged.next_after(expected) == datetime(2026, 1, 1, 6, 0, tzinfo=UTC)


def test_next_after_is_strictly_after() -> None:
    occurrences = OccurrenceSet(["0 6 * * *"])
    at = datetime(2026, 2, 23, 6, 0, tzinfo=UTC)
    assert occurrences.next_after(at) == datetime(2026, 2, 24, 6, 0, tzinfo=UTC)

    later = datetime(2026, 2, 23, 6, 0, 30, tzinfo=UTC)
    nxt = occurrences.next_after(later)
    assert nxt is not None
    assert nxt > later


def test_membership() -> None:
    occurrences = compute_occurrence_set({"cron": ["0 6 * * *", "15 * * * 1"]})
    assert occurrences is not None
    assert datetime(2026, 3, 4, 6, 0, tzinfo=UTC) in occurrences
    assert datetime(2026, 3, 4, 6, 1, tzinfo=UTC) not in occurrences
    # 2026-03-02 is a Monday
    assert occurrences.contains(datetime(2026, 3, 2, 13, 15, tzinfo=UTC))
    assert not occurrences.contains(datetime(2026, 3, 3, 13, 15, tzinfo=UTC))
    assert occurrences.is_due(datetime(2026, 3, 4, 6, 0, 42, tzinfo=UTC))


def test_naive_datetimes_are_utc() -> None:
    occurrences = OccurrenceSet(["0 6 * * *"])
    assert occurrences.next_after(datetime(2026, 1, 1)) == datetime(2026, 1, 1, 6, 0, tzinfo=UTC)


def test_single_string_cron_accepted() -> None:
    occurrences = compute_occurrence_set({"cron": "*/15 * * * *"})
    assert occurrences is not None
    assert occurrences.expressions == ("*/15 * * * *",)


def test_bad_expression_fails_whole_schedule() -> None:
    with pytest.raises(ScheduleError, match="not a cron"):
        compute_occurrence_set({"cron": ["0 6 * * *", "not a cron"]})


def test_cron_must_be_string_or_list() -> None:
    with pytest.raises(ScheduleError, match="string or a list"):
        compute_occurrence_set({"cron": 5})


def test_timezone_applies_to_cron_fields() -> None:
    occurrences = compute_occurrence_set({"cron": ["0 9 * * *"], "timezone": "America/New_York"})
    assert occurrences is not None
    nxt = occurrences.next_after(datetime(2026, 1, 10, 0, 0, tzinfo=UTC))
    assert nxt == datetime(2026, 1, 10, 14, 0, tzinfo=UTC)


def test_unknown_timezone_rejected() -> None:
    with pytest.raises(ScheduleError, match="invalid timezone"):
        compute_occurrence_set({"cron": ["0 9 * * *"], "timezone": "America/NotAZone"})


def test_next_occurrences_preview() -> None:
    occurrences = OccurrenceSet(["0 */6 * * *"])
    runs = occurrences.next_occurrences(3, after=datetime(2026, 1, 1, 1, 0, tzinfo=UTC))
    assert runs == [
        datetime(2026, 1, 1, 6, 0, tzinfo=UTC),
        datetime(2026, 1, 1, 12, 0, tzinfo=UTC),
        datetime(2026, 1, 1, 18, 0, tzinfo=UTC),
    ]


def test_union_deduplicates_and_compares_as_set() -> None:
    merged = OccurrenceSet(["0 6 * * *"]).union(OccurrenceSet(["0 6 * * *", "0 7 * * *"]))
    assert merged.expressions == ("0 6 * * *", "0 7 * * *")
    assert merged == OccurrenceSet(["0 7 * * *", "0 6 * * *"])
