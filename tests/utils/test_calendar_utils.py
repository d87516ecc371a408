"""Tests for calendar utility functions."""

from datetime import timedelta

from meeting_scheduler.utils.calendar_utils import (
    extract_attendees,
    find_conflicting_events,
    sort_events_by_date,
    suggest_alternative_slots,
    summarize_event,
)
from tests.conftest import FIXED_NOW, MEETING_END, MEETING_START, build_calendar_event


class TestExtractAttendees:
    """Tests for extract_attendees() function."""

    def test_prefers_display_name_then_email(self):
        event = {"attendees": [{"displayName": "Jane Doe", "email": "jane@example.com"}, {"email": "bob@example.com"}]}
        assert extract_attendees(event) == "Jane Doe, bob@example.com"

    def test_not_specified_when_missing(self):
        assert extract_attendees({}) == "Not specified"
        assert extract_attendees(None) == "Not specified"
        assert extract_attendees({"attendees": [{}]}) == "Not specified"


class TestSortEventsByDate:
    """Tests for sort_events_by_date() function."""

    def test_earliest_first_by_default(self):
        later = build_calendar_event("later", start=MEETING_START + timedelta(hours=2), end=MEETING_END + timedelta(hours=2))
        earlier = build_calendar_event("earlier")

        assert [e["id"] for e in sort_events_by_date([later, earlier])] == ["earlier", "later"]
        assert [e["id"] for e in sort_events_by_date([earlier, later], reverse=True)] == ["later", "earlier"]

    def test_events_without_dates_sort_first(self):
        undated = {"id": "undated"}
        assert sort_events_by_date([build_calendar_event(), undated])[0]["id"] == "undated"

    def test_empty_list(self):
        assert sort_events_by_date([]) == []


class TestFindConflictingEvents:
    """Tests for find_conflicting_events() function."""

    def test_overlapping_event_conflicts(self):
        events = [build_calendar_event(start=MEETING_START + timedelta(minutes=30), end=MEETING_END + timedelta(minutes=30))]
        assert len(find_conflicting_events(events, MEETING_START, MEETING_END)) == 1

    def test_back_to_back_event_does_not_conflict(self):
        events = [build_calendar_event(start=MEETING_END, end=MEETING_END + timedelta(hours=1))]
        assert find_conflicting_events(events, MEETING_START, MEETING_END) == []

    def test_cancelled_and_free_events_ignored(self):
        events = [build_calendar_event(status="cancelled"), build_calendar_event(transparency="transparent")]
        assert find_conflicting_events(events, MEETING_START, MEETING_END) == []


def test_summarize_event():
    summary = summarize_event(build_calendar_event(attendees=[{"email": "jane@example.com"}]))

    assert summary["id"] == "busy-1"
    assert summary["title"] == "Design review"
    assert summary["start_time"] == MEETING_START.isoformat()
    assert summary["attendees"] == "jane@example.com"


class TestSuggestAlternativeSlots:
    """Tests for suggest_alternative_slots function."""

    def test_nearest_free_slots_first(self):
        slots = suggest_alternative_slots([build_calendar_event()], MEETING_START, 60, now=FIXED_NOW)

        assert [slot["start_time"] for slot in slots] == [
            MEETING_START - timedelta(hours=1),
            MEETING_START + timedelta(hours=1),
            MEETING_START - timedelta(minutes=90),
        ]

    def test_slots_stay_inside_business_hours(self):
        late = MEETING_START.replace(hour=17)

        slots = suggest_alternative_slots([], late, 60, now=FIXED_NOW, max_suggestions=20)

        assert slots
        assert all(slot["end_time"] <= late.replace(hour=18) for slot in slots)
        assert all(slot["start_time"].hour >= 13 for slot in slots)

    def test_past_and_weekend_slots_skipped(self):
        saturday = MEETING_START + timedelta(days=4)

        assert suggest_alternative_slots([], saturday, 60, now=FIXED_NOW) == []
        assert suggest_alternative_slots([], MEETING_START, 60, now=MEETING_START + timedelta(hours=5)) == []
