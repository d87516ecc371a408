"""Tests for meeting business rules."""

from datetime import timedelta

import pytest

from meeting_scheduler.memory.schemas import (
    Attendee,
    InvalidTimeRangeError,
    MeetingDraft,
    MeetingDraftUpdate,
    merge_meeting_draft,
)
from meeting_scheduler.rules.business_rules import (
    BOOKING_TOO_FAR_AHEAD,
    BOOKING_TOO_SOON,
    DUPLICATE_ATTENDEES,
    INVALID_MEETING_TYPE,
    INVALID_TIME_RANGE,
    LONG_MEETING,
    MANY_ATTENDEES,
    MEETING_TOO_LONG,
    MEETING_TOO_SHORT,
    ONLINE_MEETING_NO_ATTENDEES,
    OUTSIDE_BUSINESS_HOURS,
    PHYSICAL_MEETING_NO_LOCATION,
    WEEKEND_MEETING,
    enforce_attendee_requirement,
    find_duplicate_emails,
    validate_attendees,
    validate_availability_check,
    validate_calendar_access,
    validate_email_format,
    validate_meeting_creation_requirements,
    validate_meeting_type,
    validate_time_constraints,
    validate_workflow_sequence,
)
from tests.conftest import FIXED_NOW, MEETING_END, MEETING_START


def online_draft(**overrides):
    values = {
        "title": "Planning",
        "type": "online",
        "start_time": MEETING_START,
        "end_time": MEETING_END,
        "attendees": ["jane@example.com"],
    }
    values.update(overrides)
    return MeetingDraft(**values)


class TestMeetingType:
    def test_online_needs_attendee(self):
        result = validate_meeting_type("online", MeetingDraft(type="online"))
        assert result.errors == [ONLINE_MEETING_NO_ATTENDEES]

    def test_physical_needs_location(self):
        assert validate_meeting_type("physical", MeetingDraft(type="physical", location="  ")).errors == [
            PHYSICAL_MEETING_NO_LOCATION
        ]
        assert validate_meeting_type("physical", MeetingDraft(type="physical", location="Room 1")).is_valid

    def test_unknown_type(self):
        assert validate_meeting_type("hybrid", MeetingDraft()).errors == [INVALID_MEETING_TYPE]


class TestTimeConstraints:
    def test_valid_window(self):
        result = validate_time_constraints(MEETING_START, MEETING_END, now=FIXED_NOW)
        assert result.is_valid
        assert result.warnings == []

    def test_end_before_start(self):
        result = validate_time_constraints(MEETING_END, MEETING_START, now=FIXED_NOW)
        assert result.errors == [INVALID_TIME_RANGE]

    def test_duration_bounds(self):
        too_short = validate_time_constraints(MEETING_START, MEETING_START + timedelta(minutes=10), now=FIXED_NOW)
        too_long = validate_time_constraints(MEETING_START, MEETING_START + timedelta(hours=9), now=FIXED_NOW)

        assert MEETING_TOO_SHORT in too_short.errors
        assert MEETING_TOO_LONG in too_long.errors
        assert LONG_MEETING in too_long.warnings

    def test_booking_window(self):
        soon = FIXED_NOW + timedelta(minutes=2)
        far = FIXED_NOW + timedelta(days=400)

        assert BOOKING_TOO_SOON in validate_time_constraints(soon, soon + timedelta(hours=1), now=FIXED_NOW).errors
        assert BOOKING_TOO_FAR_AHEAD in validate_time_constraints(far, far + timedelta(hours=1), now=FIXED_NOW).errors

    def test_past_meeting_is_rejected(self):
        past = FIXED_NOW - timedelta(days=1)
        assert BOOKING_TOO_SOON in validate_time_constraints(past, past + timedelta(hours=1), now=FIXED_NOW).errors

    def test_warnings_do_not_block(self):
        evening = MEETING_START.replace(hour=19)
        saturday = MEETING_START + timedelta(days=4)

        evening_result = validate_time_constraints(evening, evening + timedelta(hours=1), now=FIXED_NOW)
        weekend_result = validate_time_constraints(saturday, saturday + timedelta(hours=1), now=FIXED_NOW)

        assert evening_result.is_valid
        assert evening_result.warnings == [OUTSIDE_BUSINESS_HOURS]
        assert weekend_result.is_valid
        assert weekend_result.warnings == [WEEKEND_MEETING]

    def test_ending_exactly_at_six_is_within_hours(self):
        start = MEETING_START.replace(hour=17)
        result = validate_time_constraints(start, start + timedelta(hours=1), now=FIXED_NOW)
        assert result.warnings == []


class TestAttendees:
    def test_email_format(self):
        assert validate_email_format("jane@example.com") is True
        assert validate_email_format("jane@example") is False
        assert validate_email_format(None) is False

    def test_attendee_requirement_only_for_online(self):
        assert enforce_attendee_requirement("online", []) is False
        assert enforce_attendee_requirement("online", [Attendee(email="jane@example.com")]) is True
        assert enforce_attendee_requirement("physical", []) is True

    def test_duplicates_are_case_insensitive(self):
        assert find_duplicate_emails(["A@x.com", "a@x.com", "b@x.com"]) == ["a@x.com"]

    def test_invalid_and_duplicate_attendees(self):
        result = validate_attendees([
            Attendee(email="jane@example.com"),
            Attendee(email="JANE@example.com"),
            Attendee(email="broken"),
        ])

        assert f"{DUPLICATE_ATTENDEES}: jane@example.com" in result.errors
        assert "Invalid email format: broken" in result.errors

    def test_many_attendees_warns(self):
        attendees = [Attendee(email=f"user{i}@example.com") for i in range(10)]
        result = validate_attendees(attendees)
        assert result.is_valid
        assert result.warnings == [MANY_ATTENDEES]


class TestCreationRequirements:
    def test_complete_online_draft(self):
        assert validate_meeting_creation_requirements(online_draft(), now=FIXED_NOW).is_valid

    def test_empty_draft(self):
        errors = validate_meeting_creation_requirements(MeetingDraft(), now=FIXED_NOW).errors
        assert errors == [
            "Meeting title is required",
            "Meeting start time is required",
            "Meeting end time is required",
            "Meeting type is required",
        ]

    def test_online_without_attendees(self):
        result = validate_meeting_creation_requirements(online_draft(attendees=[]), now=FIXED_NOW)
        assert result.errors == [ONLINE_MEETING_NO_ATTENDEES]


class TestWorkflowSequence:
    def test_all_steps_done(self):
        result = validate_workflow_sequence(True, True, True, "online", True)
        assert result.is_valid
        assert result.warnings == []

    def test_missing_steps(self):
        result = validate_workflow_sequence(False, False, False, "online", False)

        assert "Calendar access must be verified before meeting creation" in result.errors
        assert "Attendee collection must be completed for online meetings" in result.errors
        assert result.warnings == ["Calendar availability was not checked - scheduling conflicts may exist"]

    def test_unresolved_conflicts_warn(self):
        result = validate_workflow_sequence(True, True, True, "online", True, has_conflicts=True)

        assert result.is_valid
        assert "not resolved" in result.warnings[0]
        assert validate_workflow_sequence(
            True, True, True, "online", True, has_conflicts=True, conflicts_resolved=True
        ).warnings == []

    def test_physical_meetings_skip_attendee_collection(self):
        assert validate_workflow_sequence(True, True, True, "physical", False).is_valid


class TestDraftMerge:
    def test_omitted_fields_are_untouched(self):
        draft = online_draft()

        merged, changed = merge_meeting_draft(draft, MeetingDraftUpdate(location="Room 2"))

        assert changed == ["location"]
        assert merged.title == "Planning"
        assert merged.location == "Room 2"

    def test_explicit_none_clears(self):
        merged, changed = merge_meeting_draft(online_draft(location="Room 2"), MeetingDraftUpdate(location=None))

        assert changed == ["location"]
        assert merged.location is None

    def test_clearing_attendees_gives_empty_list(self):
        merged, _ = merge_meeting_draft(online_draft(), MeetingDraftUpdate(attendees=None))
        assert merged.attendees == []

    def test_no_change(self):
        draft = online_draft()
        merged, changed = merge_meeting_draft(draft, MeetingDraftUpdate(title="Planning"))
        assert changed == []
        assert merged is draft

    def test_reversed_window_raises(self):
        draft = online_draft()

        with pytest.raises(InvalidTimeRangeError):
            merge_meeting_draft(draft, MeetingDraftUpdate(end_time=draft.start_time))


class TestCalendarChecks:
    def test_calendar_access(self):
        assert validate_calendar_access(True, False, True).is_valid
        assert validate_calendar_access(False, True, False).errors == [
            "Calendar access is required for meeting creation",
            "Calendar access token needs to be refreshed",
            "Calendar access token is invalid",
        ]

    def test_availability_only_warns(self):
        unchecked = validate_availability_check(False)
        unresolved = validate_availability_check(True, has_conflicts=True)

        assert unchecked.is_valid
        assert len(unchecked.warnings) == 1
        assert unresolved.is_valid
        assert "not resolved" in unresolved.warnings[0]
        assert validate_availability_check(True, has_conflicts=True, conflicts_resolved=True).warnings == []
