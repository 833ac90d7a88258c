from datetime import date, datetime, timedelta, timezone

import pytest

from canvas_looper.analyzers import (
    MissingAssignmentAggregator,
    SubmissionMatcher,
    extract_current_grade,
    format_due_date,
    format_month_day,
    format_time,
    parse_canvas_datetime,
    parse_reference_date,
    summarize_missing_reports,
)

from conftest import make_entry

NOW = datetime(2025, 12, 10, 18, 0, tzinfo=timezone.utc)
YESTERDAY = (NOW - timedelta(days=1)).isoformat()
TOMORROW = (NOW + timedelta(days=1)).isoformat()


def submission(**overrides):
    sub = {
        "user_id": 1,
        "assignment": {"name": "Essay 1"},
        "submitted_at": None,
        "score": None,
        "grade": None,
        "workflow_state": "submitted",
        "cached_due_date": YESTERDAY,
        "missing": False,
    }
    sub.update(overrides)
    return sub


class TestFormatting:

    def test_month_day(self):
        assert format_month_day(date(2025, 12, 10)) == "Dec 10"
        assert format_month_day(date(2025, 1, 1)) == "Jan 1"

    def test_time(self):
        assert format_time(datetime(2025, 12, 10, 14, 32)) == "02:32 PM"
        assert format_time(datetime(2025, 12, 10, 0, 5)) == "12:05 AM"
        assert format_time(datetime(2025, 12, 10, 12, 0)) == "12:00 PM"

    def test_due_date(self):
        assert format_due_date(datetime(2025, 12, 9)) == "12/9/2025"

    def test_parse_canvas_datetime(self):
        assert parse_canvas_datetime("2025-12-10T14:32:00Z") == datetime(2025, 12, 10, 14, 32, tzinfo=timezone.utc)
        assert parse_canvas_datetime("2025-12-10T14:32:00").tzinfo is timezone.utc
        assert parse_canvas_datetime(None) is None
        assert parse_canvas_datetime("yesterday") is None

    def test_parse_reference_date(self):
        assert parse_reference_date("2025-12-01") == date(2025, 12, 1)
        assert parse_reference_date("12/01/2025") is None
        assert parse_reference_date(None) is None


class TestSubmissionMatcher:

    def make(self, **kwargs):
        kwargs.setdefault("reference_date", date(2025, 12, 10))
        return SubmissionMatcher(tz=timezone.utc, **kwargs)

    def test_default_keyword_is_reference_date(self):
        assert self.make().keyword == "Dec 10"

    def test_matches_same_day(self):
        entry = make_entry("Ada", 1, 1)
        found = self.make().match(entry, [submission(submitted_at="2025-12-10T14:32:00Z")])

        assert found is not None
        assert found.name == "Ada"
        assert found.assignment == "Essay 1"
        assert found.time == "02:32 PM"
        assert found.timestamp == "2025-12-10T14:32:00Z"
        assert found.url == entry.gradebook_url

    def test_default_keyword_is_exact(self):
        matcher = self.make(reference_date=date(2025, 12, 1))
        entry = make_entry("Ada", 1, 1)

        assert matcher.match(entry, [submission(submitted_at="2025-12-10T14:32:00Z")]) is None
        assert matcher.match(entry, [submission(submitted_at="2025-12-01T09:00:00Z")]) is not None

    def test_dec_1_does_not_match_dec_10(self):
        entry = make_entry("Ada", 1, 1)
        assert self.make().match(entry, [submission(submitted_at="2025-12-01T14:32:00Z")]) is None

    def test_custom_keyword_is_substring(self):
        matcher = self.make(custom_keyword="Dec 1")
        entry = make_entry("Ada", 1, 1)

        assert matcher.is_custom_keyword
        assert matcher.match(entry, [submission(submitted_at="2025-12-10T14:32:00Z")]) is not None

    def test_first_match_wins(self):
        entry = make_entry("Ada", 1, 1)
        subs = [
            submission(submitted_at=None, assignment={"name": "Unsubmitted"}),
            submission(submitted_at="2025-12-10T08:00:00Z", assignment={"name": "First"}),
            submission(submitted_at="2025-12-10T09:00:00Z", assignment={"name": "Second"}),
        ]

        assert self.make().match(entry, subs).assignment == "First"

    def test_converts_to_local_zone_before_comparing(self):
        eastern = timezone(timedelta(hours=-5))
        matcher = SubmissionMatcher(reference_date=date(2025, 12, 9), tz=eastern)
        entry = make_entry("Ada", 1, 1)

        # 02:00 UTC on the 10th is still the 9th in UTC-5
        assert matcher.match(entry, [submission(submitted_at="2025-12-10T02:00:00Z")]) is not None

    def test_event_dict(self):
        entry = make_entry("Ada", 1, 1)
        entry.sy_student_id = "SY-1"
        event = self.make().match(entry, [submission(submitted_at="2025-12-10T14:32:00Z")])

        assert event.to_dict()["syStudentId"] == "SY-1"
        assert event.to_dict()["url"] == entry.gradebook_url


class TestMissingAggregator:

    def classify(self, **overrides):
        return MissingAssignmentAggregator(reference_time=NOW, tz=timezone.utc).is_missing(submission(**overrides))

    def test_unsubmitted_and_overdue_is_missing(self):
        assert self.classify(workflow_state="unsubmitted", score=None, cached_due_date=YESTERDAY)

    def test_unsubmitted_ungraded_state_counts(self):
        assert self.classify(workflow_state="unsubmitted (ungraded)", cached_due_date=YESTERDAY)

    def test_future_due_date_is_never_missing(self):
        assert not self.classify(workflow_state="unsubmitted", missing=True, score=0, cached_due_date=TOMORROW)

    @pytest.mark.parametrize("field,value", [
        ("score", "complete"),
        ("grade", "Complete"),
        ("grade", "COMPLETE"),
    ])
    def test_complete_is_never_missing(self, field, value):
        assert not self.classify(workflow_state="unsubmitted", missing=True, **{field: value})

    def test_missing_flag(self):
        assert self.classify(missing=True, workflow_state="submitted")

    def test_zero_score_counts_as_missing_even_when_graded(self):
        assert self.classify(score=0, workflow_state="graded", grade="0")

    def test_unsubmitted_without_due_date_is_not_missing(self):
        assert not self.classify(workflow_state="unsubmitted", cached_due_date=None)

    def test_graded_submission_is_not_missing(self):
        assert not self.classify(workflow_state="graded", score=8.5, grade="8.5")

    def test_analyze_builds_report(self):
        entry = make_entry("Ada", 1, 1)
        user = {"id": 1, "enrollments": [{"type": "StudentEnrollment", "grades": {"current_score": 71.2}}]}
        subs = [
            submission(assignment={"name": "Lab 1"}, workflow_state="unsubmitted",
                       cached_due_date="2025-12-09T23:59:00Z", preview_url="https://x/preview"),
            submission(assignment={"name": "Lab 2"}, score=0, grade="0"),
            submission(assignment={"name": "Lab 3"}, workflow_state="graded", score=10, grade="10"),
            submission(assignment=None, missing=True, cached_due_date=None),
        ]

        report = MissingAssignmentAggregator(reference_time=NOW, tz=timezone.utc).analyze(entry, subs, user)

        assert report.student_name == "Ada"
        assert report.current_grade == 71.2
        assert report.count == 3
        lab1, lab2, unknown = report.assignments
        assert lab1.title == "Lab 1"
        assert lab1.due_date == "12/9/2025"
        assert lab1.score == "-"
        assert lab1.submission_link == "https://x/preview"
        assert lab1.link == entry.gradebook_url
        assert lab2.score == "0"
        assert unknown.title == "Unknown Assignment"
        assert unknown.due_date == "No Date"
        assert unknown.submission_link == entry.gradebook_url

    def test_pinned_reference_time(self):
        aggregator = MissingAssignmentAggregator(reference_time=datetime(2025, 12, 1, tzinfo=timezone.utc))
        # due after the pinned date, so not yet missing at that time
        assert not aggregator.is_missing(submission(workflow_state="unsubmitted", cached_due_date=YESTERDAY))


class TestCurrentGrade:

    def test_prefers_current_score(self):
        user = {"enrollments": [{"type": "StudentEnrollment", "grades": {"current_score": 80, "final_score": 60}}]}
        assert extract_current_grade(user) == 80

    def test_falls_back_to_final_score(self):
        user = {"enrollments": [{"type": "StudentEnrollment", "grades": {"current_score": None, "final_score": 0}}]}
        assert extract_current_grade(user) == 0

    def test_strips_percent_from_current_grade(self):
        user = {"enrollments": [{"type": "StudentEnrollment", "grades": {"current_grade": "88.5%"}}]}
        assert extract_current_grade(user) == "88.5"

    def test_prefers_student_enrollment(self):
        user = {"enrollments": [
            {"type": "ObserverEnrollment", "grades": {"current_score": 1}},
            {"type": "StudentEnrollment", "grades": {"current_score": 2}},
        ]}
        assert extract_current_grade(user) == 2

    def test_missing_user_gives_blank(self):
        assert extract_current_grade(None) == ""
        assert extract_current_grade({"enrollments": []}) == ""


class TestSummary:

    def test_empty_summary(self):
        summary = summarize_missing_reports([])
        data = summary.to_dict()

        assert data["totalStudentsInReport"] == 0
        assert data["totalStudentsWithMissing"] == 0
        assert data["type"] == "MISSING_ASSIGNMENTS_REPORT"
        assert "No missing assignments" in data["message"]

    def test_counts_and_elapsed(self):
        aggregator = MissingAssignmentAggregator(reference_time=NOW, tz=timezone.utc)
        reports = [
            aggregator.analyze(make_entry("Ada", 1, 1), [submission(missing=True)]),
            aggregator.analyze(make_entry("Bob", 1, 2), []),
        ]

        summary = summarize_missing_reports(
            reports,
            started_at=NOW,
            finished_at=NOW + timedelta(seconds=3.5),
        )

        assert summary.total_students_in_report == 2
        assert summary.total_students_with_missing == 1
        assert summary.total_completion_time == "3.50 seconds"
        assert summary.message is None
        students = summary.to_dict()["students"]
        assert students[0]["studentName"] == "Ada"
        assert students[0]["totalMissing"] == 1
        assert students[0]["assignments"][0]["assignmentTitle"] == "Essay 1"
