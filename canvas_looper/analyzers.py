"""
Mode Analyzers

Stateless classifiers applied to one student's Canvas data at a time:

- SubmissionMatcher: did the student submit anything on the target day?
- MissingAssignmentAggregator: which past-due assignments are missing?

Plus the end-of-run summary for missing mode.

Usage:
    from canvas_looper.analyzers import SubmissionMatcher

    matcher = SubmissionMatcher()               # today, exact "Dec 10" match
    found = matcher.match(entry, submissions)   # SubmissionFound or None
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, date, timezone, tzinfo
from typing import Optional, Dict, List, Any, Tuple, Iterable

from .roster import StudentEntry

logger = logging.getLogger(__name__)


MONTH_ABBREVIATIONS = [
    'Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
    'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec',
]

UNSUBMITTED_STATES = ('unsubmitted', 'unsubmitted (ungraded)')
REPORT_TYPE = 'MISSING_ASSIGNMENTS_REPORT'


# =============================================================================
# Date helpers
# =============================================================================

def parse_canvas_datetime(value: Any) -> Optional[datetime]:
    """Parse a Canvas ISO-8601 timestamp into an aware datetime (UTC if naive)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparsable Canvas timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_month_day(value) -> str:
    """'Dec 10' style label, independent of the process locale."""
    return f"{MONTH_ABBREVIATIONS[value.month - 1]} {value.day}"


def format_time(value: datetime) -> str:
    """'02:32 PM' style label."""
    hour = value.hour % 12 or 12
    suffix = 'AM' if value.hour < 12 else 'PM'
    return f"{hour:02d}:{value.minute:02d} {suffix}"


def format_due_date(value: datetime) -> str:
    """'12/9/2025' style label."""
    return f"{value.month}/{value.day}/{value.year}"


def parse_reference_date(value: Optional[str]) -> Optional[date]:
    """Parse a YYYY-MM-DD setting; None or garbage yields None."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), '%Y-%m-%d').date()
    except ValueError:
        logger.warning(f"Ignoring invalid reference date: {value!r}")
        return None


# =============================================================================
# Submission mode
# =============================================================================

@dataclass(frozen=True)
class SubmissionFound:
    """A student who submitted work matching the keyword."""
    name: str
    url: Optional[str]
    assignment: str
    timestamp: str
    time: str
    sortable_name: Optional[str] = None
    sy_student_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'sortable_name': self.sortable_name,
            'time': self.time,
            'url': self.url,
            'timestamp': self.timestamp,
            'assignment': self.assignment,
            'syStudentId': self.sy_student_id,
        }


class SubmissionMatcher:
    """
    Match submission dates against a keyword.

    Without a custom keyword the keyword is the reference date (default
    today) formatted as "Dec 10" and matching is exact, so "Dec 1" never
    matches "Dec 10". A custom keyword (e.g. "Dec") matches as a substring.
    """

    def __init__(
        self,
        custom_keyword: Optional[str] = None,
        reference_date: Optional[date] = None,
        tz: Optional[tzinfo] = None
    ):
        self.tz = tz
        self.is_custom_keyword = bool(custom_keyword)
        if self.is_custom_keyword:
            self.keyword = custom_keyword
        else:
            self.keyword = format_month_day(reference_date or datetime.now(tz).date())

    def matches(self, submitted_at: datetime) -> bool:
        label = format_month_day(submitted_at.astimezone(self.tz))
        if self.is_custom_keyword:
            return self.keyword in label
        return label == self.keyword

    def match(self, entry: StudentEntry, submissions: Iterable[Dict]) -> Optional[SubmissionFound]:
        """Return the first matching submission for the student, if any."""
        for sub in submissions:
            submitted = parse_canvas_datetime(sub.get('submitted_at'))
            if submitted is None:
                continue

            assignment = (sub.get('assignment') or {}).get('name') or 'Unknown Assignment'
            if not self.matches(submitted):
                continue

            local = submitted.astimezone(self.tz)
            logger.info(f"Found submission: {entry.name} - {assignment}")
            return SubmissionFound(
                name=entry.name,
                sortable_name=entry.sortable_name,
                url=entry.gradebook_url,
                assignment=assignment,
                timestamp=sub.get('submitted_at'),
                time=format_time(local),
                sy_student_id=entry.sy_student_id,
            )

        return None


# =============================================================================
# Missing mode
# =============================================================================

@dataclass(frozen=True)
class MissingAssignment:
    title: str
    link: Optional[str]
    submission_link: Optional[str]
    due_date: str
    score: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            'assignmentTitle': self.title,
            'assignmentLink': self.link or '',
            'submissionLink': self.submission_link or '',
            'dueDate': self.due_date,
            'score': self.score,
        }


@dataclass(frozen=True)
class MissingAssignmentReport:
    """One student's missing work for a run. Rebuilt every run, never edited."""
    student_name: str
    gradebook_url: Optional[str]
    current_grade: Any
    assignments: Tuple[MissingAssignment, ...] = ()

    @property
    def count(self) -> int:
        return len(self.assignments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'studentName': self.student_name,
            'studentGrade': self.current_grade,
            'totalMissing': self.count,
            'gradeBook': self.gradebook_url,
            'gradeBookLink': self.gradebook_url,
            'assignments': [a.to_dict() for a in self.assignments],
        }


def extract_current_grade(user: Optional[Dict]) -> Any:
    """
    Current grade snapshot from a user's enrollments.

    Uses the StudentEnrollment (else the first enrollment) and prefers
    current_score, then final_score, then current_grade without '%'.
    """
    if not user or not user.get('enrollments'):
        return ''

    enrollments = user['enrollments']
    enrollment = next(
        (e for e in enrollments if e.get('type') == 'StudentEnrollment'),
        enrollments[0]
    )
    grades = (enrollment or {}).get('grades') or {}

    if grades.get('current_score') is not None:
        return grades['current_score']
    if grades.get('final_score') is not None:
        return grades['final_score']
    if grades.get('current_grade') is not None:
        return str(grades['current_grade']).replace('%', '')
    return ''


def _is_zero_score(score: Any) -> bool:
    return isinstance(score, (int, float)) and not isinstance(score, bool) and score == 0


class MissingAssignmentAggregator:
    """
    Classify past-due assignments as missing.

    A submission is ignored when it is due after the reference time or its
    score/grade reads "complete" in any casing. It is missing when Canvas
    flags it missing, when it is unsubmitted and past due, or when its
    score is exactly zero (a graded zero counts as missing).
    """

    def __init__(self, reference_time: Optional[datetime] = None, tz: Optional[tzinfo] = None):
        self.tz = tz
        now = reference_time or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=tz) if tz else now.astimezone()
        self.reference_time = now

    def is_missing(self, sub: Dict) -> bool:
        due = parse_canvas_datetime(sub.get('cached_due_date'))
        if due and due > self.reference_time:
            return False

        score_text = str(sub.get('score') or sub.get('grade') or '').lower()
        if score_text == 'complete':
            return False

        return (
            sub.get('missing') is True
            or (sub.get('workflow_state') in UNSUBMITTED_STATES and due is not None and due < self.reference_time)
            or _is_zero_score(sub.get('score'))
        )

    def analyze(
        self,
        entry: StudentEntry,
        submissions: Iterable[Dict],
        user: Optional[Dict] = None
    ) -> MissingAssignmentReport:
        gradebook_url = entry.gradebook_url
        collected: List[MissingAssignment] = []

        for sub in submissions:
            if not self.is_missing(sub):
                continue

            due = parse_canvas_datetime(sub.get('cached_due_date'))
            score = sub.get('score')
            collected.append(MissingAssignment(
                title=(sub.get('assignment') or {}).get('name') or 'Unknown Assignment',
                link=gradebook_url,
                submission_link=sub.get('preview_url') or gradebook_url,
                due_date=format_due_date(due.astimezone(self.tz)) if due else 'No Date',
                score=sub.get('grade') or (score if score is not None else '-'),
            ))

        current_grade = extract_current_grade(user)
        if collected:
            logger.debug(f"{entry.name}: Grade={current_grade} | Found {len(collected)} missing")

        return MissingAssignmentReport(
            student_name=entry.name,
            gradebook_url=gradebook_url,
            current_grade=current_grade,
            assignments=tuple(collected),
        )


@dataclass
class MissingCheckSummary:
    """Aggregate result of one missing-mode run."""
    report_generated: str
    total_students_in_report: int = 0
    total_students_with_missing: int = 0
    total_completion_time: Optional[str] = None
    reports: List[MissingAssignmentReport] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'reportGenerated': self.report_generated,
            'totalStudentsInReport': self.total_students_in_report,
            'totalStudentsWithMissing': self.total_students_with_missing,
            'totalCompletionTime': self.total_completion_time,
            'type': REPORT_TYPE,
            'students': [r.to_dict() for r in self.reports],
        }
        if self.message:
            data['message'] = self.message
        return data


def summarize_missing_reports(
    reports: Iterable[MissingAssignmentReport],
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None
) -> MissingCheckSummary:
    """Fold per-student reports into the end-of-run summary."""
    reports = list(reports)
    finished_at = finished_at or datetime.now(timezone.utc)

    elapsed = None
    if started_at is not None:
        elapsed = f"{(finished_at - started_at).total_seconds():.2f} seconds"

    with_missing = sum(1 for r in reports if r.count > 0)
    message = None
    if with_missing == 0:
        message = "Missing Assignments Check Complete: No missing assignments were found."

    return MissingCheckSummary(
        report_generated=finished_at.isoformat(),
        total_students_in_report=len(reports),
        total_students_with_missing=with_missing,
        total_completion_time=elapsed,
        reports=reports,
        message=message,
    )
