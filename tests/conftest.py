import json
import threading
import time

import pytest

from canvas_looper.canvas_client import PageResult
from canvas_looper.config import LooperSettings
from canvas_looper.roster import StudentEntry

ORIGIN = "https://northbridge.instructure.com"


class FakeResponse:
    """Just enough of requests.Response for the client."""

    def __init__(self, status_code=200, body=None, headers=None, text=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        if text is not None:
            self.text = text
        else:
            self.text = json.dumps(body) if body is not None else ""

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


def next_link(url):
    return {"Link": f'<{url}>; rel="next", <{ORIGIN}/first>; rel="first"'}


def gradebook_url(course_id, student_id, origin=ORIGIN):
    return f"{origin}/courses/{course_id}/grades/{student_id}"


def make_entry(name, course_id, student_id, days_out=None, grade=None):
    return StudentEntry(
        name=name,
        url=gradebook_url(course_id, student_id),
        days_out=days_out,
        grade=grade,
    )


class FakeCanvasClient:
    """
    Stands in for CanvasClient in controller tests.

    ``submissions`` / ``users`` map course id -> list of records. Tracks how
    many fetch_paged calls are running at once.
    """

    def __init__(self, submissions=None, users=None, delay=0.0, auth_fail_courses=(), fail_courses=()):
        self.submissions = submissions or {}
        self.users = users or {}
        self.delay = delay
        self.auth_fail_courses = set(auth_fail_courses)
        self.fail_courses = set(fail_courses)
        self.calls = []
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    @staticmethod
    def submissions_request(batch):
        return ("submissions", batch.course_id), list(batch.student_ids)

    @staticmethod
    def users_request(batch):
        return ("users", batch.course_id), list(batch.student_ids)

    def fetch_paged(self, url, params=None, items=None):
        from canvas_looper.canvas_client import APIError

        kind, course_id = url
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if course_id in self.auth_fail_courses:
                return PageResult(auth_failed=True)
            if (kind, course_id) in self.fail_courses or course_id in self.fail_courses:
                raise APIError(f"HTTP 500: {url}")
            source = self.submissions if kind == "submissions" else self.users
            wanted = {str(p) for p in params or []}
            key = "user_id" if kind == "submissions" else "id"
            records = [r for r in source.get(course_id, []) if str(r.get(key)) in wanted]
            return PageResult(items=records, pages=1)
        finally:
            with self._lock:
                self.in_flight -= 1

    def log_quota(self):
        pass


class RecordingSink:
    def __init__(self):
        self.found = []
        self.reports = []
        self.summaries = []
        self.skipped = []

    def on_submission_found(self, event):
        self.found.append(event)

    def on_student_report(self, report):
        self.reports.append(report)

    def on_missing_check_complete(self, summary):
        self.summaries.append(summary)

    def on_students_skipped(self, skipped):
        self.skipped.append(list(skipped))


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def missing_settings():
    return LooperSettings(mode="missing", max_concurrency=3)


@pytest.fixture
def submission_settings():
    return LooperSettings(mode="submission", max_concurrency=3)
