"""
Cycle Policies

The controller runs the same build/dispatch/analyze cycle in both modes;
what differs is isolated here:

- ContinuousPolicy (submission mode) skips already-found students, reports
  each match as it happens and restarts after a short delay, forever.
- OneShotPolicy (missing mode) collects one report per student and emits a
  single summary when the pass finishes, then terminates.

on_empty_roster() and on_cycle_complete() return the delay before the
next cycle, or None to end the run.
"""

import logging
from datetime import datetime, time as dtime, timezone, tzinfo
from typing import Optional, List, Dict, Set

from . import config
from .analyzers import (
    SubmissionMatcher, MissingAssignmentAggregator, MissingAssignmentReport,
    summarize_missing_reports, parse_reference_date
)
from .batch_builder import exclude_found
from .config import LooperSettings
from .roster import StudentEntry
from .sinks import ResultSink

logger = logging.getLogger(__name__)


class CyclePolicy:
    """Mode-specific behaviour plugged into CycleController."""

    mode: Optional[str] = None

    def __init__(
        self,
        sink: ResultSink,
        restart_delay: float = config.CYCLE_RESTART_DELAY,
        idle_delay: float = config.IDLE_POLL_DELAY,
        tz: Optional[tzinfo] = None
    ):
        self.sink = sink
        self.restart_delay = restart_delay
        self.idle_delay = idle_delay
        self.tz = tz

    def begin_run(self):
        pass

    def begin_cycle(self, settings: LooperSettings):
        pass

    def select(self, entries: List[StudentEntry], found_keys: Set[str]) -> List[StudentEntry]:
        return list(entries)

    def handle_student(self, entry: StudentEntry, submissions: List[Dict], user: Optional[Dict]):
        raise NotImplementedError

    def on_empty_roster(self) -> Optional[float]:
        raise NotImplementedError

    def on_cycle_complete(self) -> Optional[float]:
        raise NotImplementedError


class ContinuousPolicy(CyclePolicy):
    """Submission mode: poll forever, reporting new submissions."""

    mode = config.CHECKER_MODES['SUBMISSION']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.matcher: Optional[SubmissionMatcher] = None

    def begin_cycle(self, settings):
        self.matcher = SubmissionMatcher(
            custom_keyword=settings.custom_keyword,
            reference_date=parse_reference_date(settings.specific_date),
            tz=self.tz,
        )
        logger.debug(
            f"Matching submissions against {self.matcher.keyword!r} "
            f"({'substring' if self.matcher.is_custom_keyword else 'exact'})"
        )

    def select(self, entries, found_keys):
        return exclude_found(entries, found_keys)

    def handle_student(self, entry, submissions, user):
        event = self.matcher.match(entry, submissions)
        if event is not None:
            self.sink.on_submission_found(event)

    def on_empty_roster(self):
        logger.info(f"No students to check. Waiting {self.idle_delay}s...")
        return self.idle_delay

    def on_cycle_complete(self):
        logger.info(f"Cycle complete. Restarting in {self.restart_delay}s...")
        return self.restart_delay


class OneShotPolicy(CyclePolicy):
    """Missing mode: one pass, one summary."""

    mode = config.CHECKER_MODES['MISSING']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.aggregator: Optional[MissingAssignmentAggregator] = None
        self.started_at: Optional[datetime] = None
        self._reports: List[MissingAssignmentReport] = []

    def begin_run(self):
        self.started_at = datetime.now(timezone.utc)
        self._reports = []

    def begin_cycle(self, settings):
        # a retried pass starts over
        self._reports = []
        reference_time = None
        pinned = parse_reference_date(settings.specific_date)
        if pinned is not None:
            reference_time = datetime.combine(pinned, dtime.min)
            logger.info(f"Missing check pinned to {pinned.isoformat()}")
        self.aggregator = MissingAssignmentAggregator(reference_time=reference_time, tz=self.tz)

    def handle_student(self, entry, submissions, user):
        report = self.aggregator.analyze(entry, submissions, user)
        self._reports.append(report)
        self.sink.on_student_report(report)

    def on_empty_roster(self):
        logger.warning("No students to check (missing mode). Stopping.")
        self._finish()
        return None

    def on_cycle_complete(self):
        logger.info("Missing assignments check completed.")
        self._finish()
        return None

    def _finish(self):
        summary = summarize_missing_reports(self._reports, started_at=self.started_at)
        self._reports = []
        try:
            self.sink.on_missing_check_complete(summary)
        except Exception:
            logger.exception("Failed to deliver the missing assignments report")


def make_policy(settings: LooperSettings, sink: ResultSink, **kwargs) -> CyclePolicy:
    """Pick the policy for the configured mode."""
    if settings.mode == config.CHECKER_MODES['MISSING']:
        return OneShotPolicy(sink, **kwargs)
    return ContinuousPolicy(sink, **kwargs)
