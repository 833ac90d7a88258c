"""
Result Sinks and Progress Reporting

The cycle controller writes results to a ResultSink and progress
snapshots to a progress callback. Sinks decouple the polling core from
whatever consumes results (terminal, found list, report files).
"""

import os
import json
import logging
from datetime import datetime
from typing import Optional, List, Callable

from .analyzers import SubmissionFound, MissingAssignmentReport, MissingCheckSummary
from .roster import RosterStore

logger = logging.getLogger(__name__)


class ResultSink:
    """Observer interface for loop results. All hooks default to no-ops."""

    def on_submission_found(self, event: SubmissionFound):
        pass

    def on_student_report(self, report: MissingAssignmentReport):
        pass

    def on_missing_check_complete(self, summary: MissingCheckSummary):
        pass

    def on_students_skipped(self, skipped: List):
        pass


class CompositeSink(ResultSink):
    """Fan results out to several sinks in order."""

    def __init__(self, *sinks: ResultSink):
        self.sinks = list(sinks)

    def on_submission_found(self, event):
        for sink in self.sinks:
            sink.on_submission_found(event)

    def on_student_report(self, report):
        for sink in self.sinks:
            sink.on_student_report(report)

    def on_missing_check_complete(self, summary):
        for sink in self.sinks:
            sink.on_missing_check_complete(summary)

    def on_students_skipped(self, skipped):
        for sink in self.sinks:
            sink.on_students_skipped(skipped)


class LoggingSink(ResultSink):
    """Log every result."""

    def on_submission_found(self, event):
        logger.info(f"SUBMISSION: {event.name} - {event.assignment} at {event.time} ({event.url})")

    def on_student_report(self, report):
        if report.count > 0:
            logger.warning(f"Missing Found: {report.student_name} ({report.count})")
        else:
            logger.info(f"Clean: {report.student_name}")

    def on_missing_check_complete(self, summary):
        logger.info(
            f"Missing check complete: {summary.total_students_with_missing}/"
            f"{summary.total_students_in_report} students with missing work "
            f"({summary.total_completion_time or 'n/a'})"
        )


class FoundListSink(ResultSink):
    """Append found students to the roster store so later cycles skip them."""

    def __init__(self, store: RosterStore):
        self.store = store

    def on_submission_found(self, event):
        self.store.add_found(event.to_dict())


class JsonReportSink(ResultSink):
    """Write each missing-mode summary to a timestamped JSON file."""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        self.last_path: Optional[str] = None

    def on_missing_check_complete(self, summary):
        os.makedirs(self.output_dir, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        filepath = os.path.join(self.output_dir, f"missing_report_{timestamp}.json")

        with open(filepath, 'w') as f:
            json.dump(summary.to_dict(), f, indent=2, default=str)

        self.last_path = filepath
        logger.info(f"Missing assignments report saved to {filepath}")


def create_progress_printer() -> Callable:
    """Create a simple progress printer callback."""
    def print_progress(progress):
        pct = (progress.processed / progress.total * 100) if progress.total > 0 else 0
        print(
            f"\rCycle {progress.cycle}: {progress.processed}/{progress.total} ({pct:.1f}%) | "
            f"batches={progress.batches_done}/{progress.batches_total} | "
            f"errors={progress.errors} skipped={progress.skipped}",
            end='', flush=True
        )
    return print_progress
