"""
Missing Assignments Report Export

Flattens a MissingCheckSummary into one row per missing assignment,
using the column names of the "Missing Assignments" spreadsheet.
"""

import os
import logging
from datetime import datetime

import pandas as pd

from .analyzers import MissingCheckSummary
from .sinks import ResultSink

logger = logging.getLogger(__name__)


REPORT_COLUMNS = [
    'Student Name',
    'Grade',
    'Missing Assignments',
    'Assignment Title',
    'Due Date',
    'Score',
    'Grade Book',
    'submissionLink',
]


def summary_to_dataframe(summary: MissingCheckSummary) -> pd.DataFrame:
    """One row per missing assignment; students with nothing missing are omitted."""
    rows = []
    for report in summary.reports:
        for assignment in report.assignments:
            rows.append({
                'Student Name': report.student_name,
                'Grade': report.current_grade,
                'Missing Assignments': report.count,
                'Assignment Title': assignment.title,
                'Due Date': assignment.due_date,
                'Score': assignment.score,
                'Grade Book': report.gradebook_url,
                'submissionLink': assignment.submission_link,
            })

    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def export_missing_report(summary: MissingCheckSummary, path: str) -> str:
    """Write the flattened report to CSV and return the path."""
    df = summary_to_dataframe(summary)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info(f"Exported {len(df)} missing assignments to {path}")
    return path


class CsvReportSink(ResultSink):
    """Export each missing-mode summary as a timestamped CSV file."""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        self.last_path = None

    def on_missing_check_complete(self, summary):
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.last_path = export_missing_report(
            summary,
            os.path.join(self.output_dir, f"missing_report_{timestamp}.csv")
        )
