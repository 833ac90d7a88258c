"""
Canvas Looper

Polls Canvas gradebooks for a roster of students. It includes:

- url_parser: Gradebook URL parsing and legacy subdomain rewriting
- batch_builder: Roster filtering and per-course batching
- canvas_client: Partial-failure tolerant paginated fetching
- auth_coordinator: Operator handshake for authorization errors
- analyzers: Submission matching and missing-assignment classification
- cycle_controller: Bounded worker pool and cycle loop

Usage:
    from canvas_looper import CanvasClient, CycleController, InMemoryRosterStore

    controller = CycleController(CanvasClient(), InMemoryRosterStore(entries), sink)
    controller.run()
"""

from .canvas_client import CanvasClient, APIError, PageResult, get_next_page_url, is_auth_error
from .url_parser import GradebookReference, normalize_canvas_url, parse_gradebook_url
from .roster import StudentEntry, RosterStore, InMemoryRosterStore, JsonRosterStore
from .batch_builder import (
    Batch,
    DaysOutFilter,
    SkippedStudent,
    parse_days_out_filter,
    filter_roster,
    exclude_found,
    prepare_batches,
)
from .auth_coordinator import (
    AuthErrorCoordinator,
    AuthDecision,
    AuthState,
    OperatorInterface,
    ConsoleOperator,
)
from .analyzers import (
    SubmissionMatcher,
    SubmissionFound,
    MissingAssignmentAggregator,
    MissingAssignment,
    MissingAssignmentReport,
    MissingCheckSummary,
    summarize_missing_reports,
)
from .config import LooperSettings, JsonSettingsProvider
from .policies import CyclePolicy, ContinuousPolicy, OneShotPolicy, make_policy
from .cycle_controller import CycleController, CycleProgress
from .sinks import (
    ResultSink,
    CompositeSink,
    LoggingSink,
    FoundListSink,
    JsonReportSink,
    create_progress_printer,
)
from .report import summary_to_dataframe, export_missing_report, CsvReportSink

__all__ = [
    # Client
    'CanvasClient',
    'APIError',
    'PageResult',
    'get_next_page_url',
    'is_auth_error',

    # Parsing and batching
    'GradebookReference',
    'normalize_canvas_url',
    'parse_gradebook_url',
    'StudentEntry',
    'RosterStore',
    'InMemoryRosterStore',
    'JsonRosterStore',
    'Batch',
    'DaysOutFilter',
    'SkippedStudent',
    'parse_days_out_filter',
    'filter_roster',
    'exclude_found',
    'prepare_batches',

    # Auth handshake
    'AuthErrorCoordinator',
    'AuthDecision',
    'AuthState',
    'OperatorInterface',
    'ConsoleOperator',

    # Analyzers
    'SubmissionMatcher',
    'SubmissionFound',
    'MissingAssignmentAggregator',
    'MissingAssignment',
    'MissingAssignmentReport',
    'MissingCheckSummary',
    'summarize_missing_reports',

    # Loop
    'LooperSettings',
    'JsonSettingsProvider',
    'CyclePolicy',
    'ContinuousPolicy',
    'OneShotPolicy',
    'make_policy',
    'CycleController',
    'CycleProgress',

    # Output
    'ResultSink',
    'CompositeSink',
    'LoggingSink',
    'FoundListSink',
    'JsonReportSink',
    'create_progress_printer',
    'summary_to_dataframe',
    'export_missing_report',
    'CsvReportSink',
]

__version__ = '1.0.0'
