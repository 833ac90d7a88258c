#!/usr/bin/env python3
"""
Command-line entry point.

Examples:
    python -m canvas_looper --roster data/roster.json --mode submission --filter ">=5"
    python -m canvas_looper --roster data/roster.json --mode missing --output data/reports
"""

import sys
import logging
import argparse

from . import config
from .auth_coordinator import AuthErrorCoordinator, ConsoleOperator
from .canvas_client import CanvasClient
from .config import JsonSettingsProvider
from .cycle_controller import CycleController
from .report import CsvReportSink
from .roster import JsonRosterStore
from .sinks import CompositeSink, LoggingSink, FoundListSink, JsonReportSink, create_progress_printer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='canvas_looper',
        description='Poll Canvas gradebooks for new submissions or missing assignments.'
    )
    parser.add_argument('--roster', required=True,
                        help='JSON file with masterEntries / foundEntries')
    parser.add_argument('--settings', help='JSON settings file, re-read every cycle')
    parser.add_argument('--mode', choices=list(config.CHECKER_MODES.values()))
    parser.add_argument('--filter', dest='days_out_filter', help="Days-out filter, e.g. '>=5'")
    parser.add_argument('--include-failing', action='store_true', default=None,
                        help='Also check students with a grade below 60')
    parser.add_argument('--concurrency', dest='max_concurrency', type=int,
                        help=f'Concurrent batches (default {config.MAX_CONCURRENT_REQUESTS})')
    parser.add_argument('--date', dest='specific_date', help='Reference date YYYY-MM-DD')
    parser.add_argument('--keyword', dest='custom_keyword', help="Custom date keyword, e.g. 'Dec'")
    parser.add_argument('--output', default=config.DATA_DIR, help='Directory for reports')
    parser.add_argument('--no-prompt', action='store_true',
                        help='Do not prompt on auth errors; use LOOPER_AUTH_DECISION_DEFAULT')
    parser.add_argument('--progress', action='store_true', help='Print a progress line')
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    overrides = {
        'mode': args.mode,
        'days_out_filter': args.days_out_filter,
        'include_failing': args.include_failing,
        'max_concurrency': args.max_concurrency,
        'specific_date': args.specific_date,
        'custom_keyword': args.custom_keyword,
    }
    settings_provider = JsonSettingsProvider(args.settings, overrides)

    store = JsonRosterStore(args.roster)
    sink = CompositeSink(
        LoggingSink(),
        FoundListSink(store),
        JsonReportSink(args.output),
        CsvReportSink(args.output),
    )
    coordinator = AuthErrorCoordinator(operator=None if args.no_prompt else ConsoleOperator())

    controller = CycleController(
        client=CanvasClient(),
        roster_store=store,
        sink=sink,
        settings_provider=settings_provider,
        coordinator=coordinator,
        progress_callback=create_progress_printer() if args.progress else None,
    )

    try:
        controller.run()
    except KeyboardInterrupt:
        print()
        controller.stop()
        logger.info("Interrupted by user")
        return 130

    return 1 if coordinator.is_shutdown else 0


if __name__ == '__main__':
    sys.exit(main())
