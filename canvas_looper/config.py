"""
Canvas Looper Configuration

Values are loaded from the environment (and a local .env file). Copy
.env.example to .env to override the defaults.
"""
import os
import json
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


# Canvas connection. The token is optional: an already authenticated
# requests.Session can be handed to CanvasClient instead.
API_TOKEN = os.getenv('CANVAS_API_TOKEN')

# Subdomain rewriting for schools that rebranded their Canvas instance
CANVAS_SUBDOMAIN = os.getenv('CANVAS_SUBDOMAIN', 'northbridge')
LEGACY_CANVAS_SUBDOMAINS = [
    s.strip() for s in os.getenv('LEGACY_CANVAS_SUBDOMAINS', 'nuc').split(',') if s.strip()
]

# Looper / batch processing
BATCH_SIZE = _env_int('LOOPER_BATCH_SIZE', 30)
MAX_CONCURRENT_REQUESTS = _env_int('LOOPER_MAX_CONCURRENT_REQUESTS', 5)
REQUEST_TIMEOUT = _env_float('LOOPER_REQUEST_TIMEOUT', 30.0)   # seconds, per HTTP call
MAX_RETRIES = _env_int('LOOPER_MAX_RETRIES', 3)
RETRY_DELAY = _env_float('LOOPER_RETRY_DELAY', 1.0)
MAX_PAGES = _env_int('LOOPER_MAX_PAGES', 100)
CYCLE_RESTART_DELAY = _env_float('LOOPER_CYCLE_RESTART_DELAY', 2.0)
IDLE_POLL_DELAY = _env_float('LOOPER_IDLE_POLL_DELAY', 5.0)

# Operator handshake for Canvas authorization errors
AUTH_DECISION_TIMEOUT = _env_float('LOOPER_AUTH_DECISION_TIMEOUT', 120.0)
AUTH_DECISION_DEFAULT = os.getenv('LOOPER_AUTH_DECISION_DEFAULT', 'continue').strip().lower()

# Students below this grade count as failing for the scan filter
FAILING_GRADE_THRESHOLD = 60.0

CHECKER_MODES = {
    'SUBMISSION': 'submission',
    'MISSING': 'missing',
}

# Days-out filter queries like '>=5' or '<10'
ADVANCED_FILTER_REGEX = r'^\s*([><]=?|=)\s*(\d+)\s*$'

# Data paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.getenv('LOOPER_DATA_DIR', os.path.join(BASE_DIR, 'data'))


@dataclass
class LooperSettings:
    """Per-cycle settings read from the Settings Provider."""
    mode: str = CHECKER_MODES['SUBMISSION']
    max_concurrency: int = MAX_CONCURRENT_REQUESTS
    days_out_filter: str = 'all'
    include_failing: bool = False
    specific_date: Optional[str] = None   # YYYY-MM-DD
    custom_keyword: Optional[str] = None

    def __post_init__(self):
        self.mode = (self.mode or CHECKER_MODES['SUBMISSION']).strip().lower()
        if self.mode not in CHECKER_MODES.values():
            raise ValueError(f"Unknown checker mode: {self.mode!r}")
        if self.max_concurrency is None:
            self.max_concurrency = MAX_CONCURRENT_REQUESTS
        self.max_concurrency = max(1, int(self.max_concurrency))
        self.days_out_filter = (self.days_out_filter or 'all').strip().lower()
        self.include_failing = bool(self.include_failing)
        self.specific_date = self.specific_date or None
        self.custom_keyword = self.custom_keyword or None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LooperSettings':
        """Build settings from a dict using snake_case or legacy storage keys."""
        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        return cls(
            mode=pick('mode', 'checkerMode', default=CHECKER_MODES['SUBMISSION']),
            max_concurrency=pick('max_concurrency', 'concurrentTabs', default=MAX_CONCURRENT_REQUESTS),
            days_out_filter=pick('days_out_filter', 'looperDaysOutFilter', default='all'),
            include_failing=pick('include_failing', 'scanFilterIncludeFailing', default=False),
            specific_date=pick('specific_date', 'specificSubmissionDate'),
            custom_keyword=pick('custom_keyword', 'customKeyword'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class JsonSettingsProvider:
    """
    Settings Provider backed by a JSON file.

    The file is re-read on every call so edits take effect at the next
    cycle start. Missing files fall back to the defaults, optionally
    patched with ``overrides``.
    """

    def __init__(self, path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.path = path
        self.overrides = dict(overrides or {})

    def __call__(self) -> LooperSettings:
        data: Dict[str, Any] = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, 'r') as f:
                data = json.load(f)
        data.update({k: v for k, v in self.overrides.items() if v is not None})
        return LooperSettings.from_dict(data)
