"""
Batch Builder

Filters the roster and groups students by Canvas course so each batch can
be serviced with exactly two API calls (submissions and users).
"""

import re
import logging
import operator
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Iterable, Set, Any

from . import config
from .roster import StudentEntry
from .url_parser import GradebookReference, parse_gradebook_url, describe_raw_reference

logger = logging.getLogger(__name__)


OPERATORS = {
    '>': operator.gt,
    '<': operator.lt,
    '>=': operator.ge,
    '<=': operator.le,
    '=': operator.eq,
}


@dataclass(frozen=True)
class DaysOutFilter:
    """Parsed days-out filter such as ``>=5``."""
    op: str
    threshold: int

    def matches(self, days_out: Optional[int]) -> bool:
        if days_out is None:
            return False
        return OPERATORS[self.op](days_out, self.threshold)


@dataclass
class SkippedStudent:
    """A roster entry excluded from batching because its URL did not parse."""
    name: str
    url: str


@dataclass
class Batch:
    """Students from one course, fetched together."""
    members: List[Tuple[StudentEntry, GradebookReference]] = field(default_factory=list)

    @property
    def origin(self) -> str:
        return self.members[0][1].origin

    @property
    def course_id(self) -> str:
        return self.members[0][1].course_id

    @property
    def student_ids(self) -> List[str]:
        return [ref.student_id for _, ref in self.members]

    def __len__(self) -> int:
        return len(self.members)


def parse_days_out_filter(text: Optional[str]) -> Optional[DaysOutFilter]:
    """
    Parse a days-out filter expression.

    Returns None for 'all', empty or unrecognised input, meaning no filtering.
    """
    text = (text or '').strip().lower()
    if text in ('', 'all'):
        return None

    match = re.match(config.ADVANCED_FILTER_REGEX, text)
    if not match:
        logger.warning(f"Ignoring unrecognised days-out filter: {text!r}")
        return None

    return DaysOutFilter(op=match.group(1), threshold=int(match.group(2)))


def is_failing(grade: Any, threshold: float = config.FAILING_GRADE_THRESHOLD) -> bool:
    """True when the grade is numeric and below the failing threshold."""
    if grade is None or isinstance(grade, bool):
        return False
    try:
        value = float(str(grade).strip().rstrip('%'))
    except ValueError:
        return False
    return value == value and value < threshold  # NaN check


def filter_roster(
    entries: Iterable[StudentEntry],
    filter_text: Optional[str],
    include_failing: bool = False
) -> List[StudentEntry]:
    """
    Apply the days-out filter, optionally keeping failing students too.

    A student is kept if it meets the days-out criterion OR (when
    ``include_failing`` is set) its grade is numeric and below 60.
    """
    entries = list(entries)
    days_filter = parse_days_out_filter(filter_text)
    if days_filter is None:
        return entries

    return [
        entry for entry in entries
        if days_filter.matches(entry.days_out) or (include_failing and is_failing(entry.grade))
    ]


def exclude_found(entries: Iterable[StudentEntry], found_keys: Set[str]) -> List[StudentEntry]:
    """Drop students whose gradebook URL is already in the found set."""
    entries = list(entries)
    remaining = [e for e in entries if e.gradebook_url not in found_keys]
    if len(remaining) != len(entries):
        logger.info(f"Skipping {len(entries) - len(remaining)} already found students.")
    return remaining


def prepare_batches(
    entries: Iterable[StudentEntry],
    batch_size: int = config.BATCH_SIZE
) -> Tuple[List[Batch], List[SkippedStudent]]:
    """
    Group students by (origin, course ID) and slice each group into batches.

    Courses appear in the order their first student appears in the roster.

    Returns:
        Tuple of (batches, skipped students with unparsable URLs)
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    courses: 'OrderedDict[Tuple[str, str], List[Tuple[StudentEntry, GradebookReference]]]' = OrderedDict()
    skipped: List[SkippedStudent] = []

    for entry in entries:
        ref = parse_gradebook_url(entry.gradebook_url)
        if ref is None:
            skipped.append(SkippedStudent(
                name=entry.name or 'Unknown Student',
                url=describe_raw_reference(entry.gradebook_url),
            ))
            continue
        courses.setdefault((ref.origin, ref.course_id), []).append((entry, ref))

    for student in skipped:
        logger.warning(f"Skipping student with invalid URL - Name: {student.name}, URL: {student.url}")
    if skipped:
        logger.warning(f"Total students skipped due to invalid URLs: {len(skipped)}")

    batches = []
    for members in courses.values():
        for start in range(0, len(members), batch_size):
            batches.append(Batch(members=members[start:start + batch_size]))

    return batches, skipped
