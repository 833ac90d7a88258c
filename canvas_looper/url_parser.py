"""
Gradebook URL Parser

Extracts the origin, course ID and student ID from a per-student Canvas
gradebook URL, after rewriting legacy Canvas subdomains to the current one.

Usage:
    from canvas_looper.url_parser import parse_gradebook_url

    ref = parse_gradebook_url("https://nuc.instructure.com/courses/123/grades/456")
    # GradebookReference(origin='https://northbridge.instructure.com',
    #                    course_id='123', student_id='456')
"""

import re
from dataclasses import dataclass
from typing import Optional, Any, List
from urllib.parse import urlparse

from . import config


GRADEBOOK_PATTERN = re.compile(r'courses/(\d+)/grades/(\d+)')


@dataclass(frozen=True)
class GradebookReference:
    """Identifiers encoded in a gradebook URL."""
    origin: str
    course_id: str
    student_id: str


def normalize_canvas_url(
    url: Optional[str],
    legacy_subdomains: Optional[List[str]] = None,
    subdomain: Optional[str] = None
) -> Optional[str]:
    """
    Rewrite a legacy Canvas subdomain to the current one.

    Matching is case-insensitive. Falsy values are returned unchanged.
    """
    if not url:
        return url

    legacy_subdomains = config.LEGACY_CANVAS_SUBDOMAINS if legacy_subdomains is None else legacy_subdomains
    subdomain = subdomain or config.CANVAS_SUBDOMAIN

    for legacy in legacy_subdomains:
        pattern = re.compile(rf'https://{re.escape(legacy)}\.instructure\.com', re.IGNORECASE)
        if pattern.search(url):
            return pattern.sub(f'https://{subdomain}.instructure.com', url)

    return url


def parse_gradebook_url(url: Optional[str]) -> Optional[GradebookReference]:
    """
    Parse a gradebook URL of the form ``<origin>/courses/<id>/grades/<id>``.

    Query strings and fragments are ignored.

    Returns:
        GradebookReference, or None for anything that is not a gradebook URL
    """
    if not url or not isinstance(url, str):
        return None

    parsed = urlparse(normalize_canvas_url(url.strip()))
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None

    match = GRADEBOOK_PATTERN.search(parsed.path)
    if not match:
        return None

    return GradebookReference(
        origin=f'{parsed.scheme}://{parsed.netloc}'.lower(),
        course_id=match.group(1),
        student_id=match.group(2),
    )


def describe_raw_reference(value: Any) -> str:
    """Render a raw roster URL value for skip reports."""
    if value is None:
        return 'null'
    if value == '':
        return 'empty'
    return f'invalid: {value}'
