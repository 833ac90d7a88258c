"""
Canvas API Client with Partial-Failure Tolerant Pagination

This module provides the thread-safe HTTP side of the looper:
- Follows Link-header ("bookmark") pagination until exhausted
- Returns partial data when a page times out or a later page fails
- Distinguishes genuine authorization failures from other 401/403s
- Backs off on Canvas throttling (403 "Rate Limit Exceeded") and 5xx errors
- Tracks request statistics and the X-Rate-Limit-Remaining quota

Usage:
    from canvas_looper.canvas_client import CanvasClient

    client = CanvasClient(session=authenticated_session)
    url, params = client.submissions_request(batch)
    result = client.fetch_paged(url, params)
"""

import re
import time
import logging
import threading
from typing import Optional, Dict, List, Any, Tuple
from dataclasses import dataclass, field
from datetime import datetime

import requests

from . import config

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Raised when an endpoint fails before any data was retrieved."""
    pass


@dataclass
class RateLimitState:
    """Thread-safe rate limit state tracker."""
    remaining: Optional[float] = None
    last_updated: datetime = field(default_factory=datetime.now)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def update(self, remaining: float):
        with self.lock:
            self.remaining = remaining
            self.last_updated = datetime.now()

    def get(self) -> Optional[float]:
        with self.lock:
            return self.remaining


@dataclass
class PageResult:
    """Items accumulated by fetch_paged and how the pagination ended."""
    items: List[Dict] = field(default_factory=list)
    pages: int = 0
    partial: bool = False
    auth_failed: bool = False


def get_next_page_url(link_header: Optional[str]) -> Optional[str]:
    """
    Extract the rel="next" URL from a Link header.

    Format: <url>; rel="current", <url>; rel="next", <url>; rel="first"
    """
    if not link_header:
        return None
    for link in link_header.split(','):
        if 'rel="next"' in link:
            match = re.search(r'<([^>]+)>', link)
            return match.group(1) if match else None
    return None


def is_rate_limited(response: requests.Response) -> bool:
    """Canvas throttles with a 403 and a plain-text 'Rate Limit Exceeded' body."""
    if response.status_code != 403:
        return False
    try:
        return 'rate limit exceeded' in (response.text or '').lower()
    except (AttributeError, ValueError):
        return False


def is_auth_error(response: requests.Response) -> bool:
    """
    Confirm that a 401/403 is really an authorization failure.

    Some endpoints answer 401 for unrelated reasons, so the JSON body is
    checked for ``status: unauthorized`` or a "not authorized" error
    message. A body that cannot be parsed is treated as an auth error; a
    parsed body that is not an object is not.
    """
    if response.status_code not in (401, 403) or is_rate_limited(response):
        return False

    try:
        body = response.json()
    except ValueError:
        return True

    if not isinstance(body, dict):
        return False
    if body.get('status') == 'unauthorized':
        return True

    errors = body.get('errors') or []
    if isinstance(errors, dict):
        errors = [errors]
    return any(
        isinstance(e, dict) and 'not authorized' in str(e.get('message') or '').lower()
        for e in errors
    )


class CanvasClient:
    """
    Thread-safe Canvas API client.

    fetch_paged holds no shared state beyond statistics counters, so any
    number of worker threads may call it concurrently; the cycle controller
    bounds how many do.

    Attributes:
        session: requests.Session carrying the authenticated Canvas session
        headers: Headers sent with every request
        timeout: Per-request timeout in seconds
        max_retries: Attempts for throttled, 5xx and connection failures
        retry_delay: Base delay for exponential backoff
        max_pages: Safety limit on pages followed per endpoint
    """

    DEFAULT_HEADERS = {
        'Accept': 'application/json',
        'X-Requested-With': 'XMLHttpRequest',
    }

    def __init__(
        self,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = config.REQUEST_TIMEOUT,
        max_retries: int = config.MAX_RETRIES,
        retry_delay: float = config.RETRY_DELAY,
        max_pages: int = config.MAX_PAGES
    ):
        """
        Initialize Canvas client.

        Args:
            api_token: Bearer token (defaults to env CANVAS_API_TOKEN); may be
                omitted when ``session`` already carries the login cookies
            session: Pre-authenticated session to reuse
            timeout: Per-request timeout in seconds
            max_retries: Number of attempts per request
            retry_delay: Base backoff delay in seconds
            max_pages: Maximum pages to follow per endpoint
        """
        self.session = session or requests.Session()
        self.headers = dict(self.DEFAULT_HEADERS)

        api_token = api_token or config.API_TOKEN
        if api_token:
            self.headers['Authorization'] = f'Bearer {api_token}'

        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.max_pages = max_pages
        self.rate_state = RateLimitState()

        # Request statistics
        self._stats_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0
        self._timeout_count = 0

        logger.debug(
            f"CanvasClient initialized: timeout={timeout}s, "
            f"max_retries={self.max_retries}, token={'yes' if api_token else 'session'}"
        )

    def _count(self, attr: str):
        with self._stats_lock:
            setattr(self, attr, getattr(self, attr) + 1)

    def _backoff(self, attempt: int):
        if self.retry_delay > 0:
            time.sleep(self.retry_delay * (2 ** attempt))

    def _get(self, url: str, params: Optional[Any] = None) -> requests.Response:
        """
        GET with retries for throttling, 5xx and connection errors.

        Timeouts are not retried; they propagate so the caller can keep the
        pages it already has.

        Raises:
            requests.exceptions.Timeout: The request exceeded ``timeout``
            APIError: Every attempt failed without a response
        """
        last_error = None
        response = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.get(
                    url,
                    headers=self.headers,
                    params=params,
                    timeout=self.timeout
                )
            except requests.exceptions.Timeout:
                self._count('_timeout_count')
                raise
            except requests.exceptions.RequestException as e:
                last_error = str(e)
                logger.warning(f"Request error on attempt {attempt + 1}/{self.max_retries}: {e}")
                if attempt + 1 < self.max_retries:
                    self._backoff(attempt)
                continue

            self._count('_request_count')

            remaining = response.headers.get('X-Rate-Limit-Remaining')
            if remaining:
                try:
                    self.rate_state.update(float(remaining))
                except ValueError:
                    pass

            if is_rate_limited(response) or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"Retryable response {response.status_code} on attempt "
                    f"{attempt + 1}/{self.max_retries} (quota remaining: {remaining or '?'})"
                )
                if attempt + 1 < self.max_retries:
                    self._backoff(attempt)
                    continue

            return response

        self._count('_error_count')
        raise APIError(f"Request failed after {self.max_retries} attempts: {last_error}")

    def fetch_paged(
        self,
        url: str,
        params: Optional[Any] = None,
        items: Optional[List[Dict]] = None
    ) -> PageResult:
        """
        Fetch every page of a Canvas collection.

        ``params`` apply only to the first request; subsequent requests use
        the full URL from the Link header.

        Args:
            url: Endpoint URL
            params: Query parameters for the first page
            items: Items accumulated so far

        Returns:
            PageResult. ``partial`` is set when pagination stopped early
            (timeout, failing later page, page limit); ``auth_failed`` is set
            when Canvas rejected the session.

        Raises:
            APIError: The endpoint failed before anything was accumulated
        """
        result = PageResult(items=list(items or []))
        current_url = url
        current_params = params

        while current_url:
            if result.pages >= self.max_pages:
                logger.warning(f"Page limit ({self.max_pages}) reached for {url}; returning partial data")
                result.partial = True
                break

            try:
                response = self._get(current_url, current_params)
            except requests.exceptions.Timeout:
                logger.warning(
                    f"Request timed out after {result.pages} pages - returning partial data "
                    f"({len(result.items)} items)"
                )
                result.partial = True
                break
            except APIError:
                if result.items:
                    result.partial = True
                    break
                raise

            current_params = None

            if is_auth_error(response):
                logger.warning(f"Canvas authorization error ({response.status_code}) for {current_url}")
                result.auth_failed = True
                break

            if not response.ok:
                if result.items:
                    logger.warning(f"HTTP {response.status_code} on page {result.pages + 1}; keeping partial data")
                    result.partial = True
                    break
                self._count('_error_count')
                raise APIError(f"HTTP {response.status_code}: {current_url}")

            try:
                data = response.json()
            except ValueError:
                if result.items:
                    result.partial = True
                    break
                raise APIError(f"Invalid JSON response: {current_url}")

            # Handle dict response (some endpoints return {key: [...]})
            if isinstance(data, dict):
                for value in data.values():
                    if isinstance(value, list):
                        data = value
                        break
                else:
                    data = [data]

            result.items.extend(data or [])
            result.pages += 1

            current_url = get_next_page_url(response.headers.get('Link'))
            if current_url:
                logger.debug(f"Page {result.pages}: {len(result.items)} items so far, following next link")

        return result

    # ==========================================================================
    # Batch endpoints
    # ==========================================================================

    @staticmethod
    def submissions_request(batch) -> Tuple[str, List[Tuple[str, str]]]:
        """Submissions (with assignment details) for every student in a batch."""
        params = [('student_ids[]', sid) for sid in batch.student_ids]
        params += [('include[]', 'assignment'), ('per_page', '100')]
        return f"{batch.origin}/api/v1/courses/{batch.course_id}/students/submissions", params

    @staticmethod
    def users_request(batch) -> Tuple[str, List[Tuple[str, str]]]:
        """Users with their enrollments (and grades) for every student in a batch."""
        params = [('user_ids[]', sid) for sid in batch.student_ids]
        params += [('include[]', 'enrollments'), ('per_page', '100')]
        return f"{batch.origin}/api/v1/courses/{batch.course_id}/users", params

    # ==========================================================================
    # Statistics and diagnostics
    # ==========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        with self._stats_lock:
            return {
                'request_count': self._request_count,
                'error_count': self._error_count,
                'timeout_count': self._timeout_count,
                'current_quota': self.rate_state.get(),
                'last_quota_update': self.rate_state.last_updated.isoformat()
            }

    def log_quota(self):
        """Log current quota status."""
        quota = self.rate_state.get()
        stats = self.get_stats()
        logger.info(
            f"Canvas quota remaining: {quota if quota is not None else 'unknown'} | "
            f"requests={stats['request_count']} errors={stats['error_count']} "
            f"timeouts={stats['timeout_count']}"
        )
