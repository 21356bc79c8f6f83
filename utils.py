"""
Utility functions for the Repo Thief Hunter detection engine.

Provides the GitHub access primitives every scanner component shares:
- RateGovernor: paces core and search calls and waits out quota exhaustion
- CancelToken: cooperative deadlines for time-bounded scan steps
- make_github_request: retrying, cache-aware GET wrapper
- parse_github_url: owner/repo extraction
"""
import json
import re
import sqlite3
import threading
import time
import random
from enum import Enum
from typing import Optional, Dict, Any, Callable, Tuple

import requests

from config import Config
from cache import get_github_cache
from database import increment_daily_stat


# =============================================================================
# CANCELLATION
# =============================================================================

class ScanInterrupted(Exception):
    """Base class for a scan step abandoned before it finished."""


class ScanTimeout(ScanInterrupted):
    """The step's deadline passed."""


class ScanCancelled(ScanInterrupted):
    """The step was cancelled explicitly."""


class CancelToken:
    """
    Cooperative cancellation token with an optional deadline.

    Passed into every network-bound operation and checked at each suspension
    point (HTTP call, rate-limit pause, retry backoff). A child token created
    from a parent is interrupted when either its own deadline passes or the
    parent is interrupted.

    Thread-safe: cancel() may be called from any thread and wakes sleepers.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional['CancelToken'] = None,
                 label: str = 'operation', clock: Callable[[], float] = time.monotonic):
        self.deadline = deadline
        self.parent = parent
        self.label = label
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children = []
        if parent is not None:
            parent._add_child(self)

    @classmethod
    def with_timeout(cls, seconds: float, parent: Optional['CancelToken'] = None,
                     label: str = 'operation') -> 'CancelToken':
        clock = parent._clock if parent is not None else time.monotonic
        return cls(deadline=clock() + seconds, parent=parent, label=label, clock=clock)

    def _add_child(self, child: 'CancelToken'):
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def cancel(self):
        """Cancel this token and every token derived from it."""
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the nearest deadline in the chain, or None if unbounded."""
        candidates = []
        if self.deadline is not None:
            candidates.append(self.deadline - self._clock())
        if self.parent is not None:
            parent_remaining = self.parent.remaining()
            if parent_remaining is not None:
                candidates.append(parent_remaining)
        return min(candidates) if candidates else None

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self):
        """Raise if this token (or an ancestor) was cancelled or ran out of time."""
        if self.parent is not None:
            self.parent.check()
        if self._event.is_set():
            raise ScanCancelled(f"{self.label} cancelled")
        if self.deadline is not None and self._clock() >= self.deadline:
            raise ScanTimeout(f"{self.label} timed out")

    def sleep(self, seconds: float):
        """Sleep up to `seconds`, waking early (and raising) on cancel or deadline."""
        self.check()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(max(remaining, 0))
            self.check()
            # The deadline can be a hair away after waking; treat it as reached.
            raise ScanTimeout(f"{self.label} timed out")
        self._event.wait(seconds)
        self.check()

    def request_timeout(self, default: float) -> float:
        """HTTP timeout bounded by the time left on this token."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(min(default, remaining), 0.1)


def run_with_timeout(func: Callable[['CancelToken'], Any], seconds: float,
                     parent: Optional[CancelToken] = None, label: str = 'operation'):
    """
    Run func(token) with a child token that expires after `seconds`.

    The deadline is honored at every suspension point inside func. When it
    passes, ScanTimeout propagates to the caller, who decides whether to
    skip or abort. Work already committed is not rolled back.
    """
    token = CancelToken.with_timeout(seconds, parent=parent, label=label)
    return func(token)


# =============================================================================
# RATE GOVERNOR
# =============================================================================

class QuotaClass(Enum):
    """Independent GitHub rate-limit buckets."""
    CORE = 'core'
    SEARCH = 'search'


# Reusable HTTP session for connection pooling (keep-alive)
_session = requests.Session()


def get_github_token() -> Optional[str]:
    """First configured token, or None for anonymous access."""
    if Config.GITHUB_TOKENS:
        return Config.GITHUB_TOKENS[0]
    return Config.GITHUB_TOKEN


def get_github_headers(token: Optional[str] = None) -> dict:
    """
    Get headers for GitHub API requests.

    Args:
        token: Optional specific token to use instead of the configured one

    Returns:
        Dict of headers including Authorization if a token is available.
    """
    headers = {
        'Accept': 'application/vnd.github.v3+json',
        'User-Agent': Config.USER_AGENT,
    }

    token = token or get_github_token()
    if token:
        headers['Authorization'] = f'token {token}'

    return headers


class RateGovernor:
    """
    Paces every outbound GitHub call, per quota class.

    Before a call of a given class it:
    1. Waits out the remainder of the class's minimum spacing
       (search: 2.1s to stay under 30/minute, core: 100ms).
    2. Reads the live quota for that class from /rate_limit.
       - remaining == 0 -> sleep until the reported reset + buffer
       - remaining < 10 -> sleep a fixed cooldown
    3. If the quota check itself fails, sleeps a short fallback delay
       and lets the call proceed. Governance degrades to slow, never broken.

    Pacing state is process-wide; one instance is shared by all workers.
    """

    def __init__(self, fetch_limits: Optional[Callable[[], dict]] = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time):
        self._fetch_limits = fetch_limits or self._fetch_rate_limits
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._locks = {quota: threading.Lock() for quota in QuotaClass}
        self._last_call = {quota: None for quota in QuotaClass}
        self._status_lock = threading.Lock()
        self._status: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _fetch_rate_limits() -> dict:
        """GET /rate_limit and return its 'resources' mapping."""
        response = _session.get(
            f"{Config.GITHUB_API_BASE}/rate_limit",
            headers=get_github_headers(),
            timeout=10,
        )
        response.raise_for_status()
        return response.json()['resources']

    def pause(self, seconds: float, token: Optional[CancelToken] = None):
        if seconds <= 0:
            return
        if self._sleep is not None:
            if token is not None:
                token.check()
            self._sleep(seconds)
        elif token is not None:
            token.sleep(seconds)
        else:
            time.sleep(seconds)

    def _spacing_for(self, quota_class: QuotaClass) -> float:
        if quota_class == QuotaClass.SEARCH:
            return Config.SEARCH_THROTTLE_SECONDS
        return Config.CORE_THROTTLE_SECONDS

    def wait(self, quota_class: QuotaClass, token: Optional[CancelToken] = None):
        """Block until a call of this class may be made."""
        with self._locks[quota_class]:
            last_call = self._last_call[quota_class]
            if last_call is not None:
                elapsed = self._clock() - last_call
                spacing = self._spacing_for(quota_class)
                if elapsed < spacing:
                    self.pause(spacing - elapsed, token)
            self._last_call[quota_class] = self._clock()

        try:
            resources = self._fetch_limits()
            info = resources[quota_class.value]
            remaining = int(info['remaining'])
            limit = int(info.get('limit', 0))
            reset_time = int(info['reset'])
        except (requests.RequestException, KeyError, TypeError, ValueError) as e:
            print(f"[RATE_LIMIT] Quota check failed ({e}), pausing {Config.RATE_LIMIT_CHECK_FALLBACK}s")
            self.pause(Config.RATE_LIMIT_CHECK_FALLBACK, token)
            return

        with self._status_lock:
            self._status[quota_class.value] = {
                'remaining': remaining,
                'limit': limit,
                'reset': reset_time,
            }

        if remaining % 100 == 0 or remaining < 50:
            print(f"[RATE_LIMIT] {quota_class.value}: {remaining}/{limit} remaining")

        if remaining == 0:
            wait_for = max(reset_time - self._wall_clock(), 0) + Config.RATE_LIMIT_RESET_BUFFER
            print(f"[RATE_LIMIT] {quota_class.value} quota exhausted, waiting {wait_for:.0f}s for reset...")
            self.pause(wait_for, token)
        elif remaining < Config.RATE_LIMIT_LOW_THRESHOLD:
            print(f"[RATE_LIMIT] {quota_class.value} quota low ({remaining}), cooling down {Config.RATE_LIMIT_LOW_COOLDOWN}s")
            self.pause(Config.RATE_LIMIT_LOW_COOLDOWN, token)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Last observed quota per class."""
        with self._status_lock:
            return {name: dict(values) for name, values in self._status.items()}


_rate_governor: Optional[RateGovernor] = None
_governor_lock = threading.Lock()


def get_rate_governor() -> RateGovernor:
    """Get the process-wide rate governor (lazy initialization)."""
    global _rate_governor

    if _rate_governor is None:
        with _governor_lock:
            if _rate_governor is None:
                _rate_governor = RateGovernor()

    return _rate_governor


# =============================================================================
# REQUESTS
# =============================================================================

class CachedResponse:
    """
    A fake Response object that mimics requests.Response for cached data.

    Lets cached bodies flow through code that expects a requests.Response.
    """

    def __init__(self, status_code: int, headers: Dict, body: Any):
        self.status_code = status_code
        self.headers = headers
        self._body = body
        self.from_cache = True
        self.ok = status_code < 400
        self.reason = "OK" if status_code == 200 else "Cached"

    def json(self):
        return self._body

    @property
    def text(self):
        return json.dumps(self._body)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"Cached response with status {self.status_code}")


def _track_api_call():
    try:
        increment_daily_stat('api_calls')
    except sqlite3.Error as e:
        # Stats are best-effort; the request already succeeded
        print(f"[GITHUB] Could not record API call: {e}")


def make_github_request(url: str, params: Optional[dict] = None,
                        quota_class: QuotaClass = QuotaClass.CORE,
                        token: Optional[CancelToken] = None,
                        timeout: Optional[float] = None,
                        skip_cache: bool = False,
                        _retry_count: int = 0):
    """
    GitHub API GET wrapper used by every gateway operation.

    Features:
    - Cache: repository metadata and search results are served from cache
    - Rate governor: waits for the quota class before each real request
    - Retries: connection errors and 5xx up to 3 times with backoff
      min(2**n, 30) + jitter
    - Quota exhaustion (403/429 with remaining 0): waits for reset and retries
    - Cancellation: every wait honors `token`; the HTTP timeout is capped by
      the time the token has left

    Args:
        url: GitHub API URL
        params: Query parameters
        quota_class: CORE or SEARCH
        token: Optional CancelToken bounding the whole call
        timeout: Request timeout in seconds (default Config.REQUEST_TIMEOUT)
        skip_cache: If True, bypass cache and force fresh request

    Returns:
        requests.Response (or CachedResponse for cached data). Callers decide
        whether to raise_for_status().
    """
    MAX_RETRIES = 3
    governor = get_rate_governor()
    cache = get_github_cache()

    if token is not None:
        token.check()

    # 1. Check cache first
    if not skip_cache and cache.is_available():
        cached = cache.get(url, params)
        if cached:
            status_code, headers, body = cached
            return CachedResponse(status_code, headers, body)

    # 2. Pace the call
    governor.wait(quota_class, token)

    request_timeout = timeout or Config.REQUEST_TIMEOUT
    if token is not None:
        request_timeout = token.request_timeout(request_timeout)

    def retry_after(seconds: float):
        governor.pause(seconds, token)
        return make_github_request(url, params, quota_class, token, timeout,
                                   skip_cache, _retry_count + 1)

    # 3. Make the request (using session for connection pooling)
    try:
        response = _session.get(
            url,
            headers=get_github_headers(),
            params=params,
            timeout=request_timeout,
        )
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
            requests.exceptions.ChunkedEncodingError) as e:
        if token is not None:
            token.check()
        if _retry_count < MAX_RETRIES:
            backoff = min(2 ** _retry_count, 30) + random.uniform(0, 1)
            print(f"[GITHUB] Connection error ({e.__class__.__name__}), retrying in {backoff:.1f}s (attempt {_retry_count+1}/{MAX_RETRIES})")
            return retry_after(backoff)
        raise

    # 4. Quota exhausted despite pacing (secondary limits, shared tokens)
    if response.status_code in (403, 429) and response.headers.get('X-RateLimit-Remaining') == '0':
        try:
            reset_time = int(response.headers.get('X-RateLimit-Reset', 0))
        except ValueError:
            reset_time = 0
        if _retry_count < MAX_RETRIES:
            sleep_for = max(reset_time - int(time.time()), 0) + Config.RATE_LIMIT_RESET_BUFFER
            print(f"[GITHUB] Rate limited on {url}, waiting {sleep_for}s for reset...")
            return retry_after(sleep_for)
        return response

    # 5. Handle 5xx server errors with exponential backoff
    if response.status_code in (500, 502, 503, 504) and _retry_count < MAX_RETRIES:
        backoff = min(2 ** _retry_count, 30) + random.uniform(0, 1)
        print(f"[GITHUB] {response.status_code} error, retrying in {backoff:.1f}s (attempt {_retry_count+1}/{MAX_RETRIES})")
        return retry_after(backoff)

    # 6. Cache successful responses and track API calls
    if response.status_code == 200:
        _track_api_call()
        if cache.is_available():
            try:
                body = response.json()
            except ValueError:
                body = None
            if body is not None:
                cache.set(url, params, response.status_code, dict(response.headers), body)

    response.from_cache = False
    return response


# =============================================================================
# URL PARSING
# =============================================================================

_GITHUB_URL_PATTERN = re.compile(r'github\.com/([^/\s]+)/([^/\s?#]+)')


def parse_github_url(url: str) -> Tuple[str, str]:
    """
    Extract (owner, repo) from a GitHub repository URL.

    Raises:
        ValueError: If the URL does not point at a repository.
    """
    match = _GITHUB_URL_PATTERN.search(url or '')
    if not match:
        raise ValueError(f"Invalid GitHub URL: {url}")
    owner, repo = match.group(1), match.group(2)
    if repo.endswith('.git'):
        repo = repo[:-4]
    if not owner or not repo:
        raise ValueError(f"Invalid GitHub URL: {url}")
    return owner, repo
