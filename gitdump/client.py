# client.py -- HTTP transport for exposed git directories
# Copyright (C) 2025 gitdump contributors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# gitdump is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""HTTP transport for fetching files from an exposed .git directory.

The transport knows nothing about git. It fetches one path at a time and
classifies the result into a FetchStatus, so that callers can tell "this
file does not exist" from "try again later" and from "the host is not
there at all". Retries, rate limiting and cancellation live here; one
HttpTransport is shared by all crawler threads.
"""

__all__ = [
    "Backoff",
    "FetchOutcome",
    "FetchStatus",
    "HttpTransport",
    "TokenBucket",
    "check_for_proxy_bypass",
    "default_urllib3_manager",
    "default_user_agent_string",
]

import enum
import ipaddress
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote, urljoin, urlparse

import urllib3
import urllib3.exceptions
import urllib3.util

import gitdump

from .log_utils import getLogger

logger = getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_CAP = 30.0
DEFAULT_MAX_SIZE = 100 * 1024 * 1024
DEFAULT_REDIRECTS = 5
# Wall clock budget for one attempt, body included
DEFAULT_DEADLINE = 300.0

# Bodies of error responses are read this far to keep the connection
# reusable, and discarded.
_ERROR_BODY_LIMIT = 64 * 1024
_CHUNK_SIZE = 64 * 1024

NOT_FOUND_STATUSES = frozenset([404, 410])
FORBIDDEN_STATUSES = frozenset([401, 403, 407, 451])
TRANSIENT_STATUSES = frozenset([408, 425, 429])

_HTML_PREFIXES = (b"<!doctype html", b"<html", b"<head", b"<body")


class _ReadAborted(Exception):
    """Reading a response body was given up."""

    def __init__(self, status: "FetchStatus", reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


class FetchStatus(enum.Enum):
    """Classification of a fetch attempt."""

    OK = "ok"
    NOT_FOUND = "not-found"
    FORBIDDEN = "forbidden"
    # Worth retrying: timeouts, resets, 429, 5xx
    TRANSIENT = "transient"
    # The host can not be reached at all
    FATAL = "fatal"
    # Permanent failure for this path only
    FAILED = "failed"


@dataclass
class FetchOutcome:
    """Result of fetching one path."""

    path: str
    status: FetchStatus
    data: bytes = b""
    http_status: Optional[int] = None
    reason: Optional[str] = None
    attempts: int = 1
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK


class Backoff:
    """Bounded exponential backoff.

    next_delay() returns the delay before the next attempt, or None once
    ``retries`` retries have been handed out.

    >>> b = Backoff(retries=3, base=1.0, cap=3.0)
    >>> [b.next_delay() for _ in range(4)]
    [1.0, 2.0, 3.0, None]
    """

    def __init__(
        self,
        retries: int = DEFAULT_RETRIES,
        base: float = DEFAULT_BACKOFF_BASE,
        cap: float = DEFAULT_BACKOFF_CAP,
    ) -> None:
        self.retries = retries
        self.base = base
        self.cap = cap
        self.attempt = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.retries

    def next_delay(self, minimum: Optional[float] = None) -> Optional[float]:
        """Advance to the next attempt.

        Args:
          minimum: Lower bound for the delay, e.g. from a Retry-After header;
            still capped
        Returns: seconds to wait, or None when no retries are left
        """
        if self.exhausted:
            return None
        delay = self.base * (2**self.attempt)
        if minimum is not None:
            delay = max(delay, minimum)
        self.attempt += 1
        return min(delay, self.cap)


class TokenBucket:
    """Token bucket rate limiter shared between threads.

    Args:
      rate: Tokens added per second
      burst: Bucket size; defaults to max(1, rate)
      clock: Monotonic clock, replaceable for tests
    """

    def __init__(
        self,
        rate: float,
        burst: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, not {rate!r}")
        self.rate = rate
        self.burst = burst if burst is not None else max(1.0, rate)
        self._clock = clock
        self._tokens = self.burst
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._last) * self.rate)
        self._last = now

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns: 0 on success, else the number of seconds until a token
          will be available
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until a token is available.

        Returns: False if ``cancel_event`` was set while waiting
        """
        while True:
            wait = self.try_acquire()
            if not wait:
                return True
            if cancel_event is None:
                time.sleep(wait)
            elif cancel_event.wait(wait):
                return False


def default_user_agent_string() -> str:
    """Return the default user agent string for gitdump."""
    return "gitdump/{}".format(".".join([str(x) for x in gitdump.__version__]))


def check_for_proxy_bypass(base_url: Optional[str]) -> bool:
    """Check if proxy should be bypassed for the given URL."""
    # Check if a proxy bypass is defined with the no_proxy environment variable
    if not base_url:
        return False
    no_proxy_str = os.environ.get("no_proxy") or os.environ.get("NO_PROXY")
    if not no_proxy_str:
        return False
    # implementation based on curl behavior: https://curl.se/libcurl/c/CURLOPT_NOPROXY.html
    hostname = urlparse(base_url).hostname
    if not hostname:
        return False
    try:
        hostname_ip = ipaddress.ip_address(hostname)
    except ValueError:
        hostname_ip = None

    for no_proxy_value in no_proxy_str.split(","):
        no_proxy_value = no_proxy_value.strip().lower().lstrip(".")
        if not no_proxy_value:
            continue
        if hostname_ip:
            try:
                no_proxy_network = ipaddress.ip_network(no_proxy_value, strict=False)
            except ValueError:
                no_proxy_network = None
            if no_proxy_network and hostname_ip in no_proxy_network:
                return True
        if no_proxy_value == "*":
            return True
        if hostname == no_proxy_value:
            return True
        # only match complete domains
        if hostname.endswith("." + no_proxy_value):
            return True
    return False


def default_urllib3_manager(
    proxy: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    verify_ssl: bool = True,
    ca_certs: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
    user_agent: Optional[str] = None,
    maxsize: int = 1,
    pool_manager_cls: Optional[type] = None,
    proxy_manager_cls: Optional[type] = None,
) -> Union[urllib3.ProxyManager, urllib3.PoolManager]:
    """Return urllib3 connection pool manager.

    Honour detected proxy configurations.

    Args:
      proxy: Proxy URL; the https_proxy, http_proxy and all_proxy
        environment variables are consulted when omitted
      base_url: Base URL for proxy bypass checks
      timeout: Connect and read timeout in seconds
      verify_ssl: Whether to verify TLS certificates
      ca_certs: Path of a CA bundle to verify against
      headers: Extra headers to send with every request
      user_agent: User-Agent header; defaults to default_user_agent_string()
      maxsize: Connections kept per host, normally the number of workers
      pool_manager_cls: Pool manager class to use
      proxy_manager_cls: Proxy manager class to use

    Returns:
      Either proxy_manager_cls (defaults to `urllib3.ProxyManager`) instance
      for proxy configurations, pool_manager_cls (defaults to
      `urllib3.PoolManager`) instance otherwise
    """
    proxy_server = proxy
    if proxy_server is None:
        for proxyname in ("https_proxy", "http_proxy", "all_proxy"):
            proxy_server = os.environ.get(proxyname) or os.environ.get(proxyname.upper())
            if proxy_server:
                break
        if proxy_server and check_for_proxy_bypass(base_url):
            proxy_server = None

    req_headers = {"User-agent": user_agent or default_user_agent_string()}
    if headers:
        req_headers.update(headers)

    kwargs: dict[str, object] = {
        "ca_certs": ca_certs,
        "cert_reqs": "CERT_REQUIRED" if verify_ssl else "CERT_NONE",
        "maxsize": maxsize,
    }
    if timeout is not None:
        kwargs["timeout"] = urllib3.Timeout(connect=timeout, read=timeout)

    manager: Union[urllib3.ProxyManager, urllib3.PoolManager]
    if proxy_server:
        if proxy_manager_cls is None:
            proxy_manager_cls = urllib3.ProxyManager
        proxy_server_url = urlparse(proxy_server)
        if proxy_server_url.username is not None:
            proxy_headers = urllib3.make_headers(
                proxy_basic_auth=f"{proxy_server_url.username}:{proxy_server_url.password or ''}"
            )
        else:
            proxy_headers = {}
        manager = proxy_manager_cls(
            proxy_server, proxy_headers=proxy_headers, headers=req_headers, **kwargs
        )
    else:
        if pool_manager_cls is None:
            pool_manager_cls = urllib3.PoolManager
        manager = pool_manager_cls(headers=req_headers, **kwargs)

    return manager


def normalize_base_url(url: str) -> str:
    """Normalize the URL of an exposed git directory.

    A URL pointing at the HEAD file is accepted too.

    >>> normalize_base_url("http://example.com/.git/HEAD")
    'http://example.com/.git/'
    """
    url = url.strip()
    if url.endswith("/HEAD"):
        url = url[: -len("HEAD")]
    return url.rstrip("/") + "/"


def _looks_like_html(body: bytes) -> bool:
    return body[:512].lstrip().lower().startswith(_HTML_PREFIXES)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP dates are not worth the trouble here
        return None


class HttpTransport:
    """Fetches paths below the base URL of an exposed git directory.

    Thread-safe; share one instance between all workers.
    """

    def __init__(
        self,
        base_url: str,
        pool_manager: Optional[urllib3.PoolManager] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        rate: Optional[float] = None,
        burst: Optional[float] = None,
        proxy: Optional[str] = None,
        verify_ssl: bool = True,
        ca_certs: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        user_agent: Optional[str] = None,
        max_size: int = DEFAULT_MAX_SIZE,
        html_as_missing: bool = True,
        cancel_event: Optional[threading.Event] = None,
        maxsize: int = 1,
        deadline: Optional[float] = DEFAULT_DEADLINE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a transport.

        Args:
          base_url: URL of the exposed .git directory
          pool_manager: urllib3 pool manager to use; built with
            default_urllib3_manager() when omitted
          timeout: Connect and read timeout per request, in seconds
          retries: How often a transient failure is retried
          backoff_base: First retry delay in seconds; doubled per attempt
          backoff_cap: Longest retry delay in seconds
          rate: Requests per second across all threads; None for no limit
          burst: Requests allowed in a burst when rate limiting
          proxy: Proxy URL
          verify_ssl: Whether to verify TLS certificates
          ca_certs: Path of a CA bundle
          headers: Extra headers for every request
          user_agent: User-Agent header
          max_size: Largest response body accepted, in bytes
          html_as_missing: Treat HTML pages served with status 200 as
            missing files (servers that answer every path with an error
            page)
          cancel_event: Event that aborts fetches when set
          maxsize: Connections kept per host
          deadline: Longest time one attempt may take, including reading
            the body; None for no limit
          clock: Monotonic clock, replaceable for tests
        """
        self.base_url = normalize_base_url(base_url)
        if pool_manager is None:
            pool_manager = default_urllib3_manager(
                proxy=proxy,
                base_url=self.base_url,
                timeout=timeout,
                verify_ssl=verify_ssl,
                ca_certs=ca_certs,
                headers=headers,
                user_agent=user_agent,
                maxsize=maxsize,
            )
        self.pool_manager = pool_manager
        self._timeout = urllib3.Timeout(connect=timeout, read=timeout)
        # Only redirects are followed by urllib3; retrying is done here.
        self._retry = urllib3.util.Retry(
            total=None,
            connect=0,
            read=0,
            status=0,
            other=0,
            redirect=DEFAULT_REDIRECTS,
            raise_on_redirect=False,
            raise_on_status=False,
        )
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_size = max_size
        self.html_as_missing = html_as_missing
        self._rate_limiter = TokenBucket(rate, burst) if rate else None
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self.deadline = deadline
        self._clock = clock
        self._lock = threading.Lock()
        self._reached = False
        self._requests = 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.base_url!r})"

    def url_for(self, path: str) -> str:
        return urljoin(self.base_url, quote(path, safe="/"))

    def cancel(self) -> None:
        """Abort running and future fetches."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def reached(self) -> bool:
        """Whether the server has answered at least one request."""
        with self._lock:
            return self._reached

    @property
    def request_count(self) -> int:
        with self._lock:
            return self._requests

    def close(self) -> None:
        self.pool_manager.clear()

    def fetch(self, path: str) -> FetchOutcome:
        """Fetch a path relative to the base URL.

        Transient failures are retried with exponential backoff; the
        returned outcome is never TRANSIENT.

        Args:
          path: Path below the git directory, e.g. "objects/ab/cdef..."
        Returns: a FetchOutcome
        """
        url = self.url_for(path)
        backoff = Backoff(self.retries, self.backoff_base, self.backoff_cap)
        while True:
            if self._cancel.is_set():
                return FetchOutcome(path, FetchStatus.FAILED, reason="cancelled")
            if self._rate_limiter is not None and not self._rate_limiter.acquire(
                self._cancel
            ):
                return FetchOutcome(path, FetchStatus.FAILED, reason="cancelled")
            outcome = self._fetch_once(path, url)
            outcome.attempts = backoff.attempt + 1
            if outcome.status is not FetchStatus.TRANSIENT:
                return outcome
            delay = backoff.next_delay(outcome.retry_after)
            if delay is None:
                logger.debug("giving up on %s: %s", url, outcome.reason)
                return FetchOutcome(
                    path,
                    FetchStatus.FAILED,
                    http_status=outcome.http_status,
                    reason=f"{outcome.reason} (after {outcome.attempts} attempts)",
                    attempts=outcome.attempts,
                )
            logger.debug("retrying %s in %.1fs: %s", url, delay, outcome.reason)
            if self._cancel.wait(delay):
                return FetchOutcome(path, FetchStatus.FAILED, reason="cancelled")

    def _connection_failure(self, path: str, exc: Exception) -> FetchOutcome:
        with self._lock:
            reached = self._reached
        if reached:
            return FetchOutcome(path, FetchStatus.TRANSIENT, reason=str(exc))
        return FetchOutcome(path, FetchStatus.FATAL, reason=str(exc))

    def _classify_error(self, path: str, exc: Exception) -> FetchOutcome:
        if isinstance(exc, urllib3.exceptions.MaxRetryError) and exc.reason is not None:
            exc = exc.reason
        # NewConnectionError (and NameResolutionError) subclass
        # ConnectTimeoutError, so check them first.
        if isinstance(
            exc,
            (
                urllib3.exceptions.NewConnectionError,
                urllib3.exceptions.SSLError,
                urllib3.exceptions.ProxyError,
                urllib3.exceptions.LocationParseError,
            ),
        ):
            return self._connection_failure(path, exc)
        return FetchOutcome(path, FetchStatus.TRANSIENT, reason=str(exc))

    def _fetch_once(self, path: str, url: str) -> FetchOutcome:
        started = self._clock()
        req_headers = dict(self.pool_manager.headers)
        req_headers["Pragma"] = "no-cache"
        with self._lock:
            self._requests += 1
        try:
            resp = self.pool_manager.request(
                "GET",
                url,
                headers=req_headers,
                preload_content=False,
                timeout=self._timeout,
                retries=self._retry,
            )
        except urllib3.exceptions.HTTPError as e:
            return self._classify_error(path, e)

        with self._lock:
            self._reached = True
        status = resp.status
        try:
            if status == 200:
                limit = self.max_size
            else:
                limit = _ERROR_BODY_LIMIT
            body = self._read_body(resp, limit, started)
        except urllib3.exceptions.HTTPError as e:
            resp.close()
            return FetchOutcome(path, FetchStatus.TRANSIENT, http_status=status, reason=str(e))
        except _ReadAborted as e:
            resp.close()
            logger.debug("GET %s aborted: %s", url, e.reason)
            return FetchOutcome(path, e.status, http_status=status, reason=e.reason)

        logger.debug("GET %s -> %d", url, status)
        if status == 200:
            if body is None:
                return FetchOutcome(
                    path,
                    FetchStatus.FAILED,
                    http_status=status,
                    reason=f"response larger than {self.max_size} bytes",
                )
            if self.html_as_missing and _looks_like_html(body):
                return FetchOutcome(
                    path, FetchStatus.NOT_FOUND, http_status=status, reason="HTML page"
                )
            return FetchOutcome(path, FetchStatus.OK, data=body, http_status=status)
        if status in NOT_FOUND_STATUSES:
            return FetchOutcome(path, FetchStatus.NOT_FOUND, http_status=status)
        if status in FORBIDDEN_STATUSES:
            return FetchOutcome(
                path, FetchStatus.FORBIDDEN, http_status=status, reason=f"HTTP {status}"
            )
        if status in TRANSIENT_STATUSES or 500 <= status < 600:
            return FetchOutcome(
                path,
                FetchStatus.TRANSIENT,
                http_status=status,
                reason=f"HTTP {status}",
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )
        return FetchOutcome(
            path,
            FetchStatus.FAILED,
            http_status=status,
            reason=f"unexpected HTTP status {status}",
        )

    def _read_body(
        self, resp: urllib3.HTTPResponse, limit: int, started: float
    ) -> Optional[bytes]:
        """Read a response body of at most ``limit`` bytes.

        The read timeout only bounds each socket read, so the deadline and
        the cancel event are checked between chunks.

        Returns: the body, or None if it is larger than ``limit``; the
          connection is closed in that case.
        Raises:
          _ReadAborted: if the crawl was cancelled or the deadline passed
        """
        chunks = []
        total = 0
        while True:
            if self._cancel.is_set():
                raise _ReadAborted(FetchStatus.FAILED, "cancelled")
            if self.deadline is not None and self._clock() - started > self.deadline:
                raise _ReadAborted(
                    FetchStatus.TRANSIENT, f"no complete response within {self.deadline}s"
                )
            chunk = resp.read(_CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > limit:
                resp.close()
                return None
            chunks.append(chunk)
        resp.release_conn()
        return b"".join(chunks)
