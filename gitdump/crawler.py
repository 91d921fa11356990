# crawler.py -- Recovering a repository from an exposed git directory
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

"""Crawl an exposed git directory to closure.

The crawl starts from what the Discoverer finds, then a pool of worker
threads takes targets from the Frontier, fetches them, verifies and stores
them and offers whatever they reference. It ends when the Frontier is
empty and no worker is busy, when the host turns out to be unreachable, or
when cancel() is called.

Objects already present in the store (from an earlier, interrupted crawl)
are read locally instead of fetched, so running a crawl twice against the
same directory is cheap and yields the same result.
"""

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional, Union

from .client import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_CAP,
    DEFAULT_DEADLINE,
    DEFAULT_MAX_SIZE,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    FetchOutcome,
    FetchStatus,
    HttpTransport,
)
from .codec import decode
from .discover import Discoverer, Transport, apply_metadata
from .errors import FatalTransportError, NotGitRepository
from .file import FileLocked
from .frontier import FetchTarget, Frontier
from .log_utils import getLogger
from .object_store import DiskObjectStore
from .objects import ObjectID, valid_hexsha
from .refs import HEADREF, Ref, RefMap

logger = getLogger(__name__)

DEFAULT_WORKERS = 8

STATUS_FATAL = "fatal"
STATUS_CANCELLED = "cancelled"
STATUS_NOT_EXPOSED = "not-exposed"
STATUS_EMPTY = "empty"
STATUS_PARTIAL = "partial"
STATUS_COMPLETE = "complete"


@dataclass
class CrawlOptions:
    """Tunables for a crawl; the defaults suit most servers."""

    workers: int = DEFAULT_WORKERS
    timeout: float = DEFAULT_TIMEOUT
    # Wall clock limit for one attempt including the body; None for no limit
    deadline: Optional[float] = DEFAULT_DEADLINE
    retries: int = DEFAULT_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_cap: float = DEFAULT_BACKOFF_CAP
    # Requests per second across all workers; None for no limit
    rate: Optional[float] = None
    burst: Optional[float] = None
    proxy: Optional[str] = None
    verify_ssl: bool = True
    ca_certs: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    user_agent: Optional[str] = None
    max_object_size: int = DEFAULT_MAX_SIZE
    html_as_missing: bool = True
    ref_precedence: Optional[Mapping[str, int]] = None

    def make_transport(
        self, base_url: str, cancel_event: Optional[threading.Event] = None
    ) -> HttpTransport:
        """Build an HttpTransport configured from these options."""
        return HttpTransport(
            base_url,
            timeout=self.timeout,
            retries=self.retries,
            backoff_base=self.backoff_base,
            backoff_cap=self.backoff_cap,
            rate=self.rate,
            burst=self.burst,
            proxy=self.proxy,
            verify_ssl=self.verify_ssl,
            ca_certs=self.ca_certs,
            headers=self.headers,
            user_agent=self.user_agent,
            max_size=self.max_object_size,
            html_as_missing=self.html_as_missing,
            cancel_event=cancel_event,
            maxsize=self.workers,
            deadline=self.deadline,
        )


@dataclass
class CrawlSummary:
    """What a crawl achieved.

    Attributes:
      recovered: Ids of objects written by this crawl
      reused: Ids of objects that were already in the store
      corrupt: Objects that failed verification, id to reason
      failed: Targets that could not be fetched, path to reason
      missing: Metadata paths the server does not have
      forbidden: Paths the server refused to serve
      invalid: Metadata files that could not be parsed, path to reason
      refs: Resolved refs
      symrefs: Symbolic refs
      files: Metadata files written
      pack_files: Pack files named by the server; never fetched
      object_format: Name of the object format
      exposed: False if the URL does not serve a git directory
      fatal: Why the crawl had to stop, if it did
      cancelled: Whether the crawl was cancelled
    """

    recovered: list[ObjectID] = field(default_factory=list)
    reused: list[ObjectID] = field(default_factory=list)
    corrupt: dict[ObjectID, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    invalid: dict[str, str] = field(default_factory=dict)
    refs: dict[Ref, ObjectID] = field(default_factory=dict)
    symrefs: dict[Ref, Ref] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)
    pack_files: list[str] = field(default_factory=list)
    object_format: str = "sha1"
    exposed: bool = True
    fatal: Optional[str] = None
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.fatal is not None:
            return STATUS_FATAL
        if self.cancelled:
            return STATUS_CANCELLED
        if not self.exposed:
            return STATUS_NOT_EXPOSED
        if not self.recovered and not self.reused:
            return STATUS_EMPTY
        if self.failed or self.corrupt:
            return STATUS_PARTIAL
        return STATUS_COMPLETE

    @property
    def ok(self) -> bool:
        """Whether the crawl ran to completion."""
        return self.status in (STATUS_COMPLETE, STATUS_PARTIAL, STATUS_EMPTY)

    @property
    def object_count(self) -> int:
        return len(self.recovered) + len(self.reused)


class Crawler:
    """Drives a crawl: discovery, then worker threads until quiescence."""

    def __init__(
        self,
        transport: Transport,
        store: DiskObjectStore,
        options: Optional[CrawlOptions] = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.options = options if options is not None else CrawlOptions()
        self.frontier = Frontier()
        self.refs = RefMap(self.options.ref_precedence)
        self._summary = CrawlSummary()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._errors: list[BaseException] = []

    @classmethod
    def for_url(
        cls,
        url: str,
        gitdir: Union[str, os.PathLike],
        options: Optional[CrawlOptions] = None,
    ) -> "Crawler":
        """Create a crawler that recovers ``url`` into ``gitdir``."""
        options = options if options is not None else CrawlOptions()
        return cls(options.make_transport(url), DiskObjectStore(gitdir), options)

    @property
    def _url(self) -> str:
        return getattr(self.transport, "base_url", repr(self.transport))

    def cancel(self) -> None:
        """Stop the crawl as soon as possible; safe to call from any thread."""
        self._cancelled.set()
        self.transport.cancel()
        self.frontier.close()

    def run(self, raise_on_fatal: bool = False) -> CrawlSummary:
        """Run the crawl to completion.

        Args:
          raise_on_fatal: Raise FatalTransportError instead of returning a
            summary with ``fatal`` set, and NotGitRepository when the URL
            does not expose a git directory
        Returns: a CrawlSummary
        """
        summary = self._summary
        self.store.init()
        discovery = Discoverer(self.transport, self.store, self.frontier, self.refs).run()
        summary.files.extend(discovery.files)
        summary.missing.extend(discovery.missing)
        summary.forbidden.extend(discovery.forbidden)
        summary.failed.update(discovery.failed)
        summary.invalid.update(discovery.invalid)
        summary.pack_files.extend(discovery.pack_names)
        summary.object_format = discovery.object_format.name
        summary.exposed = discovery.exposed

        if discovery.fatal is not None:
            summary.fatal = discovery.fatal
            self.frontier.close()
            if raise_on_fatal:
                raise FatalTransportError(self._url, summary.fatal)
            return summary
        if discovery.cancelled or self._cancelled.is_set():
            summary.cancelled = True
            self.frontier.close()
            return summary
        if not discovery.exposed:
            logger.warning("not exposing a git directory")
            self.frontier.close()
            if raise_on_fatal:
                raise NotGitRepository(self._url)
            return summary

        seeded = 0
        for sha in self.store.iter_loose_objects():
            if self.frontier.offer(FetchTarget.for_object(sha)):
                seeded += 1
        if seeded:
            logger.info("resuming with %d objects already present", seeded)

        self.frontier.check_quiescent()
        threads = [
            threading.Thread(
                target=self._worker, name=f"gitdump-worker-{i}", daemon=True
            )
            for i in range(max(1, self.options.workers))
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if self._errors:
            raise self._errors[0]

        summary.refs = self.refs.as_dict()
        summary.symrefs = self.refs.symrefs()
        if summary.fatal is not None:
            if raise_on_fatal:
                raise FatalTransportError(self._url, summary.fatal)
            return summary
        if self._cancelled.is_set():
            summary.cancelled = True
            return summary

        self._write_refs()
        logger.info(
            "%s: %d objects recovered, %d already present, %d corrupt, %d failed",
            summary.status,
            len(summary.recovered),
            len(summary.reused),
            len(summary.corrupt),
            len(summary.failed),
        )
        return summary

    def _worker(self) -> None:
        while True:
            target = self.frontier.take()
            if target is None:
                return
            try:
                if target.is_object:
                    self._process_object(target)
                else:
                    self._process_path(target)
            except BaseException as exc:
                with self._lock:
                    self._errors.append(exc)
                self.cancel()
                raise
            finally:
                self.frontier.task_done()

    def _fatal(self, reason: str) -> None:
        with self._lock:
            if self._summary.fatal is None:
                self._summary.fatal = reason
        logger.error("giving up: %s", reason)
        self.transport.cancel()
        self.frontier.close()

    def _fail(self, target: FetchTarget, reason: str) -> None:
        logger.warning("unable to fetch %s: %s", target, reason)
        with self._lock:
            self._summary.failed[target.key] = reason

    def _handle_error_outcome(self, target: FetchTarget, outcome: FetchOutcome) -> None:
        status = outcome.status
        reason = outcome.reason or status.value
        if status is FetchStatus.FATAL:
            self._fatal(reason)
        elif status is FetchStatus.FAILED and self.transport.cancelled:
            # Cancelled mid-fetch; not a property of the target.
            pass
        elif status is FetchStatus.NOT_FOUND and not target.is_object:
            logger.debug("%s not found", target)
            with self._lock:
                self._summary.missing.append(target.path)
        elif status is FetchStatus.FORBIDDEN and not target.is_object:
            with self._lock:
                self._summary.forbidden.append(target.path)
        else:
            if status is FetchStatus.FORBIDDEN:
                with self._lock:
                    self._summary.forbidden.append(target.path)
            self._fail(target, reason)

    def _offer_all(self, targets: list[FetchTarget]) -> None:
        for new_target in targets:
            self.frontier.offer(new_target)

    def _process_object(self, target: FetchTarget) -> None:
        sha = target.object_id
        assert sha is not None
        object_format = self.store.object_format
        max_size = self.options.max_object_size
        if not valid_hexsha(sha, object_format):
            self._fail(target, f"not a {object_format} object id")
            return
        if self.store.contains(sha):
            decoded = decode(target, self.store.get_raw(sha), object_format, max_size)
            if decoded.valid:
                with self._lock:
                    self._summary.reused.append(sha)
                self._offer_all(decoded.targets)
                return
            logger.warning(
                "stored copy of %s is corrupt (%s), fetching again",
                sha.decode("ascii"),
                decoded.error,
            )
            self.store.delete_loose_object(sha)

        outcome = self.transport.fetch(target.path)
        if not outcome.ok:
            self._handle_error_outcome(target, outcome)
            return
        decoded = decode(target, outcome.data, object_format, max_size)
        if not decoded.valid:
            logger.warning("corrupt object %s: %s", sha.decode("ascii"), decoded.error)
            with self._lock:
                self._summary.corrupt[sha] = decoded.error or "corrupt"
            return
        try:
            written = self.store.add_raw(sha, outcome.data)
        except (OSError, FileLocked) as e:
            self._fail(target, f"unable to store: {e}")
            return
        with self._lock:
            if written:
                self._summary.recovered.append(sha)
            else:
                self._summary.reused.append(sha)
        if written and decoded.obj is not None:
            logger.info(
                "recovered %s %s",
                decoded.obj.type_name.decode("ascii"),
                sha.decode("ascii"),
            )
        self._offer_all(decoded.targets)

    def _process_path(self, target: FetchTarget) -> None:
        outcome = self.transport.fetch(target.path)
        if not outcome.ok:
            self._handle_error_outcome(target, outcome)
            return
        decoded = decode(target, outcome.data, self.store.object_format)
        if not decoded.valid:
            with self._lock:
                self._summary.invalid[target.path] = decoded.error or "invalid"
        try:
            written = apply_metadata(
                decoded, outcome.data, self.store, self.refs, self.frontier
            )
        except (OSError, ValueError, FileLocked) as e:
            self._fail(target, f"unable to store: {e}")
            return
        with self._lock:
            if written is not None:
                self._summary.files.append(written)
            self._summary.pack_files.extend(decoded.pack_names)

    def _write_refs(self) -> None:
        """Write loose ref files for refs only known from packed-refs and friends."""
        refs = self.refs.as_dict()
        for name, sha in sorted(refs.items()):
            if not name.startswith(b"refs/"):
                continue
            try:
                path = name.decode("utf-8")
                if self.store.has_file(path):
                    continue
                if not self.store.contains(sha):
                    logger.warning(
                        "not writing ref %s: object %s was not recovered",
                        path,
                        sha.decode("ascii"),
                    )
                    continue
                self.store.write_ref(name, sha)
            except ValueError as e:
                logger.warning("not writing ref %r: %s", name, e)
                continue
            self._summary.files.append(path)
        if not self.store.has_file("HEAD"):
            branch = self.store.default_branch(refs)
            if branch is not None:
                self.store.write_symref(HEADREF, branch)
                logger.info(
                    "HEAD was not served; pointing it at %s", branch.decode("utf-8")
                )
