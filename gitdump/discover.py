# discover.py -- Bootstrapping a crawl from well-known files
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

"""Discovery of the first objects to fetch.

Without a directory listing, the only way in is to ask for files every
git directory is likely to have. Their contents name refs and objects,
which seed the crawl.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from .client import FetchOutcome, FetchStatus
from .codec import DecodeResult, decode
from .frontier import FetchTarget, Frontier
from .log_utils import getLogger
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .object_store import DiskObjectStore
from .refs import RefMap

logger = getLogger(__name__)

# Probed in this order; config comes early since it decides the object
# format.
BOOTSTRAP_PATHS = (
    "HEAD",
    "config",
    "description",
    "packed-refs",
    "info/refs",
    "logs/HEAD",
    "index",
    "COMMIT_EDITMSG",
    "ORIG_HEAD",
    "FETCH_HEAD",
    "info/exclude",
    "refs/heads/main",
    "refs/heads/master",
    "refs/remotes/origin/HEAD",
    "refs/stash",
    "objects/info/packs",
)


class Transport(Protocol):
    """What the crawl needs from a transport; see client.HttpTransport."""

    def fetch(self, path: str) -> FetchOutcome: ...

    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


def apply_metadata(
    decoded: DecodeResult,
    raw: bytes,
    store: DiskObjectStore,
    refs: RefMap,
    frontier: Frontier,
) -> Optional[str]:
    """Persist a decoded metadata file and act on what it names.

    Invalid files are neither stored nor expanded.

    Returns: the path written, or None
    """
    if not decoded.valid:
        logger.warning("ignoring unparseable %s: %s", decoded.target, decoded.error)
        return None
    path = decoded.target.path
    if path == "config":
        store.write_config(raw)
    else:
        store.write_file(path, raw)
    logger.info("recovered %s", path)
    for name, sha, source in decoded.refs:
        refs.set(name, sha, source)
    for name, target in decoded.symrefs.items():
        refs.set_symbolic(name, target)
    for pack_name in decoded.pack_names:
        logger.warning("pack file %s can not be recovered", pack_name)
    for target in decoded.targets:
        frontier.offer(target)
    return path


@dataclass
class DiscoveryResult:
    """Outcome of probing the bootstrap paths."""

    exposed: bool = False
    fatal: Optional[str] = None
    cancelled: bool = False
    object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
    files: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    invalid: dict[str, str] = field(default_factory=dict)
    pack_names: list[str] = field(default_factory=list)


class Discoverer:
    """Fetches the bootstrap paths one by one and seeds the frontier."""

    def __init__(
        self,
        transport: Transport,
        store: DiskObjectStore,
        frontier: Frontier,
        refs: Optional[RefMap] = None,
        paths: tuple[str, ...] = BOOTSTRAP_PATHS,
    ) -> None:
        self.transport = transport
        self.store = store
        self.frontier = frontier
        self.refs = refs if refs is not None else RefMap()
        self.paths = paths

    def run(self) -> DiscoveryResult:
        """Probe every bootstrap path.

        Returns: a DiscoveryResult; ``exposed`` is False when no path
          could be fetched at all
        """
        result = DiscoveryResult()
        fetched: list[tuple[FetchTarget, bytes]] = []
        for path in self.paths:
            target = FetchTarget.for_path(path)
            self.frontier.mark_seen(target)
            outcome = self.transport.fetch(path)
            if outcome.status is FetchStatus.OK:
                fetched.append((target, outcome.data))
            elif outcome.status is FetchStatus.NOT_FOUND:
                result.missing.append(path)
            elif outcome.status is FetchStatus.FORBIDDEN:
                result.forbidden.append(path)
            elif outcome.status is FetchStatus.FATAL:
                logger.error("unable to reach %s: %s", path, outcome.reason)
                result.fatal = outcome.reason or "host unreachable"
                return result
            elif self.transport.cancelled:
                result.cancelled = True
                return result
            else:
                logger.warning("unable to fetch %s: %s", path, outcome.reason)
                result.failed[path] = outcome.reason or outcome.status.value

        if not fetched:
            logger.info("no bootstrap file could be fetched")
            return result
        result.exposed = True

        # The object format has to be known before any id is parsed.
        for target, raw in fetched:
            if target.path == "config":
                decoded = decode(target, raw)
                if decoded.object_format is not None:
                    result.object_format = decoded.object_format
                    self.store.object_format = decoded.object_format
                    logger.info("object format is %s", decoded.object_format)

        for target, raw in fetched:
            decoded = decode(target, raw, result.object_format)
            if not decoded.valid:
                result.invalid[target.path] = decoded.error or "invalid"
            written = apply_metadata(decoded, raw, self.store, self.refs, self.frontier)
            if written is not None:
                result.files.append(written)
            result.pack_names.extend(decoded.pack_names)
        return result

