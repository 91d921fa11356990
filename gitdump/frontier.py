# frontier.py -- Pending work for a crawl
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

"""The crawl frontier: a work queue that never hands out a target twice.

Every target ever offered is remembered, so a graph with cycles (or the
same blob referenced from a thousand trees) is still fetched at most once.
The frontier closes itself once it is empty and no taken target is still
being processed.
"""

import collections
import re
import threading
from dataclasses import dataclass
from typing import Optional

from .objects import ObjectID, object_path, valid_hexsha

_OBJECT_PATH_RE = re.compile(r"^objects/([0-9a-f]{2})/([0-9a-f]{38}|[0-9a-f]{62})$")


@dataclass(frozen=True)
class FetchTarget:
    """Something to fetch: either a loose object or a metadata path.

    Use for_object() or for_path() rather than the constructor.
    """

    path: str
    object_id: Optional[ObjectID] = None

    @classmethod
    def for_object(cls, object_id: ObjectID) -> "FetchTarget":
        if not valid_hexsha(object_id):
            raise ValueError(f"invalid object id {object_id!r}")
        return cls(object_path(object_id), object_id)

    @classmethod
    def for_path(cls, path: str) -> "FetchTarget":
        """Create a target for a path below the git directory.

        A literal loose object path becomes an object target, so that both
        spellings share one key.
        """
        m = _OBJECT_PATH_RE.match(path)
        if m:
            return cls.for_object((m.group(1) + m.group(2)).encode("ascii"))
        return cls(path)

    @property
    def is_object(self) -> bool:
        return self.object_id is not None

    @property
    def key(self) -> str:
        """Deduplication key; the path is unique for both kinds."""
        return self.path

    def __str__(self) -> str:
        return self.path


class Frontier:
    """Thread-safe queue of pending FetchTargets plus the set of seen ones.

    A worker calls take(), processes the target, offers whatever it
    discovered and only then calls task_done(). Because of that ordering
    the frontier can close on quiescence without missing work.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: collections.deque[FetchTarget] = collections.deque()
        self._seen: set[str] = set()
        self._in_flight = 0
        self._closed = False

    def offer(self, target: FetchTarget) -> bool:
        """Enqueue a target unless it has been seen before.

        Returns: True if the target was enqueued
        """
        with self._cond:
            if self._closed or target.key in self._seen:
                return False
            self._seen.add(target.key)
            self._queue.append(target)
            self._cond.notify()
            return True

    def mark_seen(self, target: FetchTarget) -> bool:
        """Record a target as seen without queueing it.

        Returns: True if the target had not been seen before
        """
        with self._cond:
            if target.key in self._seen:
                return False
            self._seen.add(target.key)
            return True

    def take(self, timeout: Optional[float] = None) -> Optional[FetchTarget]:
        """Remove and return the next target.

        Blocks until a target is available or the frontier is closed.

        Args:
          timeout: Give up after this many seconds
        Returns: the next target, or None if the frontier is closed or the
          timeout expired
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._queue or self._closed, timeout=timeout
            ):
                return None
            if self._closed:
                return None
            self._in_flight += 1
            return self._queue.popleft()

    def task_done(self) -> None:
        """Mark a previously taken target as finished."""
        with self._cond:
            if self._in_flight <= 0:
                raise ValueError("task_done() called too many times")
            self._in_flight -= 1
            if self._in_flight == 0 and not self._queue:
                self._closed = True
                self._cond.notify_all()

    def close(self) -> None:
        """Close the frontier, dropping any queued targets."""
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()

    def check_quiescent(self) -> bool:
        """Close the frontier if there is nothing to do.

        Needed when nothing was ever queued, since task_done() is then
        never called.
        """
        with self._cond:
            if self._in_flight == 0 and not self._queue:
                self._closed = True
                self._cond.notify_all()
            return self._closed

    @property
    def is_quiescent(self) -> bool:
        with self._cond:
            return self._in_flight == 0 and not self._queue

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def seen_count(self) -> int:
        with self._cond:
            return len(self._seen)

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def __contains__(self, target: object) -> bool:
        if isinstance(target, FetchTarget):
            key = target.key
        elif isinstance(target, str):
            key = target
        else:
            return False
        with self._cond:
            return key in self._seen
