# reflog.py -- Parsing of recovered reflogs and FETCH_HEAD
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

"""Utilities for reading reflogs."""

import collections
import re
from collections.abc import Iterable, Iterator

from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .objects import ObjectID, valid_hexsha

Entry = collections.namedtuple(
    "Entry",
    ["old_sha", "new_sha", "committer", "timestamp", "timezone", "message"],
)

_CHECKOUT_RE = re.compile(rb"^checkout: moving from (\S+) to (\S+)$")
_FETCH_HEAD_BRANCH_RE = re.compile(rb"\bbranch '([^']+)' of ")


def parse_reflog_line(line: bytes) -> Entry:
    """Parse a reflog line.

    Args:
      line: Line to parse
    Returns: Tuple of (old_sha, new_sha, committer, timestamp, timezone,
        message)
    Raises:
      ValueError: if the line is not a reflog entry
    """
    (begin, message) = line.split(b"\t", 1) if b"\t" in line else (line, b"")
    (old_sha, new_sha, rest) = begin.split(b" ", 2)
    (committer, timestamp_str, timezone_str) = rest.rsplit(b" ", 2)
    return Entry(
        old_sha,
        new_sha,
        committer,
        int(timestamp_str),
        timezone_str,
        message,
    )


def read_reflog(f: Iterable[bytes]) -> Iterator[Entry]:
    """Read reflog.

    Args:
      f: File-like object
    Returns: Iterator over Entry objects
    """
    for line in f:
        line = line.rstrip(b"\r\n")
        if line:
            yield parse_reflog_line(line)


def reflog_object_ids(
    entries: Iterable[Entry], object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> list[ObjectID]:
    """Collect the commit ids mentioned by reflog entries.

    The all-zero id that marks ref creation is skipped.
    """
    ret: dict[ObjectID, None] = {}
    for entry in entries:
        for sha in (entry.old_sha, entry.new_sha):
            if sha != object_format.zero_oid and valid_hexsha(sha, object_format):
                ret[sha] = None
    return list(ret)


def reflog_branch_names(entries: Iterable[Entry]) -> list[bytes]:
    """Branch names mentioned by "checkout: moving from A to B" messages.

    Detached checkouts name commits rather than branches; callers filter
    out anything that is not a valid ref name.
    """
    ret: dict[bytes, None] = {}
    for entry in entries:
        m = _CHECKOUT_RE.match(entry.message.rstrip())
        if m:
            ret[m.group(1)] = None
            ret[m.group(2)] = None
    return list(ret)


def read_fetch_head(
    f: Iterable[bytes], object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> list[tuple[ObjectID, bytes]]:
    """Read FETCH_HEAD.

    Each line is ``<sha> TAB [not-for-merge] TAB <description>``.

    Returns: list of (sha, branch name or empty bytes)
    Raises:
      ValueError: if a line does not start with an object id
    """
    ret = []
    for line in f:
        line = line.rstrip(b"\r\n")
        if not line:
            continue
        sha, _, rest = line.partition(b"\t")
        if not valid_hexsha(sha, object_format):
            raise ValueError(f"invalid FETCH_HEAD line {line!r}")
        m = _FETCH_HEAD_BRANCH_RE.search(rest)
        ret.append((sha, m.group(1) if m else b""))
    return ret
