# refs.py -- Parsing of recovered git refs
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

"""Ref handling.

Refs reach us from several files that may disagree: HEAD and loose ref
files, packed-refs, and info/refs. RefMap resolves the disagreement with a
per-source precedence.
"""

import threading
from collections.abc import Iterator, Mapping
from typing import IO, Optional

from .errors import PackedRefsException, RefFormatError
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .objects import ObjectID, valid_hexsha

Ref = bytes

HEADREF = b"HEAD"
SYMREF = b"ref: "
LOCAL_BRANCH_PREFIX = b"refs/heads/"
LOCAL_TAG_PREFIX = b"refs/tags/"
LOCAL_REMOTE_PREFIX = b"refs/remotes/"
BAD_REF_CHARS = set(b"\177 ~^:?*[")
PEELED_TAG_SUFFIX = b"^{}"

# Pseudo-refs that live at the top of the git directory.
PSEUDO_REFS = frozenset([b"HEAD", b"ORIG_HEAD", b"FETCH_HEAD", b"MERGE_HEAD", b"CHERRY_PICK_HEAD"])

# Ref sources, in the order they are usually trusted.
SOURCE_LOOSE = "loose"
SOURCE_PACKED = "packed"
SOURCE_INFO = "info"
# Last values recorded in reflogs; only used when nothing better is known.
SOURCE_HINT = "hint"

DEFAULT_REF_PRECEDENCE: Mapping[str, int] = {
    SOURCE_LOOSE: 2,
    SOURCE_PACKED: 1,
    SOURCE_INFO: 1,
    SOURCE_HINT: 0,
}


def parse_symref_value(contents: bytes) -> bytes:
    """Parse a symref value.

    Args:
      contents: Contents to parse
    Returns: Destination
    """
    if contents.startswith(SYMREF):
        return contents[len(SYMREF) :].rstrip(b"\r\n")
    raise ValueError(contents)


def check_ref_format(refname: Ref) -> bool:
    """Check if a refname is correctly formatted.

    Implements all the same rules as git-check-ref-format[1].

    [1]
    http://www.kernel.org/pub/software/scm/git/docs/git-check-ref-format.html

    Args:
      refname: The refname to check
    Returns: True if refname is valid, False otherwise
    """
    if not refname:
        return False
    if b"/." in refname or refname.startswith(b"."):
        return False
    if b"/" not in refname:
        return False
    if b".." in refname:
        return False
    if b"//" in refname or refname.startswith(b"/"):
        return False
    for i, c in enumerate(refname):
        if ord(refname[i : i + 1]) < 0o40 or c in BAD_REF_CHARS:
            return False
    if refname[-1] in b"/.":
        return False
    if refname.endswith(b".lock"):
        return False
    if b"@{" in refname:
        return False
    if b"\\" in refname:
        return False
    return True


def is_fetchable_ref(refname: Ref) -> bool:
    """Check whether a ref name may be turned into a path to fetch and store.

    Only well-formed names below refs/ and the known pseudo-refs qualify;
    names come from untrusted files and must never escape the git directory.
    """
    if refname in PSEUDO_REFS:
        return True
    return refname.startswith(b"refs/") and check_ref_format(refname)


def read_ref_file(
    contents: bytes, object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> tuple[Optional[ObjectID], Optional[Ref]]:
    """Parse the contents of a loose ref file or HEAD.

    Returns: tuple of (sha, None) for a direct ref, or (None, target) for a
      symbolic ref
    Raises:
      RefFormatError: if the contents are neither
    """
    if contents.startswith(SYMREF):
        target = parse_symref_value(contents).strip()
        if not is_fetchable_ref(target):
            raise RefFormatError(f"invalid symref target {target!r}")
        return None, target
    # FETCH_HEAD-style trailing data is not valid here; a ref file holds
    # exactly one id.
    sha = contents.strip()
    if not valid_hexsha(sha, object_format):
        raise RefFormatError(f"invalid ref contents {contents[:80]!r}")
    return sha, None


def _split_ref_line(
    line: bytes, object_format: ObjectFormat
) -> tuple[ObjectID, Ref]:
    """Split a single ref line into a tuple of SHA1 and name."""
    fields = line.rstrip(b"\n\r").split(b" ")
    if len(fields) != 2:
        raise PackedRefsException(f"invalid ref line {line!r}")
    sha, name = fields
    if not valid_hexsha(sha, object_format):
        raise PackedRefsException(f"Invalid hex sha {sha!r}")
    if not check_ref_format(name):
        raise PackedRefsException(f"invalid ref name {name!r}")
    return (sha, name)


def read_packed_refs_with_peeled(
    f: IO[bytes], object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> Iterator[tuple[ObjectID, Ref, Optional[ObjectID]]]:
    """Read a packed refs file including peeled refs.

    Yields tuples with SHA1s, ref names, and peeled SHA1s (or None). The
    "# pack-refs with:" header line is optional.

    Args:
      f: file-like object to read from
      object_format: Format of the ids in the file
    """
    last = None
    for line in f:
        if line.startswith(b"#"):
            continue
        line = line.rstrip(b"\r\n")
        if not line:
            continue
        if line.startswith(b"^"):
            if not last:
                raise PackedRefsException("unexpected peeled ref line")
            if not valid_hexsha(line[1:], object_format):
                raise PackedRefsException(f"Invalid hex sha {line[1:]!r}")
            sha, name = _split_ref_line(last, object_format)
            last = None
            yield (sha, name, line[1:])
        else:
            if last:
                sha, name = _split_ref_line(last, object_format)
                yield (sha, name, None)
            last = line
    if last:
        sha, name = _split_ref_line(last, object_format)
        yield (sha, name, None)


def read_info_refs(
    f: IO[bytes], object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> dict[Ref, ObjectID]:
    """Read info/refs file.

    Args:
      f: File-like object to read from
      object_format: Format of the ids in the file

    Returns:
      Dictionary mapping ref names to SHA1s; peeled entries keep their
      ``^{}`` suffix
    """
    ret = {}
    for line in f.readlines():
        line = line.rstrip(b"\r\n")
        if not line:
            continue
        try:
            (sha, name) = line.split(b"\t", 1)
        except ValueError as exc:
            raise PackedRefsException(f"invalid info/refs line {line!r}") from exc
        if not valid_hexsha(sha, object_format):
            raise PackedRefsException(f"Invalid hex sha {sha!r}")
        if name.endswith(PEELED_TAG_SUFFIX):
            check_name = name[: -len(PEELED_TAG_SUFFIX)]
        else:
            check_name = name
        if not check_ref_format(check_name):
            raise PackedRefsException(f"invalid ref name {name!r}")
        ret[name] = sha
    return ret


def split_peeled_refs(
    refs: Mapping[Ref, ObjectID],
) -> tuple[dict[Ref, ObjectID], dict[Ref, ObjectID]]:
    """Split peeled refs from regular refs."""
    peeled: dict[Ref, ObjectID] = {}
    regular = {k: v for k, v in refs.items() if not k.endswith(PEELED_TAG_SUFFIX)}
    for ref, sha in refs.items():
        if ref.endswith(PEELED_TAG_SUFFIX):
            peeled[ref[: -len(PEELED_TAG_SUFFIX)]] = sha
    return regular, peeled


def ref_log_path(refname: Ref) -> str:
    """Return the reflog path for a ref, e.g. logs/refs/heads/main.

    Raises:
      UnicodeDecodeError: if the name is not valid UTF-8
    """
    return "logs/" + refname.decode("utf-8")


class RefMap:
    """Thread-safe mapping of recovered refs with source precedence.

    A value coming from a source with lower precedence never replaces a
    value recorded from a source with higher precedence; between sources
    of equal precedence the last write wins.
    """

    def __init__(self, precedence: Optional[Mapping[str, int]] = None) -> None:
        """Create an empty RefMap.

        Args:
          precedence: Mapping of source name to precedence; defaults to
            DEFAULT_REF_PRECEDENCE (loose refs beat packed-refs/info/refs)
        """
        self._precedence = dict(
            DEFAULT_REF_PRECEDENCE if precedence is None else precedence
        )
        self._lock = threading.Lock()
        self._refs: dict[Ref, tuple[ObjectID, int]] = {}
        self._symrefs: dict[Ref, Ref] = {}

    def set(self, name: Ref, sha: ObjectID, source: str) -> bool:
        """Record a ref value from a source.

        Returns: True if the value was recorded
        """
        priority = self._precedence.get(source, 0)
        with self._lock:
            current = self._refs.get(name)
            if current is not None and current[1] > priority:
                return False
            self._refs[name] = (sha, priority)
            return True

    def set_symbolic(self, name: Ref, target: Ref) -> None:
        """Record that ``name`` is a symbolic ref pointing at ``target``."""
        with self._lock:
            self._symrefs[name] = target

    def get(self, name: Ref) -> Optional[ObjectID]:
        with self._lock:
            entry = self._refs.get(name)
        return None if entry is None else entry[0]

    def as_dict(self) -> dict[Ref, ObjectID]:
        """Return the resolved refs as a plain dictionary."""
        with self._lock:
            return {name: sha for (name, (sha, _)) in self._refs.items()}

    def symrefs(self) -> dict[Ref, Ref]:
        with self._lock:
            return dict(self._symrefs)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._refs

    def __len__(self) -> int:
        with self._lock:
            return len(self._refs)
