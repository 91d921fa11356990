# object_store.py -- On-disk store for recovered objects and metadata
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

"""Git object store interfaces and implementation.

Recovered objects are stored as the exact compressed bytes the server
returned, so the result is byte-for-byte what stock git would have
written. Metadata files are stored verbatim next to them.
"""

import os
import posixpath
from collections.abc import Iterator
from typing import BinaryIO, Optional, Union

from .file import FileLocked, GitFile, ensure_dir_exists
from .log_utils import getLogger
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .objects import ObjectID, hex_to_filename, valid_hexsha
from .refs import LOCAL_BRANCH_PREFIX, Ref, check_ref_format

logger = getLogger(__name__)

INFODIR = "info"
PACKDIR = "pack"

# Loose objects are never modified after they are written.
PACK_MODE = 0o444


def read_packs_file(f: BinaryIO) -> Iterator[str]:
    """Yield the packs listed in a packs file."""
    for line in f.read().splitlines():
        if not line:
            continue
        try:
            (kind, name) = line.split(b" ", 1)
        except ValueError:
            continue
        if kind != b"P":
            continue
        yield os.fsdecode(name)


class DiskObjectStore:
    """Git-style loose object store plus metadata files, rooted at a .git."""

    def __init__(
        self,
        gitdir: Union[str, os.PathLike],
        object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
    ) -> None:
        """Open a store.

        Args:
          gitdir: Path of the git directory (usually ``<worktree>/.git``)
          object_format: Hash used to name objects
        """
        self.gitdir = os.path.abspath(os.fspath(gitdir))
        self.path = os.path.join(self.gitdir, "objects")
        self.pack_dir = os.path.join(self.path, PACKDIR)
        self.object_format = object_format

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.gitdir!r})>"

    def init(self) -> None:
        """Create the directory skeleton git expects."""
        for subdir in (
            self.path,
            os.path.join(self.path, INFODIR),
            self.pack_dir,
            os.path.join(self.gitdir, "refs", "heads"),
            os.path.join(self.gitdir, "refs", "tags"),
        ):
            ensure_dir_exists(subdir)

    def _lock_file(self, filename: str, mask: int = 0o644) -> GitFile:
        try:
            return GitFile(filename, mask=mask)
        except FileLocked as exc:
            # Each file is written by a single worker during a crawl, so an
            # existing lock was left behind by an interrupted run.
            logger.warning("removing stale lock file %s", exc.lockfilename)
            try:
                os.remove(exc.lockfilename)
            except FileNotFoundError:
                pass
            return GitFile(filename, mask=mask)

    def _get_shafile_path(self, sha: ObjectID) -> str:
        if not valid_hexsha(sha, self.object_format):
            raise ValueError(f"invalid object id {sha!r}")
        return hex_to_filename(self.path, sha)

    def contains(self, sha: ObjectID) -> bool:
        """Check if a loose object is present."""
        return os.path.isfile(self._get_shafile_path(sha))

    __contains__ = contains

    def add_raw(self, sha: ObjectID, raw: bytes) -> bool:
        """Add a loose object, given its compressed file contents.

        The caller is responsible for having verified that ``raw`` hashes
        to ``sha``.

        Returns: False if the object was already present
        Raises:
          FileLocked: if the lock file could not be taken even after
            removing a stale one
        """
        path = self._get_shafile_path(sha)
        if os.path.exists(path):
            return False
        ensure_dir_exists(os.path.dirname(path))
        with self._lock_file(path, mask=PACK_MODE) as f:
            f.write(raw)
        return True

    def get_raw(self, sha: ObjectID) -> bytes:
        """Obtain the compressed contents of a loose object.

        Raises:
          KeyError: if the object is not present
        """
        try:
            with open(self._get_shafile_path(sha), "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise KeyError(sha) from None

    def delete_loose_object(self, sha: ObjectID) -> None:
        """Delete a loose object from disk.

        Raises:
          FileNotFoundError: If the object file doesn't exist
        """
        os.remove(self._get_shafile_path(sha))

    def iter_loose_objects(self) -> Iterator[ObjectID]:
        """Iterate over the ids of all loose objects."""
        try:
            bases = os.listdir(self.path)
        except FileNotFoundError:
            return
        for base in sorted(bases):
            if len(base) != 2:
                continue
            for rest in sorted(os.listdir(os.path.join(self.path, base))):
                sha = os.fsencode(base + rest)
                if not valid_hexsha(sha, self.object_format):
                    continue
                yield sha

    def count_loose_objects(self) -> int:
        """Count the number of loose objects in the object store."""
        fn_length = self.object_format.hex_length - 2
        count = 0
        for i in range(256):
            subdir = os.path.join(self.path, f"{i:02x}")
            try:
                count += len(
                    [name for name in os.listdir(subdir) if len(name) == fn_length]
                )
            except FileNotFoundError:
                continue
        return count

    def _resolve(self, path: str) -> str:
        """Turn a repository-relative path into a local filename.

        Raises:
          ValueError: for paths that are absolute, contain empty, ``.`` or
            ``..`` segments, or would leave the git directory
        """
        if not path or path.startswith("/") or "\\" in path or "\0" in path:
            raise ValueError(f"unsafe path {path!r}")
        segments = path.split("/")
        if any(s in ("", ".", "..") for s in segments):
            raise ValueError(f"unsafe path {path!r}")
        if posixpath.normpath(path) != path:
            raise ValueError(f"unsafe path {path!r}")
        local = os.path.join(self.gitdir, *segments)
        if os.path.commonpath([self.gitdir, os.path.abspath(local)]) != self.gitdir:
            raise ValueError(f"path {path!r} escapes the git directory")
        return local

    def has_file(self, path: str) -> bool:
        return os.path.isfile(self._resolve(path))

    def write_file(self, path: str, data: bytes) -> str:
        """Store a metadata file verbatim, replacing any previous copy.

        Args:
          path: Path relative to the git directory, using ``/``
          data: File contents
        Returns: the local filename
        Raises:
          ValueError: if ``path`` is not safe to write
          FileLocked: if the lock file could not be taken even after
            removing a stale one
        """
        local = self._resolve(path)
        ensure_dir_exists(os.path.dirname(local))
        with self._lock_file(local) as f:
            f.write(data)
        logger.debug("wrote %s (%d bytes)", path, len(data))
        return local

    def write_config(self, data: bytes) -> str:
        return self.write_file("config", data)

    def write_ref(self, name: Ref, sha: ObjectID) -> str:
        """Write a loose ref file.

        Raises:
          ValueError: for names outside refs/ or ids of the wrong format
        """
        if not name.startswith(b"refs/") or not check_ref_format(name):
            raise ValueError(f"refusing to write ref {name!r}")
        if not valid_hexsha(sha, self.object_format):
            raise ValueError(f"invalid object id {sha!r}")
        return self.write_file(name.decode("utf-8"), sha + b"\n")

    def write_symref(self, name: Ref, target: Ref) -> str:
        """Write a symbolic ref such as HEAD."""
        if name != b"HEAD" and not (
            name.startswith(b"refs/") and check_ref_format(name)
        ):
            raise ValueError(f"refusing to write ref {name!r}")
        if not target.startswith(b"refs/") or not check_ref_format(target):
            raise ValueError(f"invalid symref target {target!r}")
        return self.write_file(name.decode("utf-8"), b"ref: " + target + b"\n")

    def default_branch(self, refs: dict[Ref, ObjectID]) -> Optional[Ref]:
        """Pick a branch for HEAD to point at when HEAD itself was not served."""
        for name in (b"refs/heads/main", b"refs/heads/master"):
            if name in refs:
                return name
        branches = sorted(n for n in refs if n.startswith(LOCAL_BRANCH_PREFIX))
        return branches[0] if branches else None
