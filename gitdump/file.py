# file.py -- Atomic file writes for the recovered git directory
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

"""Safe writes of git files.

Everything gitdump persists goes through GitFile, which follows git's own
locking protocol: data is written to ``<name>.lock`` and renamed over
``<name>`` on close. A crawl that is interrupted mid-write therefore leaves
either the complete file or no file at all.
"""

__all__ = [
    "FileLocked",
    "GitFile",
    "ensure_dir_exists",
]

import os
import warnings
from types import TracebackType
from typing import Optional, Union

PathType = Union[str, os.PathLike]


def ensure_dir_exists(dirname: PathType) -> None:
    """Ensure a directory exists, creating if necessary."""
    try:
        os.makedirs(dirname)
    except FileExistsError:
        pass


class FileLocked(Exception):
    """File is already locked."""

    def __init__(self, filename: PathType, lockfilename: str) -> None:
        """Initialize FileLocked.

        Args:
          filename: Name of the file that is locked
          lockfilename: Name of the lock file
        """
        self.filename = filename
        self.lockfilename = lockfilename
        super().__init__(filename, lockfilename)


class GitFile:
    """Write-only file that follows the git locking protocol.

    All writes to a file foo go to foo.lock in the same directory; close()
    renames the lockfile over foo, abort() removes it.

    Note: You *must* call close() or abort() on a GitFile for the lock to be
        released. Using it as a context manager does this for you.
    """

    def __init__(
        self, filename: PathType, mask: int = 0o644, fsync: bool = False
    ) -> None:
        """Open a lock file for writing.

        Args:
          filename: Path of the file to (re)place
          mask: Permission bits for the created file
          fsync: Whether to fsync() the data before renaming

        Raises:
          FileLocked: if another writer holds the lock
        """
        self._filename = os.fspath(filename)
        self._lockfilename = self._filename + ".lock"
        self._fsync = fsync
        try:
            fd = os.open(
                self._lockfilename,
                os.O_RDWR | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0),
                mask,
            )
        except FileExistsError as exc:
            raise FileLocked(filename, self._lockfilename) from exc
        self._file = os.fdopen(fd, "wb")
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return whether the file is closed."""
        return self._closed

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def abort(self) -> None:
        """Close and discard the lockfile without touching the target.

        If the file is already closed, this is a no-op.
        """
        if self._closed:
            return
        self._file.close()
        try:
            os.remove(self._lockfilename)
        except FileNotFoundError:
            pass
        self._closed = True

    def close(self) -> None:
        """Close this file, moving the lockfile over the original.

        Raises:
          OSError: if the original file could not be replaced. The lockfile
            is removed in that case.
        """
        if self._closed:
            return
        self._file.flush()
        if self._fsync:
            os.fsync(self._file.fileno())
        self._file.close()
        try:
            os.replace(self._lockfilename, self._filename)
        finally:
            self.abort()

    def __del__(self) -> None:
        if not getattr(self, "_closed", True):
            warnings.warn(f"unclosed {self!r}", ResourceWarning, stacklevel=2)
            self.abort()

    def __enter__(self) -> "GitFile":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        if exc_type is not None:
            self.abort()
        else:
            self.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}({self._filename!r})>"
