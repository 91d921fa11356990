# utils.py -- Test utilities for gitdump
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

"""Utility functions common to gitdump tests."""

import collections
import threading
from collections.abc import Iterable
from typing import Optional

from gitdump.client import FetchOutcome, FetchStatus
from gitdump.object_format import SHA1, ObjectFormat
from gitdump.objects import ObjectID, loose_object_bytes, object_path, serialize_tree

AUTHOR = b"Test Author <test@example.com> 1700000000 +0000"


def make_object(
    type_name: bytes, body: bytes, object_format: ObjectFormat = SHA1
) -> tuple[ObjectID, bytes]:
    """Return (id, compressed loose object) for a body."""
    return loose_object_bytes(type_name, body, object_format)


def commit_body(
    tree: ObjectID, parents: Iterable[ObjectID] = (), message: bytes = b"Commit\n"
) -> bytes:
    lines = [b"tree " + tree]
    lines.extend(b"parent " + p for p in parents)
    lines.append(b"author " + AUTHOR)
    lines.append(b"committer " + AUTHOR)
    return b"\n".join(lines) + b"\n\n" + message


def tag_body(target: ObjectID, target_type: bytes = b"commit", name: bytes = b"v1.0") -> bytes:
    return (
        b"object " + target + b"\n"
        b"type " + target_type + b"\n"
        b"tag " + name + b"\n"
        b"tagger " + AUTHOR + b"\n\nRelease\n"
    )


class RepoBuilder:
    """Builds the files a web server would serve for a .git directory."""

    def __init__(self, object_format: ObjectFormat = SHA1) -> None:
        self.object_format = object_format
        self.files: dict[str, bytes] = {}
        self.objects: dict[ObjectID, bytes] = {}

    def add(self, type_name: bytes, body: bytes) -> ObjectID:
        sha, raw = make_object(type_name, body, self.object_format)
        self.objects[sha] = raw
        self.files[object_path(sha)] = raw
        return sha

    def blob(self, data: bytes) -> ObjectID:
        return self.add(b"blob", data)

    def tree(self, entries: Iterable[tuple[bytes, int, ObjectID]]) -> ObjectID:
        return self.add(b"tree", serialize_tree(entries))

    def commit(
        self, tree: ObjectID, parents: Iterable[ObjectID] = (), message: bytes = b"Commit\n"
    ) -> ObjectID:
        return self.add(b"commit", commit_body(tree, parents, message))

    def tag(self, target: ObjectID, name: bytes = b"v1.0") -> ObjectID:
        return self.add(b"tag", tag_body(target, name=name))

    def set_ref(self, name: str, sha: ObjectID) -> None:
        self.files[name] = sha + b"\n"

    def set_symref(self, name: str, target: str) -> None:
        self.files[name] = b"ref: " + target.encode("utf-8") + b"\n"

    def remove_object(self, sha: ObjectID) -> None:
        del self.files[object_path(sha)]


def small_repo(builder: Optional[RepoBuilder] = None) -> tuple[RepoBuilder, dict[str, ObjectID]]:
    """A two-commit repository with a subdirectory, HEAD on master.

    Returns: the builder and a dict naming the interesting ids
    """
    b = builder if builder is not None else RepoBuilder()
    readme = b.blob(b"Hello, world!\n")
    lib = b.blob(b"print('hello')\n")
    subtree = b.tree([(b"lib.py", 0o100644, lib)])
    tree1 = b.tree([(b"README", 0o100644, readme)])
    tree2 = b.tree([(b"README", 0o100644, readme), (b"src", 0o40000, subtree)])
    commit1 = b.commit(tree1, message=b"Initial\n")
    commit2 = b.commit(tree2, [commit1], message=b"Add src\n")
    b.set_symref("HEAD", "refs/heads/master")
    b.set_ref("refs/heads/master", commit2)
    b.files["description"] = b"Unnamed repository\n"
    b.files["config"] = (
        b"[core]\n\trepositoryformatversion = 0\n\tbare = false\n"
        b'[branch "master"]\n\tremote = origin\n'
    )
    return b, {
        "readme": readme,
        "lib": lib,
        "subtree": subtree,
        "tree1": tree1,
        "tree2": tree2,
        "commit1": commit1,
        "commit2": commit2,
    }


class FakeTransport:
    """In-memory transport serving a dict of files.

    Paths not in ``files`` are NOT_FOUND unless ``statuses`` says otherwise.
    """

    base_url = "http://example.com/.git/"

    def __init__(
        self,
        files: Optional[dict[str, bytes]] = None,
        statuses: Optional[dict[str, FetchStatus]] = None,
        fatal: bool = False,
    ) -> None:
        self.files = dict(files or {})
        self.statuses = dict(statuses or {})
        self.fatal = fatal
        self.requests: list[str] = []
        self.on_fetch = None
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    def fetch(self, path: str) -> FetchOutcome:
        with self._lock:
            self.requests.append(path)
        if self.on_fetch is not None:
            self.on_fetch(path)
        if self._cancel.is_set():
            return FetchOutcome(path, FetchStatus.FAILED, reason="cancelled")
        if self.fatal:
            return FetchOutcome(path, FetchStatus.FATAL, reason="Connection refused")
        status = self.statuses.get(path)
        if status is not None:
            return FetchOutcome(path, status, reason=f"status {status.value}")
        try:
            data = self.files[path]
        except KeyError:
            return FetchOutcome(path, FetchStatus.NOT_FOUND, http_status=404)
        return FetchOutcome(path, FetchStatus.OK, data=data, http_status=200)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def request_counts(self) -> collections.Counter:
        with self._lock:
            return collections.Counter(self.requests)
