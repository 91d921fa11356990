# objects.py -- Parsing of loose git objects
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

"""Access to base git objects.

Objects arrive as loose object files: a zlib stream wrapping
``<type> SP <decimal length> NUL <body>``. Only the structure needed to find
further objects is interpreted; everything else is kept opaque.
"""

import binascii
import os
import stat
import zlib
from collections import namedtuple
from collections.abc import Iterable, Iterator
from typing import ClassVar, Optional

from .errors import ChecksumMismatch, ObjectFormatException
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat

ObjectID = bytes

ZERO_SHA = b"0" * 40

# Header fields for commits
_TREE_HEADER = b"tree"
_PARENT_HEADER = b"parent"
_AUTHOR_HEADER = b"author"
_COMMITTER_HEADER = b"committer"

# Header fields for tags
_OBJECT_HEADER = b"object"
_TYPE_HEADER = b"type"
_TAG_HEADER = b"tag"

S_IFGITLINK = 0o160000

# Longest header git writes is "commit 18446744073709551615\0"
MAX_HEADER_LENGTH = 32

_HEX_DIGITS = frozenset(b"0123456789abcdef")
_OCTAL_DIGITS = frozenset(b"01234567")


def S_ISGITLINK(m: int) -> bool:
    """Check if a mode indicates a submodule.

    Args:
      m: Mode to check
    Returns: a ``boolean``
    """
    return stat.S_IFMT(m) == S_IFGITLINK


def valid_hexsha(hex: bytes, object_format: Optional[ObjectFormat] = None) -> bool:
    """Check whether a value is a lowercase hex object id.

    Args:
      hex: Candidate id
      object_format: Restrict to this format's length; any known length
        is accepted when omitted
    """
    if object_format is not None:
        if len(hex) != object_format.hex_length:
            return False
    elif len(hex) not in (40, 64):
        return False
    return all(c in _HEX_DIGITS for c in hex)


def sha_to_hex(sha: bytes) -> ObjectID:
    """Takes a binary sha and returns the hex of the sha within."""
    return binascii.hexlify(sha)


def hex_to_sha(hex: ObjectID) -> bytes:
    """Takes a hex sha and returns a binary sha."""
    try:
        return binascii.unhexlify(hex)
    except (TypeError, binascii.Error) as exc:
        raise ValueError(exc.args[0]) from exc


def object_path(hex: ObjectID) -> str:
    """Return the repository-relative path of a loose object.

    >>> object_path(b"ab" + b"c" * 38)
    'objects/ab/cccccccccccccccccccccccccccccccccccccc'
    """
    hex_str = hex.decode("ascii")
    return f"objects/{hex_str[:2]}/{hex_str[2:]}"


def hex_to_filename(path: str, hex: ObjectID) -> str:
    """Takes an objects directory and a hex sha and returns its filename."""
    hex_str = hex.decode("ascii")
    return os.path.join(path, hex_str[:2], hex_str[2:])


def object_header(type_name: bytes, length: int) -> bytes:
    """Return the loose object header for an object of the given type."""
    return type_name + b" " + str(length).encode("ascii") + b"\0"


def _decompress(data: bytes, max_size: Optional[int]) -> bytes:
    dcomp = zlib.decompressobj()
    try:
        if max_size is None:
            decomped = dcomp.decompress(data)
        else:
            decomped = dcomp.decompress(data, max_size + MAX_HEADER_LENGTH)
    except zlib.error as exc:
        raise ObjectFormatException(f"unable to decompress object: {exc}") from exc
    if dcomp.unconsumed_tail:
        raise ObjectFormatException(f"object larger than {max_size} bytes")
    if not dcomp.eof:
        raise ObjectFormatException("truncated zlib stream")
    if dcomp.unused_data:
        raise ObjectFormatException("garbage after end of zlib stream")
    return decomped


def _split_header(decomped: bytes) -> tuple[bytes, bytes]:
    header_end = decomped.find(b"\0", 0, MAX_HEADER_LENGTH)
    if header_end == -1:
        raise ObjectFormatException("missing object header")
    header = decomped[:header_end]
    body = decomped[header_end + 1 :]
    try:
        type_name, size_text = header.split(b" ", 1)
    except ValueError as exc:
        raise ObjectFormatException(f"invalid object header {header!r}") from exc
    if not size_text.isdigit() or (len(size_text) > 1 and size_text[:1] == b"0"):
        raise ObjectFormatException(f"invalid object size {size_text!r}")
    if int(size_text) != len(body):
        raise ObjectFormatException(
            f"object size mismatch: header says {int(size_text)}, got {len(body)}"
        )
    return type_name, body


def _parse_header_lines(body: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield (field, value) for the header block of a commit or tag.

    Continuation lines (starting with a space, as used by gpgsig and
    mergetag) belong to the previous field and are skipped.
    """
    for line in body.split(b"\n"):
        if line == b"":
            return
        if line.startswith(b" "):
            continue
        field, sep, value = line.partition(b" ")
        if not sep:
            raise ObjectFormatException(f"invalid header line {line!r}")
        yield field, value


class TreeEntry(namedtuple("TreeEntry", ["path", "mode", "sha"])):
    """Named tuple encapsulating a single tree entry.

    ``path`` comes straight off the wire and is never interpreted as a
    local filesystem path.
    """

    @property
    def kind(self) -> bytes:
        """Object type the entry points at, inferred from its mode."""
        if S_ISGITLINK(self.mode):
            return b"commit"
        if stat.S_ISDIR(self.mode):
            return b"tree"
        return b"blob"


def parse_tree(text: bytes, object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT) -> Iterator[TreeEntry]:
    """Parse a tree text.

    Args:
      text: Serialized text to parse
      object_format: Format deciding the width of the raw ids
    Returns: iterator of TreeEntry
    Raises:
      ObjectFormatException: if the text is not exactly a sequence of
        entries
    """
    count = 0
    length = len(text)
    sha_len = object_format.oid_length
    while count < length:
        mode_end = text.find(b" ", count)
        if mode_end == -1 or mode_end == count:
            raise ObjectFormatException("invalid mode in tree entry")
        mode_text = text[count:mode_end]
        if not all(c in _OCTAL_DIGITS for c in mode_text):
            raise ObjectFormatException(f"invalid mode {mode_text!r}")
        mode = int(mode_text, 8)
        # Every valid mode fits the 16 bit type and permission fields
        if mode > 0o177777:
            raise ObjectFormatException(f"mode out of range {mode_text!r}")
        name_end = text.find(b"\0", mode_end)
        if name_end == -1:
            raise ObjectFormatException("unterminated tree entry name")
        name = text[mode_end + 1 : name_end]
        if not name:
            raise ObjectFormatException("empty tree entry name")
        count = name_end + 1 + sha_len
        if count > length:
            raise ObjectFormatException("truncated tree entry")
        sha = text[name_end + 1 : count]
        yield TreeEntry(name, mode, sha_to_hex(sha))


def serialize_tree(items: Iterable[tuple[bytes, int, ObjectID]]) -> bytes:
    """Serialize (name, mode, hexsha) items as a tree body."""
    return b"".join(
        (f"{mode:04o}".encode("ascii") + b" " + name + b"\0" + hex_to_sha(hexsha))
        for name, mode, hexsha in items
    )


class ShaFile:
    """A git SHA file."""

    type_name: ClassVar[bytes]
    type_num: ClassVar[int]

    def __init__(self, sha: ObjectID, body: bytes) -> None:
        self._sha = sha
        self._body = body

    @classmethod
    def from_raw_string(
        cls,
        body: bytes,
        sha: ObjectID,
        object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
    ) -> "ShaFile":
        """Create an object from its uncompressed body.

        Args:
          body: Object contents without the header
          sha: Id of the object
          object_format: Format of ids referenced from the body
        """
        obj = cls(sha, body)
        obj._deserialize(body, object_format)
        return obj

    def _deserialize(self, body: bytes, object_format: ObjectFormat) -> None:
        pass

    @property
    def id(self) -> ObjectID:
        """The hex id of this object."""
        return self._sha

    def raw_length(self) -> int:
        """Returns the length of the raw body of this object."""
        return len(self._body)

    def as_raw_string(self) -> bytes:
        return self._body

    def references(self) -> list[ObjectID]:
        """Ids of the objects this object points at within the repository."""
        return []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id.decode('ascii')}>"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ShaFile) and self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


class Blob(ShaFile):
    """A Git Blob object."""

    type_name = b"blob"
    type_num = 3

    @property
    def data(self) -> bytes:
        return self._body


class Tree(ShaFile):
    """A Git tree object."""

    type_name = b"tree"
    type_num = 2

    def _deserialize(self, body: bytes, object_format: ObjectFormat) -> None:
        self._entries = list(parse_tree(body, object_format))

    def items(self) -> list[TreeEntry]:
        """Entries in the order in which they were serialized."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def references(self) -> list[ObjectID]:
        # Submodule commits live in another repository.
        return [entry.sha for entry in self._entries if not S_ISGITLINK(entry.mode)]


class Commit(ShaFile):
    """A git commit object."""

    type_name = b"commit"
    type_num = 1

    def _deserialize(self, body: bytes, object_format: ObjectFormat) -> None:
        self._tree: Optional[ObjectID] = None
        self._parents: list[ObjectID] = []
        self._author: Optional[bytes] = None
        self._committer: Optional[bytes] = None
        for field, value in _parse_header_lines(body):
            if field == _TREE_HEADER:
                if self._tree is not None:
                    raise ObjectFormatException("multiple tree headers")
                if not valid_hexsha(value, object_format):
                    raise ObjectFormatException(f"invalid tree id {value!r}")
                self._tree = value
            elif field == _PARENT_HEADER:
                if not valid_hexsha(value, object_format):
                    raise ObjectFormatException(f"invalid parent id {value!r}")
                self._parents.append(value)
            elif field == _AUTHOR_HEADER:
                self._author = value
            elif field == _COMMITTER_HEADER:
                self._committer = value
        if self._tree is None:
            raise ObjectFormatException("commit without tree")

    @property
    def tree(self) -> ObjectID:
        assert self._tree is not None
        return self._tree

    @property
    def parents(self) -> list[ObjectID]:
        return list(self._parents)

    @property
    def author(self) -> Optional[bytes]:
        return self._author

    @property
    def committer(self) -> Optional[bytes]:
        return self._committer

    @property
    def message(self) -> bytes:
        _, _, message = self._body.partition(b"\n\n")
        return message

    def references(self) -> list[ObjectID]:
        return [self.tree, *self._parents]


class Tag(ShaFile):
    """A Git Tag object."""

    type_name = b"tag"
    type_num = 4

    def _deserialize(self, body: bytes, object_format: ObjectFormat) -> None:
        self._object_sha: Optional[ObjectID] = None
        self._object_type: Optional[bytes] = None
        self._name: Optional[bytes] = None
        for field, value in _parse_header_lines(body):
            if field == _OBJECT_HEADER:
                if not valid_hexsha(value, object_format):
                    raise ObjectFormatException(f"invalid object id {value!r}")
                self._object_sha = value
            elif field == _TYPE_HEADER:
                if value not in _TYPE_MAP:
                    raise ObjectFormatException(f"unknown tag target type {value!r}")
                self._object_type = value
            elif field == _TAG_HEADER:
                self._name = value
        if self._object_sha is None or self._object_type is None:
            raise ObjectFormatException("tag without object or type")

    @property
    def object(self) -> tuple[bytes, ObjectID]:
        """Get the object pointed to by this tag.

        Returns: tuple of (object type name, sha).
        """
        assert self._object_type is not None and self._object_sha is not None
        return (self._object_type, self._object_sha)

    @property
    def name(self) -> Optional[bytes]:
        return self._name

    def references(self) -> list[ObjectID]:
        return [self.object[1]]


OBJECT_CLASSES = (
    Commit,
    Tree,
    Blob,
    Tag,
)

_TYPE_MAP: dict[bytes, type[ShaFile]] = {cls.type_name: cls for cls in OBJECT_CLASSES}


def object_class(type_name: bytes) -> type[ShaFile]:
    """Get the object class corresponding to the given type name.

    Raises:
      ObjectFormatException: for unknown object types
    """
    try:
        return _TYPE_MAP[type_name]
    except KeyError:
        raise ObjectFormatException(f"unknown object type {type_name!r}") from None


def parse_loose_object(
    data: bytes,
    expected_sha: Optional[ObjectID] = None,
    object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
    max_size: Optional[int] = None,
) -> ShaFile:
    """Verify and parse the contents of a loose object file.

    Args:
      data: Compressed object file as served
      expected_sha: Id the object was requested under
      object_format: Hash used to name objects
      max_size: Refuse objects whose body is larger than this
    Returns: the parsed object
    Raises:
      ObjectFormatException: the data is not a well-formed object
      ChecksumMismatch: the object does not hash to expected_sha
    """
    decomped = _decompress(data, max_size)
    type_name, body = _split_header(decomped)
    cls = object_class(type_name)
    sha = object_format.hash_object_hex(decomped)
    if expected_sha is not None and sha != expected_sha:
        raise ChecksumMismatch(expected_sha, sha)
    return cls.from_raw_string(body, sha, object_format)


def loose_object_bytes(
    type_name: bytes,
    body: bytes,
    object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
) -> tuple[ObjectID, bytes]:
    """Encode a body as a loose object.

    Returns: tuple of (hex id, compressed file contents)
    """
    raw = object_header(type_name, len(body)) + body
    return object_format.hash_object_hex(raw), zlib.compress(raw)
