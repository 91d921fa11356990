# index.py -- Reader for the git index file format
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

"""Reader for the git index file format.

An exposed index lists the blob id of every tracked file, including files
whose commits are otherwise unreachable, so it is a cheap source of seeds.
Only the fields needed for that are decoded.
"""

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

from .errors import IndexFormatException
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .objects import S_ISGITLINK, ObjectID, sha_to_hex

FLAG_NAMEMASK = 0x0FFF

# extended flag (must be zero in version 2)
FLAG_EXTENDED = 0x4000


@dataclass
class IndexEntry:
    name: bytes
    mode: int
    size: int
    sha: ObjectID
    flags: int


def read_index_header(f: BinaryIO) -> tuple[int, int]:
    """Read an index header from a file.

    Returns:
      tuple of (version, num_entries)
    """
    header = f.read(4)
    if header != b"DIRC":
        raise IndexFormatException(f"Invalid index file header: {header!r}")
    data = f.read(4 * 2)
    if len(data) != 8:
        raise IndexFormatException("truncated index header")
    (version, num_entries) = struct.unpack(b">LL", data)
    if version not in (2, 3, 4):
        raise IndexFormatException(f"unsupported index version {version}")
    return version, num_entries


def _read_exact(f: BinaryIO, size: int) -> bytes:
    data = f.read(size)
    if len(data) != size:
        raise IndexFormatException("truncated index entry")
    return data


def _read_compressed_path(f: BinaryIO, previous_path: bytes) -> bytes:
    """Read a version 4 path: varint strip length, then a NUL-terminated suffix.

    The strip length uses git's offset varint encoding (varint.c), which
    differs from LEB128 for values of 128 and up.
    """
    byte = _read_exact(f, 1)[0]
    remove_len = byte & 0x7F
    while byte & 0x80:
        byte = _read_exact(f, 1)[0]
        remove_len = ((remove_len + 1) << 7) | (byte & 0x7F)
    suffix = bytearray()
    while True:
        byte = _read_exact(f, 1)[0]
        if byte == 0:
            break
        suffix.append(byte)
    if remove_len > len(previous_path):
        raise IndexFormatException(
            f"Invalid path compression: trying to remove {remove_len} bytes "
            f"from {len(previous_path)}-byte path"
        )
    prefix = previous_path[: len(previous_path) - remove_len]
    return prefix + bytes(suffix)


def read_cache_entry(
    f: BinaryIO,
    version: int,
    previous_path: bytes = b"",
    object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
) -> IndexEntry:
    """Read an entry from a cache file.

    Args:
      f: File-like object to read from
      version: Index version
      previous_path: Previous entry's path (for version 4 compression)
      object_format: Format deciding the width of the raw ids
    """
    beginoffset = f.tell()
    sha_len = object_format.oid_length
    # ctime, mtime, dev, ino are not needed
    _read_exact(f, 8 + 8 + 4 + 4)
    (mode, _uid, _gid, size) = struct.unpack(">LLLL", _read_exact(f, 16))
    sha = _read_exact(f, sha_len)
    (flags,) = struct.unpack(">H", _read_exact(f, 2))
    if flags & FLAG_EXTENDED:
        if version < 3:
            raise IndexFormatException("extended flag set in index with version < 3")
        _read_exact(f, 2)

    if version >= 4:
        name = _read_compressed_path(f, previous_path)
    else:
        name_len = flags & FLAG_NAMEMASK
        if name_len == FLAG_NAMEMASK:
            # Name is too long for the length field; read up to the NUL.
            name = bytearray()
            while True:
                byte = _read_exact(f, 1)[0]
                if byte == 0:
                    break
                name.append(byte)
            name = bytes(name)
            f.seek(-1, 1)
        else:
            name = _read_exact(f, name_len)
        # Entries are NUL padded to a multiple of eight bytes.
        real_size = (f.tell() - beginoffset + 8) & ~7
        _read_exact(f, (beginoffset + real_size) - f.tell())

    return IndexEntry(name, mode, size, sha_to_hex(sha), flags & ~FLAG_NAMEMASK)


def read_index(
    f: BinaryIO, object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> Iterator[IndexEntry]:
    """Read an index file, yielding the individual entries."""
    version, num_entries = read_index_header(f)
    previous_path = b""
    for _ in range(num_entries):
        entry = read_cache_entry(f, version, previous_path, object_format)
        previous_path = entry.name
        yield entry


def index_object_ids(
    f: BinaryIO, object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT
) -> list[ObjectID]:
    """Return the blob ids listed in an index, skipping submodule entries."""
    ret: dict[ObjectID, None] = {}
    for entry in read_index(f, object_format):
        if S_ISGITLINK(entry.mode):
            continue
        ret[entry.sha] = None
    return list(ret)
