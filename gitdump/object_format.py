# object_format.py -- Hash algorithms used to name git objects
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

"""Object format abstraction.

Repositories use SHA-1 unless their config sets
``extensions.objectformat = sha256``. The format decides how long object
ids are and which hash verifies a downloaded object.
"""

import re
from collections.abc import Callable
from hashlib import sha1, sha256
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from _hashlib import HASH


class ObjectFormat:
    """Object format (hash algorithm) used in Git."""

    def __init__(
        self,
        name: str,
        oid_length: int,
        hex_length: int,
        hash_func: Callable[[], "HASH"],
    ) -> None:
        """Initialize an object format.

        Args:
            name: Name of the format (e.g., "sha1", "sha256")
            oid_length: Length of the binary object ID in bytes
            hex_length: Length of the hexadecimal object ID in characters
            hash_func: Hash function from hashlib
        """
        self.name = name
        self.oid_length = oid_length
        self.hex_length = hex_length
        self.hash_func = hash_func
        self.zero_oid = b"0" * hex_length
        self.hexsha_re = re.compile(rb"[0-9a-f]{%d}" % hex_length)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"ObjectFormat({self.name!r})"

    def new_hash(self) -> "HASH":
        """Create a new hash object."""
        return self.hash_func()

    def hash_object_hex(self, data: bytes) -> bytes:
        """Hash data and return the hexadecimal digest as bytes."""
        h = self.new_hash()
        h.update(data)
        return h.hexdigest().encode("ascii")


SHA1 = ObjectFormat("sha1", oid_length=20, hex_length=40, hash_func=sha1)
SHA256 = ObjectFormat("sha256", oid_length=32, hex_length=64, hash_func=sha256)

OBJECT_FORMATS = {
    "sha1": SHA1,
    "sha256": SHA256,
}

DEFAULT_OBJECT_FORMAT = SHA1


def get_object_format(name: Optional[str] = None) -> ObjectFormat:
    """Get an object format by name.

    Args:
        name: Format name ("sha1" or "sha256"). If None, returns default.

    Returns:
        ObjectFormat instance

    Raises:
        ValueError: If the format name is not supported
    """
    if name is None:
        return DEFAULT_OBJECT_FORMAT
    try:
        return OBJECT_FORMATS[name.lower()]
    except KeyError:
        raise ValueError(f"Unsupported object format: {name}")
