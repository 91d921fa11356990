# errors.py -- errors for gitdump
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

"""gitdump-related exception classes."""

# Please do not add more errors here, but instead add them close to the code
# that raises the error.

from typing import Optional, Union


class ChecksumMismatch(Exception):
    """A checksum didn't match the expected contents."""

    def __init__(
        self,
        expected: Union[bytes, str],
        got: Union[bytes, str],
        extra: Optional[str] = None,
    ) -> None:
        """Initialize a ChecksumMismatch exception.

        Args:
            expected: The expected hex checksum.
            got: The hex checksum that was actually computed.
            extra: Optional additional error information.
        """
        expected_str = expected if isinstance(expected, str) else expected.decode("ascii")
        got_str = got if isinstance(got, str) else got.decode("ascii")
        self.expected = expected_str
        self.got = got_str
        self.extra = extra
        message = f"Checksum mismatch: Expected {expected_str}, got {got_str}"
        if self.extra is not None:
            message += f"; {extra}"
        Exception.__init__(self, message)


class FileFormatException(Exception):
    """Base class for exceptions relating to reading git file formats."""


class ObjectFormatException(FileFormatException):
    """Indicates an error parsing an object."""


class PackedRefsException(FileFormatException):
    """Indicates an error parsing a packed-refs file."""


class IndexFormatException(FileFormatException):
    """Indicates an error parsing an index file."""


class ConfigFormatException(FileFormatException):
    """Indicates an error parsing a config file."""


class RefFormatError(FileFormatException):
    """Indicates an invalid ref name or ref file."""


class NotGitRepository(Exception):
    """Indicates that no exposed git directory was found."""


class TransportError(Exception):
    """Base class for errors raised by the HTTP transport."""


class FatalTransportError(TransportError):
    """The remote host can not be reached at all; the crawl must stop."""

    def __init__(self, url: str, reason: str) -> None:
        """Initialize a FatalTransportError.

        Args:
            url: URL whose fetch failed.
            reason: Human-readable description of the failure.
        """
        self.url = url
        self.reason = reason
        Exception.__init__(self, f"{url}: {reason}")
