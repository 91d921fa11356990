# config.py -- Reading of recovered git configuration files
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

"""Reading git configuration files.

A recovered ``config`` names branches and remotes that have no other
bootstrap path, and declares the object format. Includes are not
followed: they point at files on the server's filesystem, not below the
exposed directory.
"""

from collections.abc import Iterator
from typing import IO, Optional

from .errors import ConfigFormatException
from .object_format import ObjectFormat, get_object_format

Section = tuple[bytes, ...]

_ESCAPE_TABLE = {
    ord(b"\\"): ord(b"\\"),
    ord(b'"'): ord(b'"'),
    ord(b"n"): ord(b"\n"),
    ord(b"t"): ord(b"\t"),
    ord(b"b"): ord(b"\b"),
}
_COMMENT_CHARS = [ord(b"#"), ord(b";")]
_WHITESPACE_CHARS = [ord(b"\t"), ord(b" ")]


def _parse_string(value: bytes) -> bytes:
    value_array = bytearray(value.strip())
    ret = bytearray()
    whitespace = bytearray()
    in_quotes = False
    i = 0
    while i < len(value_array):
        c = value_array[i]
        if c == ord(b"\\"):
            i += 1
            if i >= len(value_array):
                raise ConfigFormatException("escape character at end of value")
            try:
                v = _ESCAPE_TABLE[value_array[i]]
            except KeyError as exc:
                raise ConfigFormatException(
                    f"escape character followed by unknown character {value_array[i]!r}"
                ) from exc
            if whitespace:
                ret.extend(whitespace)
                whitespace = bytearray()
            ret.append(v)
        elif c == ord(b'"'):
            in_quotes = not in_quotes
        elif c in _COMMENT_CHARS and not in_quotes:
            break
        elif c in _WHITESPACE_CHARS:
            whitespace.append(c)
        else:
            if whitespace:
                ret.extend(whitespace)
                whitespace = bytearray()
            ret.append(c)
        i += 1

    if in_quotes:
        raise ConfigFormatException("missing end quote")

    return bytes(ret)


def _strip_comments(line: bytes) -> bytes:
    string_open = False
    for i, character in enumerate(bytearray(line)):
        # Comment characters outside balanced quotes denote comment start
        if character == ord(b'"'):
            string_open = not string_open
        elif not string_open and character in _COMMENT_CHARS:
            return line[:i]
    return line


def _check_variable_name(name: bytes) -> bool:
    return bool(name) and all(c.isalnum() or c == "-" for c in name.decode("latin-1"))


def _check_section_name(name: bytes) -> bool:
    return bool(name) and all(
        c.isalnum() or c in "-." for c in name.decode("latin-1")
    )


def _parse_section_header_line(line: bytes) -> tuple[Section, bytes]:
    line = _strip_comments(line).rstrip()
    in_quotes = False
    escaped = False
    for i, c in enumerate(line):
        if escaped:
            escaped = False
            continue
        if c == ord(b'"'):
            in_quotes = not in_quotes
        if c == ord(b"\\"):
            escaped = True
        if c == ord(b"]") and not in_quotes:
            last = i
            break
    else:
        raise ConfigFormatException("expected trailing ]")
    pts = line[1:last].split(b" ", 1)
    line = line[last + 1 :]
    if len(pts) == 2:
        if pts[1][:1] != b'"' or pts[1][-1:] != b'"':
            raise ConfigFormatException(f"Invalid subsection {pts[1]!r}")
        if not _check_section_name(pts[0]):
            raise ConfigFormatException(f"invalid section name {pts[0]!r}")
        return (pts[0].lower(), pts[1][1:-1]), line
    if not _check_section_name(pts[0]):
        raise ConfigFormatException(f"invalid section name {pts[0]!r}")
    dotted = pts[0].split(b".", 1)
    if len(dotted) == 2:
        return (dotted[0].lower(), dotted[1]), line
    return (dotted[0].lower(),), line


class ConfigFile:
    """A git configuration file, like .git/config.

    Section and variable names are case-insensitive; subsection names
    are not.
    """

    def __init__(self) -> None:
        self._values: dict[Section, list[tuple[bytes, bytes]]] = {}

    @classmethod
    def from_file(cls, f: IO[bytes]) -> "ConfigFile":
        """Read configuration from a file-like object.

        Raises:
          ConfigFormatException: if the file is not valid git config
        """
        ret = cls()
        section: Optional[Section] = None
        setting: Optional[bytes] = None
        value = b""
        for lineno, line in enumerate(f.readlines()):
            if lineno == 0 and line.startswith(b"\xef\xbb\xbf"):
                line = line[3:]
            line = line.lstrip()
            if setting is None:
                if line[:1] == b"[":
                    section, line = _parse_section_header_line(line)
                    ret._values.setdefault(section, [])
                if _strip_comments(line).strip() == b"":
                    continue
                if section is None:
                    raise ConfigFormatException(f"setting {line!r} without section")
                try:
                    setting, value = line.split(b"=", 1)
                except ValueError:
                    setting = line
                    value = b"true"
                setting = setting.strip()
                if not _check_variable_name(setting):
                    raise ConfigFormatException(f"invalid variable name {setting!r}")
            else:
                value += line
            if value.rstrip(b"\r\n").endswith(b"\\"):
                value = value.rstrip(b"\r\n")[:-1]
                continue
            assert section is not None
            ret._values[section].append((setting.lower(), _parse_string(value)))
            setting = None
            value = b""
        if setting is not None:
            raise ConfigFormatException("unexpected end of file in continuation")
        return ret

    def sections(self) -> Iterator[Section]:
        return iter(self._values)

    def get_multivar(self, section: Section, name: bytes) -> list[bytes]:
        """Return every value set for a variable, in file order."""
        section = (section[0].lower(), *section[1:])
        name = name.lower()
        return [v for (k, v) in self._values.get(section, []) if k == name]

    def get(self, section: Section, name: bytes) -> bytes:
        """Return the last value set for a variable.

        Raises:
          KeyError: if the variable is not set
        """
        values = self.get_multivar(section, name)
        if not values:
            raise KeyError(name)
        return values[-1]

    def subsections(self, name: bytes) -> list[bytes]:
        """Return the subsection names of every ``[name "..."]`` section."""
        name = name.lower()
        return [s[1] for s in self._values if len(s) == 2 and s[0] == name]

    def object_format(self) -> Optional[ObjectFormat]:
        """Return the declared object format, if any.

        Raises:
          ConfigFormatException: for an object format gitdump does not know
        """
        try:
            value = self.get((b"extensions",), b"objectformat")
        except KeyError:
            return None
        try:
            return get_object_format(value.decode("ascii", "replace"))
        except ValueError as exc:
            raise ConfigFormatException(str(exc)) from exc
