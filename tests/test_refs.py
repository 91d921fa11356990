# test_refs.py -- tests for refs.py
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

"""Tests for ref parsing and the RefMap."""

import threading
from io import BytesIO

from gitdump.errors import PackedRefsException, RefFormatError
from gitdump.object_format import SHA256
from gitdump.refs import (
    SOURCE_HINT,
    SOURCE_INFO,
    SOURCE_LOOSE,
    SOURCE_PACKED,
    RefMap,
    check_ref_format,
    is_fetchable_ref,
    parse_symref_value,
    read_info_refs,
    read_packed_refs_with_peeled,
    read_ref_file,
    ref_log_path,
    split_peeled_refs,
)

from . import TestCase

ONES = b"1" * 40
TWOS = b"2" * 40
THREES = b"3" * 40
FOURS = b"4" * 40


class CheckRefFormatTests(TestCase):
    """Tests for the check_ref_format function.

    These are the same tests as in the git test suite.
    """

    def test_valid(self) -> None:
        self.assertTrue(check_ref_format(b"heads/foo"))
        self.assertTrue(check_ref_format(b"foo/bar/baz"))
        self.assertTrue(check_ref_format(b"refs/heads/foo"))
        self.assertTrue(check_ref_format(b"foo./bar"))

    def test_invalid(self) -> None:
        self.assertFalse(check_ref_format(b"foo"))
        self.assertFalse(check_ref_format(b"heads/foo/"))
        self.assertFalse(check_ref_format(b"./foo"))
        self.assertFalse(check_ref_format(b".refs/foo"))
        self.assertFalse(check_ref_format(b"heads/foo..bar"))
        self.assertFalse(check_ref_format(b"heads/foo?bar"))
        self.assertFalse(check_ref_format(b"heads/foo.lock"))
        self.assertFalse(check_ref_format(b"heads/v@{ation"))
        self.assertFalse(check_ref_format(b"heads/foo\bar"))
        self.assertFalse(check_ref_format(b"heads/foo\\bar"))
        self.assertFalse(check_ref_format(b"heads//foo"))
        self.assertFalse(check_ref_format(b"/heads/foo"))


class FetchableRefTests(TestCase):
    def test_pseudo_refs(self) -> None:
        self.assertTrue(is_fetchable_ref(b"HEAD"))
        self.assertTrue(is_fetchable_ref(b"ORIG_HEAD"))
        self.assertFalse(is_fetchable_ref(b"config"))

    def test_refs_namespace_only(self) -> None:
        self.assertTrue(is_fetchable_ref(b"refs/heads/main"))
        self.assertTrue(is_fetchable_ref(b"refs/remotes/origin/HEAD"))
        self.assertFalse(is_fetchable_ref(b"objects/info/packs"))
        self.assertFalse(is_fetchable_ref(b"refs/heads/../../../etc/passwd"))
        self.assertFalse(is_fetchable_ref(b"refs/heads/a b"))

    def test_ref_log_path(self) -> None:
        self.assertEqual("logs/refs/heads/main", ref_log_path(b"refs/heads/main"))
        self.assertEqual("logs/HEAD", ref_log_path(b"HEAD"))
        self.assertRaises(UnicodeDecodeError, ref_log_path, b"refs/heads/\xff")


class ReadRefFileTests(TestCase):
    def test_sha(self) -> None:
        self.assertEqual((ONES, None), read_ref_file(ONES + b"\n"))

    def test_symref(self) -> None:
        self.assertEqual(
            (None, b"refs/heads/master"), read_ref_file(b"ref: refs/heads/master\n")
        )

    def test_symref_crlf(self) -> None:
        self.assertEqual(
            (None, b"refs/heads/master"), read_ref_file(b"ref: refs/heads/master\r\n")
        )

    def test_symref_escape(self) -> None:
        self.assertRaises(RefFormatError, read_ref_file, b"ref: ../../etc/passwd\n")

    def test_garbage(self) -> None:
        self.assertRaises(RefFormatError, read_ref_file, b"<html>nope</html>")
        self.assertRaises(RefFormatError, read_ref_file, ONES + b" extra\n")
        self.assertRaises(RefFormatError, read_ref_file, b"")

    def test_sha256(self) -> None:
        sha = b"a" * 64
        self.assertEqual((sha, None), read_ref_file(sha + b"\n", SHA256))
        self.assertRaises(RefFormatError, read_ref_file, ONES + b"\n", SHA256)

    def test_parse_symref_value(self) -> None:
        self.assertEqual(b"refs/heads/x", parse_symref_value(b"ref: refs/heads/x\n"))
        self.assertRaises(ValueError, parse_symref_value, ONES)


class PackedRefsFileTests(TestCase):
    def test_no_header(self) -> None:
        f = BytesIO(ONES + b" refs/heads/master\n" + TWOS + b" refs/tags/v1\n")
        self.assertEqual(
            [(ONES, b"refs/heads/master", None), (TWOS, b"refs/tags/v1", None)],
            list(read_packed_refs_with_peeled(f)),
        )

    def test_with_peeled(self) -> None:
        f = BytesIO(
            b"# pack-refs with: peeled fully-peeled sorted \n"
            + ONES + b" refs/heads/master\n"
            + TWOS + b" refs/tags/v1\n"
            + b"^" + THREES + b"\n"
            + FOURS + b" refs/tags/v2\n"
        )
        self.assertEqual(
            [
                (ONES, b"refs/heads/master", None),
                (TWOS, b"refs/tags/v1", THREES),
                (FOURS, b"refs/tags/v2", None),
            ],
            list(read_packed_refs_with_peeled(f)),
        )

    def test_peeled_without_ref(self) -> None:
        f = BytesIO(b"^" + THREES + b"\n")
        self.assertRaises(PackedRefsException, list, read_packed_refs_with_peeled(f))

    def test_bad_sha(self) -> None:
        f = BytesIO(b"xyz refs/heads/master\n")
        self.assertRaises(PackedRefsException, list, read_packed_refs_with_peeled(f))

    def test_bad_name(self) -> None:
        f = BytesIO(ONES + b" refs/heads/../x\n")
        self.assertRaises(PackedRefsException, list, read_packed_refs_with_peeled(f))

    def test_wrong_field_count(self) -> None:
        f = BytesIO(ONES + b"\n")
        self.assertRaises(PackedRefsException, list, read_packed_refs_with_peeled(f))


class InfoRefsTests(TestCase):
    def test_read(self) -> None:
        f = BytesIO(
            ONES + b"\trefs/heads/master\n"
            + TWOS + b"\trefs/tags/v1\n"
            + THREES + b"\trefs/tags/v1^{}\n"
        )
        refs = read_info_refs(f)
        self.assertEqual(
            {
                b"refs/heads/master": ONES,
                b"refs/tags/v1": TWOS,
                b"refs/tags/v1^{}": THREES,
            },
            refs,
        )
        regular, peeled = split_peeled_refs(refs)
        self.assertEqual({b"refs/heads/master": ONES, b"refs/tags/v1": TWOS}, regular)
        self.assertEqual({b"refs/tags/v1": THREES}, peeled)

    def test_missing_tab(self) -> None:
        self.assertRaises(
            PackedRefsException, read_info_refs, BytesIO(ONES + b" refs/heads/master\n")
        )

    def test_bad_name(self) -> None:
        self.assertRaises(
            PackedRefsException, read_info_refs, BytesIO(ONES + b"\trefs/heads/a..b\n")
        )


class RefMapTests(TestCase):
    def test_empty(self) -> None:
        refs = RefMap()
        self.assertEqual(0, len(refs))
        self.assertIsNone(refs.get(b"refs/heads/master"))
        self.assertEqual({}, refs.as_dict())

    def test_loose_beats_packed(self) -> None:
        refs = RefMap()
        self.assertTrue(refs.set(b"refs/heads/master", ONES, SOURCE_LOOSE))
        self.assertFalse(refs.set(b"refs/heads/master", TWOS, SOURCE_PACKED))
        self.assertEqual(ONES, refs.get(b"refs/heads/master"))

    def test_loose_replaces_packed(self) -> None:
        refs = RefMap()
        refs.set(b"refs/heads/master", TWOS, SOURCE_PACKED)
        self.assertTrue(refs.set(b"refs/heads/master", ONES, SOURCE_LOOSE))
        self.assertEqual(ONES, refs.get(b"refs/heads/master"))

    def test_equal_precedence_last_wins(self) -> None:
        refs = RefMap()
        refs.set(b"refs/tags/v1", ONES, SOURCE_PACKED)
        self.assertTrue(refs.set(b"refs/tags/v1", TWOS, SOURCE_INFO))
        self.assertEqual(TWOS, refs.get(b"refs/tags/v1"))

    def test_hint_never_overrides(self) -> None:
        refs = RefMap()
        self.assertTrue(refs.set(b"refs/heads/dev", THREES, SOURCE_HINT))
        self.assertTrue(refs.set(b"refs/heads/dev", TWOS, SOURCE_PACKED))
        self.assertFalse(refs.set(b"refs/heads/dev", THREES, SOURCE_HINT))
        self.assertEqual(TWOS, refs.get(b"refs/heads/dev"))

    def test_custom_precedence(self) -> None:
        refs = RefMap({SOURCE_LOOSE: 0, SOURCE_PACKED: 5})
        refs.set(b"refs/heads/master", TWOS, SOURCE_PACKED)
        self.assertFalse(refs.set(b"refs/heads/master", ONES, SOURCE_LOOSE))
        self.assertEqual(TWOS, refs.get(b"refs/heads/master"))

    def test_symrefs(self) -> None:
        refs = RefMap()
        refs.set_symbolic(b"HEAD", b"refs/heads/master")
        self.assertEqual({b"HEAD": b"refs/heads/master"}, refs.symrefs())
        self.assertNotIn(b"HEAD", refs)

    def test_concurrent_writes(self) -> None:
        refs = RefMap()

        def writer(sha: bytes, source: str) -> None:
            for i in range(200):
                refs.set(b"refs/heads/b%d" % i, sha, source)

        threads = [
            threading.Thread(target=writer, args=(ONES, SOURCE_LOOSE)),
            threading.Thread(target=writer, args=(TWOS, SOURCE_PACKED)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(200, len(refs))
        self.assertEqual({ONES}, set(refs.as_dict().values()))
