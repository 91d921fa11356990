# codec.py -- Interpretation of fetched files
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

"""Turn fetched bytes into typed data plus further things to fetch.

decode() picks a parser based on what was requested: loose objects are
verified and parsed by gitdump.objects, well-known metadata files by the
matching format module. Every ref name found anywhere turns into two new
targets, the loose ref file and its reflog.
"""

import io
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

from .config import ConfigFile
from .errors import ChecksumMismatch, FileFormatException
from .frontier import FetchTarget
from .index import index_object_ids
from .log_utils import getLogger
from .object_format import DEFAULT_OBJECT_FORMAT, ObjectFormat
from .object_store import read_packs_file
from .objects import ObjectID, ShaFile, parse_loose_object, valid_hexsha
from .refs import (
    HEADREF,
    LOCAL_BRANCH_PREFIX,
    LOCAL_REMOTE_PREFIX,
    PEELED_TAG_SUFFIX,
    SOURCE_HINT,
    SOURCE_INFO,
    SOURCE_LOOSE,
    SOURCE_PACKED,
    Ref,
    is_fetchable_ref,
    read_info_refs,
    read_packed_refs_with_peeled,
    read_ref_file,
    ref_log_path,
)
from .reflog import read_fetch_head, read_reflog, reflog_branch_names, reflog_object_ids

logger = getLogger(__name__)

# Files stored as-is; nothing inside them leads anywhere.
OPAQUE_FILES = frozenset(["description", "COMMIT_EDITMSG", "info/exclude"])


@dataclass
class DecodeResult:
    """Everything learned from one fetched file.

    Attributes:
      target: What was fetched
      valid: Whether the contents parsed; invalid files are neither stored
        nor expanded
      obj: The parsed object, for object targets
      refs: (name, id, source) triples, source being one of the
        ``gitdump.refs.SOURCE_*`` names
      symrefs: Symbolic refs, name to target
      targets: Further things to fetch, in discovery order
      pack_names: Pack files named by objects/info/packs
      object_format: Object format declared by a config file
      error: Why the contents are invalid
    """

    target: FetchTarget
    valid: bool = True
    obj: Optional[ShaFile] = None
    refs: list[tuple[Ref, ObjectID, str]] = field(default_factory=list)
    symrefs: dict[Ref, Ref] = field(default_factory=dict)
    targets: list[FetchTarget] = field(default_factory=list)
    pack_names: list[str] = field(default_factory=list)
    object_format: Optional[ObjectFormat] = None
    error: Optional[str] = None

    def add_object(self, sha: ObjectID) -> None:
        self.targets.append(FetchTarget.for_object(sha))

    def add_ref_name(self, name: Ref) -> None:
        """Queue the loose ref file and reflog of a ref name.

        Names that are not safe to turn into paths are ignored.
        """
        if not is_fetchable_ref(name):
            logger.debug("ignoring unusable ref name %r", name)
            return
        try:
            path = name.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("ignoring non-UTF-8 ref name %r", name)
            return
        self.targets.append(FetchTarget.for_path(path))
        self.targets.append(FetchTarget.for_path(ref_log_path(name)))

    def add_ref(self, name: Ref, sha: ObjectID, source: str) -> None:
        self.refs.append((name, sha, source))
        self.add_ref_name(name)
        self.add_object(sha)


def _decode_ref_file(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    name = result.target.path.encode("utf-8")
    sha, symref_target = read_ref_file(raw, object_format)
    if symref_target is not None:
        result.symrefs[name] = symref_target
        result.add_ref_name(symref_target)
        return
    assert sha is not None
    if name == HEADREF or name.startswith(b"refs/"):
        result.add_ref(name, sha, SOURCE_LOOSE)
    else:
        # ORIG_HEAD and friends
        result.add_object(sha)


def _decode_packed_refs(
    result: DecodeResult, raw: bytes, object_format: ObjectFormat
) -> None:
    for sha, name, peeled in read_packed_refs_with_peeled(io.BytesIO(raw), object_format):
        result.add_ref(name, sha, SOURCE_PACKED)
        if peeled is not None:
            result.add_object(peeled)


def _decode_info_refs(
    result: DecodeResult, raw: bytes, object_format: ObjectFormat
) -> None:
    for name, sha in read_info_refs(io.BytesIO(raw), object_format).items():
        if name.endswith(PEELED_TAG_SUFFIX):
            result.add_object(sha)
        else:
            result.add_ref(name, sha, SOURCE_INFO)


def _decode_reflog(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    try:
        entries = list(read_reflog(io.BytesIO(raw)))
    except ValueError as exc:
        raise FileFormatException(f"invalid reflog: {exc}") from exc
    for sha in reflog_object_ids(entries, object_format):
        result.add_object(sha)
    for branch in reflog_branch_names(entries):
        result.add_ref_name(LOCAL_BRANCH_PREFIX + branch)
    refname = result.target.path[len("logs/") :].encode("utf-8")
    if entries and refname.startswith(b"refs/"):
        last = entries[-1].new_sha
        if last != object_format.zero_oid and valid_hexsha(last, object_format):
            result.refs.append((refname, last, SOURCE_HINT))


def _decode_fetch_head(
    result: DecodeResult, raw: bytes, object_format: ObjectFormat
) -> None:
    try:
        lines = read_fetch_head(io.BytesIO(raw), object_format)
    except ValueError as exc:
        raise FileFormatException(str(exc)) from exc
    for sha, branch in lines:
        result.add_object(sha)
        if branch:
            result.add_ref_name(LOCAL_BRANCH_PREFIX + branch)


def _decode_index(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    for sha in index_object_ids(io.BytesIO(raw), object_format):
        result.add_object(sha)


def _decode_config(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    config = ConfigFile.from_file(io.BytesIO(raw))
    result.object_format = config.object_format()
    for branch in config.subsections(b"branch"):
        result.add_ref_name(LOCAL_BRANCH_PREFIX + branch)
    for remote in config.subsections(b"remote"):
        result.add_ref_name(LOCAL_REMOTE_PREFIX + remote + b"/HEAD")


def _decode_packs(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    result.pack_names.extend(read_packs_file(io.BytesIO(raw)))


def _decode_opaque(result: DecodeResult, raw: bytes, object_format: ObjectFormat) -> None:
    pass


_Decoder = Callable[[DecodeResult, bytes, ObjectFormat], None]

_DECODERS: dict[str, _Decoder] = {
    "HEAD": _decode_ref_file,
    "ORIG_HEAD": _decode_ref_file,
    "FETCH_HEAD": _decode_fetch_head,
    "packed-refs": _decode_packed_refs,
    "info/refs": _decode_info_refs,
    "index": _decode_index,
    "config": _decode_config,
    "objects/info/packs": _decode_packs,
}


def decoder_for_path(path: str) -> _Decoder:
    """Return the decoder responsible for a metadata path."""
    try:
        return _DECODERS[path]
    except KeyError:
        pass
    if path.startswith("refs/") or (path.endswith("_HEAD") and "/" not in path):
        return _decode_ref_file
    if path.startswith("logs/"):
        return _decode_reflog
    return _decode_opaque


def decode(
    target: FetchTarget,
    raw: bytes,
    object_format: ObjectFormat = DEFAULT_OBJECT_FORMAT,
    max_size: Optional[int] = None,
) -> DecodeResult:
    """Interpret the contents fetched for a target.

    Never raises for bad input: parse failures produce a result with
    ``valid`` set to False and ``error`` describing the problem.

    Args:
      target: What was fetched
      raw: The bytes as served
      object_format: Object format of the repository
      max_size: Largest decompressed object accepted
    Returns: a DecodeResult
    """
    result = DecodeResult(target)
    try:
        if target.is_object:
            obj = parse_loose_object(raw, target.object_id, object_format, max_size)
            result.obj = obj
            for sha in obj.references():
                result.add_object(sha)
        else:
            decoder_for_path(target.path)(result, raw, object_format)
    except (FileFormatException, ChecksumMismatch) as exc:
        logger.debug("unable to decode %s: %s", target, exc)
        return DecodeResult(target, valid=False, error=str(exc))
    logger.debug("decoded %s: %d new targets", target, len(result.targets))
    return result


def is_opaque_path(path: str) -> bool:
    return decoder_for_path(path) is _decode_opaque
