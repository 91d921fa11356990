# test_crawler.py -- Tests for crawling an exposed git directory
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

"""Tests for the crawler."""

import os
import random
import zlib

from gitdump.client import FetchStatus
from gitdump.crawler import (
    STATUS_CANCELLED,
    STATUS_COMPLETE,
    STATUS_EMPTY,
    STATUS_FATAL,
    STATUS_NOT_EXPOSED,
    STATUS_PARTIAL,
    CrawlOptions,
    Crawler,
    CrawlSummary,
)
from gitdump.errors import FatalTransportError, NotGitRepository
from gitdump.object_format import SHA256
from gitdump.object_store import DiskObjectStore
from gitdump.objects import hex_to_sha, object_path

from . import TestCase
from .test_index import build_index
from .utils import FakeTransport, RepoBuilder, small_repo


class CrawlSummaryTests(TestCase):
    def test_status(self) -> None:
        self.assertEqual(STATUS_EMPTY, CrawlSummary().status)
        self.assertEqual(STATUS_COMPLETE, CrawlSummary(recovered=[b"a"]).status)
        self.assertEqual(STATUS_COMPLETE, CrawlSummary(reused=[b"a"]).status)
        self.assertEqual(
            STATUS_PARTIAL, CrawlSummary(recovered=[b"a"], failed={"x": "y"}).status
        )
        self.assertEqual(
            STATUS_PARTIAL, CrawlSummary(recovered=[b"a"], corrupt={b"b": "y"}).status
        )
        self.assertEqual(STATUS_NOT_EXPOSED, CrawlSummary(exposed=False).status)
        self.assertEqual(STATUS_CANCELLED, CrawlSummary(cancelled=True).status)
        self.assertEqual(STATUS_FATAL, CrawlSummary(fatal="x", cancelled=True).status)

    def test_ok(self) -> None:
        self.assertTrue(CrawlSummary().ok)
        self.assertTrue(CrawlSummary(recovered=[b"a"], failed={"x": "y"}).ok)
        self.assertFalse(CrawlSummary(fatal="x").ok)
        self.assertFalse(CrawlSummary(exposed=False).ok)
        self.assertEqual(2, CrawlSummary(recovered=[b"a"], reused=[b"b"]).object_count)


class CrawlerTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gitdir = os.path.join(self.make_temp_dir(), ".git")

    def crawl(self, transport: FakeTransport, **kwargs) -> CrawlSummary:
        options = CrawlOptions(workers=4)
        self.crawler = Crawler(transport, DiskObjectStore(self.gitdir), options)
        return self.crawler.run(**kwargs)

    def read(self, path: str) -> bytes:
        with open(os.path.join(self.gitdir, path), "rb") as f:
            return f.read()

    def assertStoredExactly(self, repo: RepoBuilder, shas) -> None:
        for sha in shas:
            self.assertEqual(repo.objects[sha], self.read(object_path(sha)))

    def test_complete(self) -> None:
        repo, ids = small_repo()
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual(set(repo.objects), set(summary.recovered))
        self.assertEqual([], summary.reused)
        self.assertStoredExactly(repo, repo.objects)
        self.assertEqual({b"refs/heads/master": ids["commit2"]}, summary.refs)
        self.assertEqual({b"HEAD": b"refs/heads/master"}, summary.symrefs)
        self.assertEqual("sha1", summary.object_format)
        self.assertEqual(b"ref: refs/heads/master\n", self.read("HEAD"))
        self.assertEqual(ids["commit2"] + b"\n", self.read("refs/heads/master"))
        self.assertIn("logs/refs/heads/master", summary.missing)

    def test_each_target_fetched_once(self) -> None:
        repo = RepoBuilder()
        shared = repo.blob(b"shared\n")
        # Several trees and commits all reference the same blob.
        trees = [
            repo.tree([(b"f%d" % i, 0o100644, shared)]) for i in range(5)
        ]
        parents = []
        for tree in trees:
            parents = [repo.commit(tree, parents)]
        merge = repo.commit(trees[0], [parents[0]] + [repo.commit(t) for t in trees[1:]])
        repo.set_symref("HEAD", "refs/heads/master")
        repo.set_ref("refs/heads/master", merge)
        repo.files["packed-refs"] = merge + b" refs/heads/master\n"
        repo.files["info/refs"] = merge + b"\trefs/heads/master\n"
        transport = FakeTransport(repo.files)
        summary = self.crawl(transport)
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual(set(repo.objects), set(summary.recovered))
        counts = transport.request_counts()
        self.assertEqual({1}, set(counts.values()), counts)

    def test_missing_blob_is_partial(self) -> None:
        repo, ids = small_repo()
        repo.remove_object(ids["lib"])
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_PARTIAL, summary.status)
        self.assertIn(object_path(ids["lib"]), summary.failed)
        self.assertEqual(len(repo.objects) - 1, len(summary.recovered))
        # The ref is still written; its commit is present.
        self.assertEqual(ids["commit2"] + b"\n", self.read("refs/heads/master"))

    def test_unreachable(self) -> None:
        transport = FakeTransport(fatal=True)
        summary = self.crawl(transport)
        self.assertEqual(STATUS_FATAL, summary.status)
        self.assertFalse(summary.ok)
        self.assertEqual(["HEAD"], transport.requests)

    def test_unreachable_raises(self) -> None:
        transport = FakeTransport(fatal=True)
        with self.assertRaises(FatalTransportError) as cm:
            self.crawl(transport, raise_on_fatal=True)
        self.assertEqual(FakeTransport.base_url, cm.exception.url)

    def test_fatal_during_crawl(self) -> None:
        repo, ids = small_repo()
        transport = FakeTransport(repo.files)

        def go_away(path: str) -> None:
            if path.startswith("objects/") and path != "objects/info/packs":
                transport.fatal = True

        transport.on_fetch = go_away
        summary = self.crawl(transport)
        self.assertEqual(STATUS_FATAL, summary.status)
        self.assertEqual([], summary.recovered)
        self.assertTrue(self.crawler.frontier.closed)

    def test_not_exposed(self) -> None:
        transport = FakeTransport()
        summary = self.crawl(transport)
        self.assertEqual(STATUS_NOT_EXPOSED, summary.status)
        self.assertFalse(summary.exposed)
        self.assertEqual(len(transport.requests), len(set(transport.requests)))

    def test_not_exposed_raises(self) -> None:
        with self.assertRaises(NotGitRepository):
            self.crawl(FakeTransport(), raise_on_fatal=True)

    def test_empty(self) -> None:
        summary = self.crawl(FakeTransport({"description": b"Unnamed repository\n"}))
        self.assertEqual(STATUS_EMPTY, summary.status)
        self.assertTrue(summary.ok)
        self.assertEqual(["description"], summary.files)

    def test_resume_is_idempotent(self) -> None:
        repo, ids = small_repo()
        first = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, first.status)

        transport = FakeTransport(repo.files)
        second = self.crawl(transport)
        self.assertEqual(STATUS_COMPLETE, second.status)
        self.assertEqual([], second.recovered)
        self.assertEqual(set(repo.objects), set(second.reused))
        self.assertEqual(first.refs, second.refs)
        fetched_objects = [
            p for p in transport.requests
            if p.startswith("objects/") and p != "objects/info/packs"
        ]
        self.assertEqual([], fetched_objects)
        self.assertStoredExactly(repo, repo.objects)

    def test_resume_with_stale_lock(self) -> None:
        repo, ids = small_repo()
        path = os.path.join(self.gitdir, object_path(ids["readme"]))
        os.makedirs(os.path.dirname(path))
        with open(path + ".lock", "wb") as f:
            f.write(b"")
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertIn(ids["readme"], summary.recovered)
        self.assertNotIn(ids["readme"], summary.reused)
        self.assertFalse(os.path.exists(path + ".lock"))
        self.assertStoredExactly(repo, repo.objects)

    def test_stored_commit_is_expanded(self) -> None:
        repo, ids = small_repo()
        store = DiskObjectStore(self.gitdir)
        store.init()
        store.add_raw(ids["commit2"], repo.objects[ids["commit2"]])
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual([ids["commit2"]], summary.reused)
        self.assertEqual(set(repo.objects) - {ids["commit2"]}, set(summary.recovered))

    def test_orphan_stored_object_is_expanded(self) -> None:
        repo, ids = small_repo()
        orphan_blob = repo.blob(b"only reachable from the orphan\n")
        orphan_tree = repo.tree([(b"orphan", 0o100644, orphan_blob)])
        orphan = repo.commit(orphan_tree, message=b"Orphan\n")
        store = DiskObjectStore(self.gitdir)
        store.init()
        store.add_raw(orphan, repo.objects[orphan])
        summary = self.crawl(FakeTransport(repo.files))
        self.assertIn(orphan_tree, summary.recovered)
        self.assertIn(orphan_blob, summary.recovered)
        self.assertIn(orphan, summary.reused)

    def test_corrupt_local_copy_refetched(self) -> None:
        repo, ids = small_repo()
        store = DiskObjectStore(self.gitdir)
        store.init()
        store.add_raw(ids["readme"], b"this is not an object")
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertIn(ids["readme"], summary.recovered)
        self.assertStoredExactly(repo, [ids["readme"]])

    def test_corrupt_object_not_stored(self) -> None:
        repo, ids = small_repo()
        repo.files[object_path(ids["readme"])] = repo.objects[ids["lib"]]
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_PARTIAL, summary.status)
        self.assertIn(ids["readme"], summary.corrupt)
        self.assertNotIn(ids["readme"], summary.recovered)
        self.assertFalse(os.path.exists(os.path.join(self.gitdir, object_path(ids["readme"]))))

    def test_malformed_tree_mode_is_corrupt(self) -> None:
        repo, ids = small_repo()
        evil = repo.add(b"tree", b"-100644 evil\0" + hex_to_sha(ids["readme"]))
        repo.set_ref("refs/heads/master", repo.commit(evil, [ids["commit2"]]))
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_PARTIAL, summary.status)
        self.assertIn(evil, summary.corrupt)
        self.assertIn(ids["commit2"], summary.recovered)
        self.assertFalse(os.path.exists(os.path.join(self.gitdir, object_path(evil))))

    def test_random_corruption_never_stored(self) -> None:
        repo, ids = small_repo()
        rng = random.Random(1234)
        for sha, raw in repo.objects.items():
            corrupted = bytearray(raw)
            for _ in range(3):
                corrupted[rng.randrange(len(corrupted))] ^= rng.randrange(1, 256)
            repo.files[object_path(sha)] = bytes(corrupted)
        self.crawl(FakeTransport(repo.files))
        store = DiskObjectStore(self.gitdir)
        for sha in store.iter_loose_objects():
            self.assertEqual(
                zlib.decompress(repo.objects[sha]), zlib.decompress(store.get_raw(sha))
            )

    def test_forbidden_object(self) -> None:
        repo, ids = small_repo()
        path = object_path(ids["readme"])
        summary = self.crawl(FakeTransport(repo.files, statuses={path: FetchStatus.FORBIDDEN}))
        self.assertEqual(STATUS_PARTIAL, summary.status)
        self.assertIn(path, summary.forbidden)
        self.assertIn(path, summary.failed)

    def test_forbidden_metadata_is_not_failure(self) -> None:
        repo, ids = small_repo()
        summary = self.crawl(
            FakeTransport(repo.files, statuses={"logs/refs/heads/master": FetchStatus.FORBIDDEN})
        )
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertIn("logs/refs/heads/master", summary.forbidden)

    def test_cancel(self) -> None:
        repo, ids = small_repo()
        transport = FakeTransport(repo.files)

        def cancel_on_objects(path: str) -> None:
            if path.startswith("objects/") and path != "objects/info/packs":
                self.crawler.cancel()

        transport.on_fetch = cancel_on_objects
        summary = self.crawl(transport)
        self.assertEqual(STATUS_CANCELLED, summary.status)
        self.assertEqual([], summary.recovered)
        self.assertEqual({}, summary.failed)

    def test_worker_error_propagates(self) -> None:
        repo, ids = small_repo()
        transport = FakeTransport(repo.files)

        def explode(path: str) -> None:
            if path == object_path(ids["tree2"]):
                raise RuntimeError("boom")

        transport.on_fetch = explode
        self.assertRaises(RuntimeError, self.crawl, transport)
        self.assertTrue(self.crawler.frontier.closed)

    def test_packed_refs_only(self) -> None:
        repo, ids = small_repo()
        del repo.files["refs/heads/master"]
        tag = repo.tag(ids["commit1"], b"v1.0")
        repo.files["packed-refs"] = (
            b"# pack-refs with: peeled fully-peeled sorted \n"
            + ids["commit2"] + b" refs/heads/master\n"
            + tag + b" refs/tags/v1.0\n"
            + b"^" + ids["commit1"] + b"\n"
        )
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertIn(tag, summary.recovered)
        self.assertEqual(ids["commit2"] + b"\n", self.read("refs/heads/master"))
        self.assertEqual(tag + b"\n", self.read("refs/tags/v1.0"))
        self.assertIn("refs/tags/v1.0", summary.files)

    def test_loose_ref_beats_packed(self) -> None:
        repo, ids = small_repo()
        repo.files["packed-refs"] = ids["commit1"] + b" refs/heads/master\n"
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(ids["commit2"], summary.refs[b"refs/heads/master"])
        self.assertEqual(ids["commit2"] + b"\n", self.read("refs/heads/master"))

    def test_ref_to_missing_object_not_written(self) -> None:
        repo, ids = small_repo()
        repo.files["packed-refs"] = b"1" * 40 + b" refs/heads/gone\n"
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_PARTIAL, summary.status)
        self.assertFalse(os.path.exists(os.path.join(self.gitdir, "refs", "heads", "gone")))

    def test_head_synthesized(self) -> None:
        repo, ids = small_repo()
        del repo.files["HEAD"]
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual(b"ref: refs/heads/master\n", self.read("HEAD"))

    def test_seeds_from_index_and_reflog(self) -> None:
        repo, ids = small_repo()
        lost_blob = repo.blob(b"staged but never committed\n")
        lost_tree = repo.tree([(b"x", 0o100644, lost_blob)])
        lost_commit = repo.commit(lost_tree, [ids["commit2"]], b"Amended away\n")
        repo.files["index"] = build_index([(b"staged", 0o100644, lost_blob)])
        zero = b"0" * 40
        repo.files["logs/HEAD"] = (
            zero + b" " + ids["commit2"] + b" A <a@example.com> 1 +0000\tclone\n"
            + ids["commit2"] + b" " + lost_commit + b" A <a@example.com> 2 +0000\tcommit\n"
            + lost_commit + b" " + ids["commit2"] + b" A <a@example.com> 3 +0000\treset\n"
        )
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual(set(repo.objects), set(summary.recovered))

    def test_branch_found_through_reflog(self) -> None:
        repo, ids = small_repo()
        topic_tree = repo.tree([(b"topic", 0o100644, ids["readme"])])
        topic = repo.commit(topic_tree, [ids["commit1"]], b"Topic\n")
        repo.set_ref("refs/heads/topic", topic)
        repo.files["logs/HEAD"] = (
            ids["commit2"] + b" " + topic
            + b" A <a@example.com> 1 +0000\tcheckout: moving from master to topic\n"
        )
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(topic, summary.refs[b"refs/heads/topic"])
        self.assertIn(topic_tree, summary.recovered)

    def test_sha256(self) -> None:
        repo, ids = small_repo(RepoBuilder(SHA256))
        repo.files["config"] = (
            b"[core]\n\trepositoryformatversion = 1\n"
            b"[extensions]\n\tobjectformat = sha256\n"
        )
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual("sha256", summary.object_format)
        self.assertEqual(set(repo.objects), set(summary.recovered))

    def test_invalid_metadata_reported(self) -> None:
        repo, ids = small_repo()
        repo.files["logs/refs/heads/master"] = b"<html>oops</html>\n"
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertIn("logs/refs/heads/master", summary.invalid)
        self.assertFalse(os.path.exists(os.path.join(self.gitdir, "logs", "refs", "heads", "master")))

    def test_pack_files_reported(self) -> None:
        repo, ids = small_repo()
        repo.files["objects/info/packs"] = b"P pack-1234.pack\n"
        summary = self.crawl(FakeTransport(repo.files))
        self.assertEqual(["pack-1234.pack"], summary.pack_files)

    def test_single_worker(self) -> None:
        repo, ids = small_repo()
        options = CrawlOptions(workers=1)
        crawler = Crawler(FakeTransport(repo.files), DiskObjectStore(self.gitdir), options)
        summary = crawler.run()
        self.assertEqual(STATUS_COMPLETE, summary.status)
        self.assertEqual(set(repo.objects), set(summary.recovered))

    def test_for_url(self) -> None:
        crawler = Crawler.for_url("http://example.com/.git/HEAD", self.gitdir)
        self.assertEqual("http://example.com/.git/", crawler.transport.base_url)
        self.assertEqual(os.path.abspath(self.gitdir), crawler.store.gitdir)
