# cli.py -- Command-line interface to gitdump
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

"""Command-line interface to gitdump.

    gitdump URL [PATH]

recovers the repository whose .git directory is served at URL into
PATH/.git, and with --checkout also materialises the working tree with
git itself.
"""

__all__ = [
    "Command",
    "checkout",
    "cmd_dump",
    "format_summary",
    "main",
    "parse_header",
    "signal_int",
]

import argparse
import logging
import os
import signal
import subprocess
import sys
import types
from collections.abc import Sequence
from typing import Optional

import urllib3
import urllib3.exceptions

from .client import DEFAULT_DEADLINE, DEFAULT_RETRIES, DEFAULT_TIMEOUT
from .crawler import (
    DEFAULT_WORKERS,
    STATUS_CANCELLED,
    STATUS_FATAL,
    STATUS_NOT_EXPOSED,
    CrawlOptions,
    Crawler,
    CrawlSummary,
)
from .log_utils import default_logging_config, getLogger

logger = getLogger(__name__)

DEFAULT_PATH = "git-dumped"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_EXPOSED = 2

_EXIT_CODES = {
    STATUS_FATAL: EXIT_FAILURE,
    STATUS_CANCELLED: EXIT_FAILURE,
    STATUS_NOT_EXPOSED: EXIT_NOT_EXPOSED,
}


def signal_int(signal: int, frame: Optional[types.FrameType]) -> None:
    """Handle interrupt signal by exiting.

    Args:
        signal: Signal number
        frame: Current stack frame
    """
    sys.exit(1)


def parse_header(value: str) -> tuple[str, str]:
    """Parse a "Name: value" header argument.

    Raises:
      argparse.ArgumentTypeError: if there is no colon
    """
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"invalid header {value!r}, expected 'Name: value'")
    return name.strip(), header_value.strip()


def _positive_int(value: str) -> int:
    ret = int(value)
    if ret < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, not {ret}")
    return ret


def format_summary(summary: CrawlSummary) -> str:
    """Describe the outcome of a crawl for humans."""
    lines = [f"Status: {summary.status}"]
    if summary.fatal:
        lines.append(f"Fatal: {summary.fatal}")
    lines.append(
        f"Objects: {len(summary.recovered)} recovered, "
        f"{len(summary.reused)} already present"
    )
    if summary.corrupt:
        lines.append(f"Corrupt objects: {len(summary.corrupt)}")
    if summary.failed:
        lines.append(f"Failed: {len(summary.failed)}")
    lines.append(f"Files: {len(summary.files)}")
    if summary.refs:
        lines.append(f"Refs: {len(summary.refs)}")
    if summary.pack_files:
        lines.append(
            f"Pack files (not recoverable): {', '.join(sorted(summary.pack_files))}"
        )
    return "\n".join(lines)


class Command:
    """A gitdump command."""

    def run(self, args: Sequence[str]) -> Optional[int]:
        """Run the command."""
        raise NotImplementedError(self.run)


class cmd_dump(Command):
    """Recover a repository from an exposed .git directory."""

    def get_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="gitdump",
            description="Recover a git repository from a .git directory served over HTTP",
        )
        parser.add_argument("url", help="URL of the exposed .git directory")
        parser.add_argument(
            "path",
            nargs="?",
            default=DEFAULT_PATH,
            help="Directory to recover into (default: %(default)s)",
        )
        parser.add_argument(
            "-j",
            "--jobs",
            type=_positive_int,
            default=DEFAULT_WORKERS,
            help="Number of concurrent downloads (default: %(default)s)",
        )
        parser.add_argument(
            "--timeout", type=float, default=DEFAULT_TIMEOUT, help="Request timeout in seconds"
        )
        parser.add_argument(
            "--deadline",
            type=float,
            default=DEFAULT_DEADLINE,
            help="Longest time one download may take, in seconds (default: %(default)s)",
        )
        parser.add_argument(
            "--retries",
            type=int,
            default=DEFAULT_RETRIES,
            help="Retries for transient failures",
        )
        parser.add_argument(
            "--rate", type=float, default=None, help="Maximum requests per second"
        )
        parser.add_argument("--proxy", type=str, default=None, help="Proxy URL")
        parser.add_argument(
            "--no-verify-ssl",
            action="store_true",
            help="Do not verify TLS certificates",
        )
        parser.add_argument(
            "-H",
            "--header",
            dest="headers",
            action="append",
            type=parse_header,
            default=[],
            help="Extra request header, 'Name: value'; may be repeated",
        )
        parser.add_argument("--user-agent", type=str, default=None, help="User-Agent header")
        parser.add_argument(
            "--checkout",
            action="store_true",
            help="Run 'git checkout .' in PATH after recovering",
        )
        parser.add_argument(
            "-v", "--verbose", action="store_true", help="Log every request"
        )
        return parser

    def run(self, args: Sequence[str]) -> int:
        parsed_args = self.get_parser().parse_args(args)
        default_logging_config(logging.DEBUG if parsed_args.verbose else logging.INFO)

        options = CrawlOptions(
            workers=parsed_args.jobs,
            timeout=parsed_args.timeout,
            deadline=parsed_args.deadline,
            retries=parsed_args.retries,
            rate=parsed_args.rate,
            proxy=parsed_args.proxy,
            verify_ssl=not parsed_args.no_verify_ssl,
            headers=dict(parsed_args.headers),
            user_agent=parsed_args.user_agent,
        )
        if not options.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        gitdir = os.path.join(parsed_args.path, ".git")
        os.makedirs(gitdir, exist_ok=True)
        crawler = Crawler.for_url(parsed_args.url, gitdir, options)

        def cancel(signum: int, frame: Optional[types.FrameType]) -> None:
            logger.warning("interrupted, stopping")
            crawler.cancel()

        previous = signal.signal(signal.SIGINT, cancel)
        try:
            summary = crawler.run()
        finally:
            signal.signal(signal.SIGINT, previous)

        print(format_summary(summary))
        exit_code = _EXIT_CODES.get(summary.status, EXIT_OK)
        if exit_code == EXIT_OK and parsed_args.checkout:
            return checkout(parsed_args.path)
        return exit_code


def checkout(path: str) -> int:
    """Run ``git checkout .`` in a recovered working tree.

    Returns: the exit code of git, or 1 if git could not be run
    """
    try:
        return subprocess.run(["git", "checkout", "."], cwd=path).returncode
    except FileNotFoundError:
        logger.error("git not found; run 'git checkout .' in %s yourself", path)
        return EXIT_FAILURE


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the gitdump CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]
    return cmd_dump().run(argv)


def _main() -> None:
    signal.signal(signal.SIGINT, signal_int)
    sys.exit(main())


if __name__ == "__main__":
    _main()
