# log_utils.py -- Logging utilities for gitdump
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

"""Logging utilities for gitdump.

gitdump is usable as a library, so the package logger carries a no-op
handler until a caller configures logging. The command-line interface calls
default_logging_config(), which also honours the GITDUMP_TRACE environment
variable for request-level tracing.

Modules only need getLogger, which is re-exported here for convenience.
"""

import logging
import os
import sys
from typing import Optional, Union

getLogger = logging.getLogger

TRACE_ENV = "GITDUMP_TRACE"

TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


class _NullHandler(logging.Handler):
    """No-op logging handler to avoid unexpected logging warnings."""

    def emit(self, record: logging.LogRecord) -> None:
        pass


_NULL_HANDLER = _NullHandler()
_GITDUMP_LOGGER = getLogger("gitdump")
_GITDUMP_LOGGER.addHandler(_NULL_HANDLER)


def _get_trace_target() -> Optional[Union[str, int]]:
    """Get the trace target from the GITDUMP_TRACE environment variable.

    Returns:
        - None if tracing is disabled
        - 2 for stderr output (values "1", "2", "true")
        - int (3-9) for file descriptor
        - str for an absolute file or directory path
    """
    trace_value = os.environ.get(TRACE_ENV, "")

    if not trace_value or trace_value.lower() in ("0", "false"):
        return None

    if trace_value.lower() in ("1", "2", "true"):
        return 2

    try:
        fd = int(trace_value)
    except ValueError:
        pass
    else:
        if 3 <= fd <= 9:
            return fd
        return None

    if os.path.isabs(trace_value):
        return trace_value

    return None


def _configure_logging_from_trace() -> bool:
    """Configure logging based on GITDUMP_TRACE.

    Returns True if trace configuration was successful, False otherwise.
    """
    trace_target = _get_trace_target()
    if trace_target is None:
        return False

    if trace_target == 2:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format=TRACE_FORMAT)
        return True

    if isinstance(trace_target, int):
        try:
            stream = os.fdopen(trace_target, "w", buffering=1)
        except OSError as e:
            sys.stderr.write(
                f"Warning: Failed to open {TRACE_ENV} fd {trace_target}: {e}\n"
            )
            return False
        logging.basicConfig(level=logging.DEBUG, stream=stream, format=TRACE_FORMAT)
        return True

    if os.path.isdir(trace_target):
        filename = os.path.join(trace_target, f"trace.{os.getpid()}")
    else:
        filename = trace_target
    try:
        logging.basicConfig(
            level=logging.DEBUG, filename=filename, filemode="a", format=TRACE_FORMAT
        )
    except OSError as e:
        sys.stderr.write(f"Warning: Failed to open {TRACE_ENV} file {filename}: {e}\n")
        return False
    return True


def default_logging_config(level: int = logging.INFO) -> None:
    """Set up the default gitdump loggers.

    GITDUMP_TRACE takes precedence over ``level``; without it, messages of
    ``level`` and above go to stderr.

    Args:
      level: Logging level used when tracing is not enabled
    """
    remove_null_handler()

    if not _configure_logging_from_trace():
        logging.basicConfig(
            level=level,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s: %(message)s",
        )
    # urllib3 is chatty about retries and pool reuse at DEBUG
    if level > logging.DEBUG:
        getLogger("urllib3").setLevel(logging.WARNING)


def remove_null_handler() -> None:
    """Remove the null handler from the gitdump logger."""
    _GITDUMP_LOGGER.removeHandler(_NULL_HANDLER)
