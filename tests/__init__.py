# __init__.py -- The tests for gitdump
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

"""Tests for gitdump."""

import os
import shutil
import tempfile
from typing import Optional
from unittest import TestCase as _TestCase

# Environment variables that change how gitdump behaves.
ISOLATED_ENV = (
    "GITDUMP_TRACE",
    "http_proxy",
    "https_proxy",
    "all_proxy",
    "no_proxy",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
)


class TestCase(_TestCase):
    def setUp(self) -> None:
        super().setUp()
        for name in ISOLATED_ENV:
            self.overrideEnv(name, None)

    def overrideEnv(self, name: str, value: Optional[str]) -> None:
        def restore(oldvalue: Optional[str]) -> None:
            if oldvalue is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = oldvalue

        oldvalue = os.environ.get(name)
        self.addCleanup(restore, oldvalue)
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value

    def make_temp_dir(self) -> str:
        path = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, path)
        return path
