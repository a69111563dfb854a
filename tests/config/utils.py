# Copyright 2019 New Vector Ltd
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import os
import shutil
import tempfile
from contextlib import redirect_stdout
from io import StringIO
from typing import List

from keyserver.config.keyserver import KeyServerConfig

from tests import unittest


class ConfigFileTestCase(unittest.TestCase):
    """Gives each test a scratch directory to generate config files into."""

    def setUp(self) -> None:
        super().setUp()
        self.dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.dir)
        self.config_file = os.path.join(self.dir, "keyserver.yaml")

    def generate_config(self) -> None:
        argv = ["--generate-config", "-c", self.config_file, "-H", "test.example"]
        with redirect_stdout(StringIO()):
            KeyServerConfig.load_or_generate_config(
                "", argv + ["--data-directory", self.dir]
            )

    def generate_config_and_remove_lines_containing(self, needle: str) -> None:
        self.generate_config()

        with open(self.config_file) as f:
            kept = [line for line in f if needle not in line]
        with open(self.config_file, "w") as f:
            f.writelines(kept)

    def add_lines_to_config(self, lines: List[str]) -> None:
        with open(self.config_file, "a") as f:
            f.writelines(line + "\n" for line in lines)
