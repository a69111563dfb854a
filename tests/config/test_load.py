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
from contextlib import redirect_stdout
from io import StringIO

from keyserver.config import ConfigError
from keyserver.config.keyserver import KeyServerConfig

from tests.config.utils import ConfigFileTestCase


class ConfigLoadingFileTestCase(ConfigFileTestCase):
    def test_load_fails_if_server_name_missing(self) -> None:
        self.generate_config_and_remove_lines_containing("server_name")
        with self.assertRaises(ConfigError):
            KeyServerConfig.load_config("", ["-c", self.config_file])
        with self.assertRaises(ConfigError):
            KeyServerConfig.load_or_generate_config("", ["-c", self.config_file])

    def test_load_generated_config(self) -> None:
        self.generate_config()

        config = KeyServerConfig.load_config("", ["-c", self.config_file])
        self.assertEqual(config.server.server_name, "test.example")
        self.assertIsNone(config.server.metrics_port)

        database = config.database.get_single_database()
        self.assertEqual(database.config["name"], "sqlite3")
        self.assertEqual(
            database.config["args"]["database"], os.path.join(self.dir, "keyserver.db")
        )
        # sqlite is always limited to a single connection.
        self.assertEqual(database.config["args"]["cp_max"], 1)

        self.assertEqual(
            config.logging.log_config,
            os.path.join(self.dir, "test.example.log.config"),
        )

    def test_database_path_argument_overrides_config(self) -> None:
        self.generate_config()

        config = KeyServerConfig.load_config(
            "", ["-c", self.config_file, "-d", ":memory:"]
        )
        self.assertEqual(
            config.database.get_single_database().config["args"]["database"],
            ":memory:",
        )

    def test_later_config_files_override_earlier(self) -> None:
        self.generate_config()

        extra_file = os.path.join(self.dir, "override.yaml")
        with open(extra_file, "w") as f:
            f.write("metrics_port: 9092\n")

        config = KeyServerConfig.load_config(
            "", ["-c", self.config_file, "-c", extra_file]
        )
        self.assertEqual(config.server.metrics_port, 9092)
        self.assertEqual(config.server.server_name, "test.example")

    def test_lines_appended_to_generated_config_are_read(self) -> None:
        self.generate_config()
        with open(self.config_file) as f:
            self.assertTrue(f.read().endswith("\n"))

        self.add_lines_to_config(["metrics_port: 9092"])

        config = KeyServerConfig.load_config("", ["-c", self.config_file])
        self.assertEqual(config.server.metrics_port, 9092)

    def test_load_directory_of_config_files(self) -> None:
        self.generate_config()
        self.add_lines_to_config(["enable_db_profiling: true"])

        config = KeyServerConfig.load_config("", ["-c", self.dir])
        self.assertTrue(config.server.enable_db_profiling)

    def test_bad_metrics_port(self) -> None:
        self.generate_config()
        self.add_lines_to_config(["metrics_port: 'lots'"])

        with self.assertRaises(ConfigError) as cm:
            KeyServerConfig.load_config("", ["-c", self.config_file])
        self.assertEqual(cm.exception.path, ("metrics_port",))

    def test_load_or_generate_regenerates_missing_log_config(self) -> None:
        self.generate_config()

        log_config = os.path.join(self.dir, "test.example.log.config")
        os.remove(log_config)

        config = KeyServerConfig.load_or_generate_config("", ["-c", self.config_file])
        assert config is not None
        self.assertEqual(config.server.server_name, "test.example")
        self.assertTrue(os.path.exists(log_config))

    def test_generate_config_does_not_overwrite(self) -> None:
        self.generate_config()
        self.add_lines_to_config(["metrics_port: 9092"])

        with redirect_stdout(StringIO()):
            self.assertIsNone(
                KeyServerConfig.load_or_generate_config(
                    "",
                    [
                        "--generate-config",
                        "-c",
                        self.config_file,
                        "-H",
                        "other.example",
                    ],
                )
            )

        config = KeyServerConfig.load_config("", ["-c", self.config_file])
        self.assertEqual(config.server.server_name, "test.example")
        self.assertEqual(config.server.metrics_port, 9092)

    def test_generate_config_requires_server_name(self) -> None:
        with redirect_stdout(StringIO()), self.assertRaises(ConfigError):
            KeyServerConfig.load_or_generate_config(
                "", ["--generate-config", "-c", self.config_file]
            )
