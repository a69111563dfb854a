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

from parameterized import parameterized

from keyserver.config import ConfigError
from keyserver.config.server import ServerConfig

from tests import unittest


class ServerConfigTestCase(unittest.TestCase):
    def test_defaults(self) -> None:
        conf = ServerConfig()
        conf.read_config({"server_name": "test.example"})

        self.assertEqual(conf.server_name, "test.example")
        self.assertFalse(conf.enable_db_profiling)
        self.assertIsNone(conf.metrics_port)
        self.assertEqual(conf.metrics_bind_address, "127.0.0.1")

    @parameterized.expand([({},), ({"server_name": ""},), ({"server_name": 7},)])
    def test_server_name_required(self, config: dict) -> None:
        with self.assertRaises(ConfigError):
            ServerConfig().read_config(config)

    def test_metrics_listener(self) -> None:
        conf = ServerConfig()
        conf.read_config(
            {
                "server_name": "test.example",
                "metrics_port": 9092,
                "metrics_bind_address": "0.0.0.0",
            }
        )
        self.assertEqual(conf.metrics_port, 9092)
        self.assertEqual(conf.metrics_bind_address, "0.0.0.0")
