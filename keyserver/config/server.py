# Copyright 2014-2021 The Matrix.org Foundation C.I.C.
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
from typing import Any, Optional

from keyserver.types import JsonDict

from ._base import Config, ConfigError


class ServerConfig(Config):
    section = "server"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        server_name = config.get("server_name")
        if not isinstance(server_name, str) or not server_name:
            raise ConfigError(
                "server_name must be a non-empty string", ("server_name",)
            )
        self.server_name = server_name

        # Whether to log periodic summaries of time spent in the database
        # on the `keyserver.storage.TIME` logger.
        self.enable_db_profiling = bool(config.get("enable_db_profiling", False))

        # Where to serve prometheus metrics. No listener unless a port is given.
        metrics_port = config.get("metrics_port")
        if metrics_port is not None and not isinstance(metrics_port, int):
            raise ConfigError("metrics_port must be an integer", ("metrics_port",))
        self.metrics_port: Optional[int] = metrics_port
        self.metrics_bind_address: str = config.get(
            "metrics_bind_address", "127.0.0.1"
        )

    def generate_config_section(self, server_name: str, **kwargs: Any) -> str:
        return (
            """\
        server_name: "%(server_name)s"
        """
            % locals()
        )
