# Copyright 2015, 2016 OpenMarket Ltd
# Copyright 2022 The Matrix.org Foundation C.I.C.
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
"""Metrics shared by the whole key server.

Metrics that belong to one part of it are defined next to the code that
updates them.
"""
import logging

from prometheus_client import Gauge, start_http_server

from twisted.python.threadpool import ThreadPool

logger = logging.getLogger(__name__)

threadpool_threads = Gauge(
    "keyserver_threadpool_threads",
    "Threads in a threadpool, by whether they are working",
    ["name", "state"],
)

threadpool_size_limit = Gauge(
    "keyserver_threadpool_size_limit",
    "The configured minimum and maximum size of a threadpool",
    ["name", "bound"],
)


def register_threadpool(name: str, threadpool: ThreadPool) -> None:
    """Reports on `threadpool` under `name`, e.g. "database-master"."""
    threadpool_size_limit.labels(name, "min").set(threadpool.min)
    threadpool_size_limit.labels(name, "max").set(threadpool.max)

    threadpool_threads.labels(name, "total").set_function(
        lambda: len(threadpool.threads)
    )
    threadpool_threads.labels(name, "working").set_function(
        lambda: len(threadpool.working)
    )


def start_metrics_listener(port: int, bind_address: str) -> None:
    """Serves the default registry over HTTP, from a thread of its own."""
    logger.info("Serving metrics on %s:%d", bind_address, port)
    start_http_server(port, addr=bind_address)


__all__ = ["register_threadpool", "start_metrics_listener"]
