# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2017-2018 New Vector Ltd
# Copyright 2019 The Matrix.org Foundation C.I.C.
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

import functools
import logging
from typing import Any, Callable, Dict, Optional, TypeVar, cast

from keyserver.config.keyserver import KeyServerConfig
from keyserver.handlers.device_keys import DeviceKeysHandler
from keyserver.storage.database import DatabasePool
from keyserver.storage.databases import Databases
from keyserver.storage.databases.main import DataStore
from keyserver.storage.writer import TransactionWriter
from keyserver.types import IKeyServerReactor
from keyserver.util import Clock

logger = logging.getLogger(__name__)


T = TypeVar("T", bound=Callable[..., Any])


def cache_in_self(builder: T) -> T:
    """Makes `get_foo` build its result once and keep it as `self._foo`.

    Tests can set `_foo` beforehand to replace the component.
    """
    if not builder.__name__.startswith("get_"):
        raise Exception("@cache_in_self can only wrap get_* methods")

    attr_name = builder.__name__[len("get") :]
    building = False

    @functools.wraps(builder)
    def _get(self: "KeyServer") -> Any:
        nonlocal building

        if hasattr(self, attr_name):
            return getattr(self, attr_name)
        if building:
            raise ValueError("Cyclic dependency while building %s" % (attr_name,))

        building = True
        try:
            dep = builder(self)
        finally:
            building = False
        setattr(self, attr_name, dep)
        return dep

    return cast(T, _get)


class KeyServer:
    """Holds the key server's components, building each on first use.

    `setup()` must be called before anything that touches the database.
    """

    DATASTORE_CLASS = DataStore

    def __init__(
        self,
        hostname: str,
        config: KeyServerConfig,
        reactor: Optional[IKeyServerReactor] = None,
    ):
        if not reactor:
            from twisted.internet import reactor as _reactor

            reactor = cast(IKeyServerReactor, _reactor)

        self._reactor = reactor
        self.hostname = hostname
        self.config = config
        self.datastores: Optional[Databases] = None

        # Keyed by database name, so each database has a single writer.
        self._transaction_writers: Dict[str, TransactionWriter] = {}

    def setup(self) -> None:
        logger.info("Opening databases for %s", self.hostname)
        self.datastores = Databases(self.DATASTORE_CLASS, self)

        if self.config.server.enable_db_profiling:
            for database in self.datastores.databases:
                database.start_profiling()

    def get_reactor(self) -> IKeyServerReactor:
        return self._reactor

    def get_config(self) -> KeyServerConfig:
        return self.config

    @cache_in_self
    def get_clock(self) -> Clock:
        return Clock(self._reactor)

    def get_datastores(self) -> Databases:
        if not self.datastores:
            raise Exception("KeyServer.setup must be called before getting datastores")
        return self.datastores

    def get_transaction_writer(self, database: DatabasePool) -> TransactionWriter:
        """The writer that serialises write transactions against `database`."""
        writer = self._transaction_writers.get(database.name())
        if writer is None:
            writer = TransactionWriter(database, self.get_clock())
            self._transaction_writers[database.name()] = writer
        return writer

    @cache_in_self
    def get_device_keys_handler(self) -> DeviceKeysHandler:
        return DeviceKeysHandler(self)
