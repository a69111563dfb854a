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
from abc import ABCMeta
from typing import TYPE_CHECKING

from keyserver.storage.database import DatabasePool, LoggingDatabaseConnection
from keyserver.storage.writer import TransactionWriter

if TYPE_CHECKING:
    from keyserver.server import KeyServer


class SQLBaseStore(metaclass=ABCMeta):
    """Base class for the data stores.

    There is one instance per data store, so several may share a database.
    Reads go straight to `db_pool`. Anything that writes goes through
    `writer`, which is shared by every store on the same database.

    Args:
        database: the database this store lives on
        db_conn: a connection to it, only valid during construction
        hs
    """

    def __init__(
        self,
        database: DatabasePool,
        db_conn: LoggingDatabaseConnection,
        hs: "KeyServer",
    ):
        self.hs = hs
        self._clock = hs.get_clock()
        self.db_pool = database
        self.database_engine = database.engine
        self.writer: TransactionWriter = hs.get_transaction_writer(database)
