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

import logging
from typing import TYPE_CHECKING, List, Optional, Type

from keyserver.storage.database import DatabasePool, make_conn
from keyserver.storage.databases.main import DataStore
from keyserver.storage.engines import create_engine
from keyserver.storage.prepare_database import prepare_database

if TYPE_CHECKING:
    from keyserver.server import KeyServer

logger = logging.getLogger(__name__)


class Databases:
    """Opens each configured database and the data stores that live on it.

    Attributes:
        databases: a `DatabasePool` per configured database
        main: the data store holding device keys
    """

    def __init__(self, main_store_class: Type[DataStore], hs: "KeyServer"):
        self.databases: List[DatabasePool] = []
        main: Optional[DataStore] = None

        for database_config in hs.config.database.databases:
            db_name = database_config.name
            engine = create_engine(database_config.config)

            # The stores are handed this connection to check their statements
            # against, before the pool takes over.
            db_conn = make_conn(database_config, engine, "startup")
            try:
                logger.info("[database config %r]: Checking database server", db_name)
                engine.check_database(db_conn)

                logger.info(
                    "[database config %r]: Preparing for data stores %r",
                    db_name,
                    database_config.databases,
                )
                prepare_database(db_conn, engine, data_stores=database_config.databases)

                database = DatabasePool(hs, database_config, engine)

                if "main" in database_config.databases:
                    if main is not None:
                        raise Exception("'main' data store already configured")
                    main = main_store_class(database, db_conn, hs)

                db_conn.commit()
            finally:
                db_conn.close()

            self.databases.append(database)
            logger.info("[database config %r]: prepared", db_name)

        if main is None:
            raise Exception("No 'main' database configured")

        self.main = main
