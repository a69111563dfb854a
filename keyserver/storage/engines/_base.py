# Copyright 2015, 2016 OpenMarket Ltd
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
import abc
from typing import TYPE_CHECKING, Any, Generic, Iterable, Mapping, TypeVar

from keyserver.storage.types import Connection, Cursor, DBAPI2Module

if TYPE_CHECKING:
    from keyserver.storage.database import LoggingDatabaseConnection


class IncorrectDatabaseSetup(RuntimeError):
    """The database server, or the database on it, can't be used as it is."""


ConnectionType = TypeVar("ConnectionType", bound=Connection)


class BaseDatabaseEngine(Generic[ConnectionType], metaclass=abc.ABCMeta):
    """What the storage layer needs to know about one kind of database.

    Attributes:
        module: the DB-API 2 driver
        dialect: schema files named `<name>.sql.<dialect>` are only applied
            to databases of this kind
    """

    dialect: str

    def __init__(self, module: DBAPI2Module, config: Mapping[str, Any]):
        self.module = module
        self.config = config

    @abc.abstractmethod
    def check_database(
        self, db_conn: "LoggingDatabaseConnection", allow_outdated_version: bool = False
    ) -> None:
        """Raises `IncorrectDatabaseSetup` if the server is unsuitable."""

    @abc.abstractmethod
    def check_new_database(self, txn: Cursor) -> None:
        """Extra checks, run only before creating the schema in an empty
        database."""

    @abc.abstractmethod
    def convert_param_style(self, sql: str) -> str:
        """Rewrites the `?` placeholders we write SQL with for the driver."""

    @abc.abstractmethod
    def on_new_connection(self, db_conn: "LoggingDatabaseConnection") -> None:
        ...

    @abc.abstractmethod
    def is_connection_closed(self, conn: ConnectionType) -> bool:
        ...

    @abc.abstractmethod
    def in_transaction(self, conn: ConnectionType) -> bool:
        ...

    def execute_batch(
        self, cursor: Cursor, sql: str, args: Iterable[Iterable[Any]]
    ) -> None:
        """Runs the already converted `sql` for each set of parameters."""
        cursor.executemany(sql, args)  # type: ignore[arg-type]
