# Copyright 2020 The Matrix.org Foundation C.I.C.
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
"""The parts of PEP 249 that the storage layer relies on, as protocols that
both sqlite3 and psycopg2 satisfy.
"""
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple, Type

from typing_extensions import Protocol


class Cursor(Protocol):
    def execute(self, sql: str, parameters: Sequence[Any] = ...) -> Any:
        ...

    def executemany(self, sql: str, parameters: Sequence[Sequence[Any]]) -> Any:
        ...

    def fetchone(self) -> Optional[Tuple]:
        ...

    def fetchall(self) -> List[Tuple]:
        ...

    def __iter__(self) -> Iterator[Tuple]:
        ...

    def close(self) -> None:
        ...


class Connection(Protocol):
    def cursor(self) -> Cursor:
        ...

    def close(self) -> None:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


class DBAPI2Module(Protocol):
    """A driver module. The exception classes are read-only properties here so
    that the modules themselves match."""

    # Base class of every error the driver raises.
    @property
    def Error(self) -> Type[Exception]:
        ...

    # The database went away, ran out of space, or similar. These reach the
    # caller like any other error.
    @property
    def OperationalError(self) -> Type[Exception]:
        ...

    # A NOT NULL or UNIQUE constraint was violated.
    @property
    def IntegrityError(self) -> Type[Exception]:
        ...

    # Arguments differ between drivers.
    @property
    def connect(self) -> Callable[..., Connection]:
        ...


__all__ = ["Cursor", "Connection", "DBAPI2Module"]
