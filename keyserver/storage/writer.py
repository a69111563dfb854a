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
import logging
from typing import Any, Callable, TypeVar

from prometheus_client import Gauge, Histogram
from typing_extensions import Concatenate, ParamSpec

from keyserver.storage.database import DatabasePool, LoggingTransaction
from keyserver.util import Clock
from keyserver.util.async_helpers import Linearizer

logger = logging.getLogger(__name__)

writer_wait_timer = Histogram(
    "keyserver_storage_writer_wait_time",
    "Time spent waiting for the database writer, in seconds",
    ["database"],
)

writers_queued_gauge = Gauge(
    "keyserver_storage_writers_queued",
    "Number of write transactions waiting for the database writer",
    ["database"],
)

P = ParamSpec("P")
R = TypeVar("R")

# All writers queue on the same key: there is exactly one writer slot.
_WRITER_KEY = "write"


class TransactionWriter:
    """Serialises write transactions against a database.

    sqlite only permits a single writer at a time, so every transaction that
    mutates the database is funnelled through here. Writers are started one
    at a time, in the order they called `run_interaction`, and the next one is
    only started once the previous transaction has committed or rolled back.

    Work that needs several writes to happen atomically does them all from
    one `func`, calling the `*_txn` forms of the storage methods with the
    `LoggingTransaction` it is given. Those run inside this writer's
    transaction and never queue again.

    Read-only transactions should go straight to the `DatabasePool`.

    Args:
        db_pool: the database to write to
        clock
    """

    def __init__(self, db_pool: DatabasePool, clock: Clock):
        self._db_pool = db_pool
        self._clock = clock
        self._name = db_pool.name()
        self._linearizer = Linearizer(name="writer:%s" % (self._name,), clock=clock)

        writers_queued_gauge.labels(self._name).set_function(self.queued_writers)

    def queued_writers(self) -> int:
        """The number of writers waiting behind the one currently running."""
        return self._linearizer.queue_length(_WRITER_KEY)

    async def run_interaction(
        self,
        desc: str,
        func: Callable[Concatenate[LoggingTransaction, P], R],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        """Wait for our turn to write, then run `func` in a new transaction.

        The transaction commits if `func` returns and rolls back if it raises,
        in which case the exception is re-raised here.

        Cancelling the returned coroutine while it is queued removes it from
        the queue. After that, and up until the transaction commits, it stops
        the transaction: either before `func` is called or, once `func` has
        returned, by rolling back. Either way the `CancelledError` is only
        raised once the database connection has been released, and the next
        writer is not started until then.

        Args:
            desc: description of the transaction, for logging and metrics
            func: called with the `LoggingTransaction`, followed by `args` and
                `kwargs`.

        Returns:
            The result of func
        """
        start = self._clock.time()
        async with self._linearizer.queue(_WRITER_KEY):
            writer_wait_timer.labels(self._name).observe(self._clock.time() - start)
            logger.debug("Acquired database writer for %s", desc)

            return await self._db_pool.runInteraction(desc, func, *args, **kwargs)
