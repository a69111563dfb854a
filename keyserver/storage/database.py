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
"""Connection pools and transactions.

Everything the data stores do against a database happens inside
`DatabasePool.runInteraction`: the function given to it runs on a database
thread with a `LoggingTransaction`, which logs and times each statement. The
transaction is committed when the function returns and rolled back when it
raises. Errors from the driver reach the caller as they are; nothing in here
retries a failed transaction.
"""
import logging
import threading
import time
import types
from collections import defaultdict
from time import monotonic as monotonic_time
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

import attr
from prometheus_client import Histogram
from typing_extensions import Concatenate, ParamSpec

from twisted.enterprise import adbapi
from twisted.internet.defer import CancelledError
from twisted.internet.interfaces import IReactorCore

from keyserver.config.database import DatabaseConnectionConfig
from keyserver.logging.context import (
    LoggingContext,
    current_context,
    make_deferred_yieldable,
)
from keyserver.metrics import register_threadpool
from keyserver.storage.engines import BaseDatabaseEngine
from keyserver.storage.types import Connection, Cursor
from keyserver.util.async_helpers import delay_cancellation

if TYPE_CHECKING:
    from keyserver.server import KeyServer

logger = logging.getLogger(__name__)

sql_logger = logging.getLogger("keyserver.storage.SQL")
transaction_logger = logging.getLogger("keyserver.storage.txn")
perf_logger = logging.getLogger("keyserver.storage.TIME")

sql_scheduling_timer = Histogram(
    "keyserver_storage_schedule_time",
    "Time waited for a database connection, in seconds",
)
sql_query_timer = Histogram(
    "keyserver_storage_query_time", "Time spent in each SQL statement", ["verb"]
)
sql_txn_timer = Histogram(
    "keyserver_storage_transaction_time", "Time spent in each transaction", ["desc"]
)

# How often the profiler reports, in milliseconds.
PROFILE_INTERVAL_MS = 10 * 1000

P = ParamSpec("P")
R = TypeVar("R")


def _connection_args(db_config: DatabaseConnectionConfig) -> Dict[str, Any]:
    """The `args` of a database config that are meant for the driver, rather
    than for the adbapi pool."""
    return {
        key: value
        for key, value in db_config.config.get("args", {}).items()
        if not key.startswith("cp_")
    }


def make_pool(
    reactor: IReactorCore,
    db_config: DatabaseConnectionConfig,
    engine: BaseDatabaseEngine,
) -> adbapi.ConnectionPool:
    """Builds the adbapi pool for a configured database.

    Connections are re-opened when they drop unless the config says
    otherwise, and every new connection is set up by the engine.
    """
    pool_args = dict(db_config.config.get("args", {}))
    pool_args.setdefault("cp_reconnect", True)

    def _on_new_connection(conn: Connection) -> None:
        with LoggingContext("db.on_new_connection"):
            engine.on_new_connection(
                LoggingDatabaseConnection(conn, engine, "on_new_connection")
            )

    pool = adbapi.ConnectionPool(
        db_config.config["name"],
        cp_reactor=reactor,
        cp_openfun=_on_new_connection,
        **pool_args,
    )
    register_threadpool("database-%s" % (db_config.name,), pool.threadpool)
    return pool


def make_conn(
    db_config: DatabaseConnectionConfig,
    engine: BaseDatabaseEngine,
    default_txn_name: str,
) -> "LoggingDatabaseConnection":
    """Opens a single connection outside of any pool, for use at startup."""
    db_conn = LoggingDatabaseConnection(
        engine.module.connect(**_connection_args(db_config)),
        engine,
        default_txn_name,
    )
    engine.on_new_connection(db_conn)
    return db_conn


@attr.s(slots=True, auto_attribs=True)
class LoggingDatabaseConnection:
    """A driver connection whose cursors are `LoggingTransaction`s."""

    conn: Connection
    engine: BaseDatabaseEngine
    default_txn_name: str

    def cursor(self, *, txn_name: Optional[str] = None) -> "LoggingTransaction":
        return LoggingTransaction(
            self.conn.cursor(), txn_name or self.default_txn_name, self.engine
        )

    def close(self) -> None:
        self.conn.close()

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    # Anything else, such as psycopg2's `server_version`, comes from the
    # driver connection.
    def __getattr__(self, name: str) -> Any:
        return getattr(self.conn, name)


class LoggingTransaction:
    """Wraps a driver cursor, logging and timing each statement run on it.

    This is the `txn` that `runInteraction` hands to its function, and that
    the `*_txn` methods of the stores take. Everything executed on it is part
    of the one transaction.

    Args:
        txn: the driver cursor
        name: identifies the transaction in the SQL logs
        database_engine
    """

    __slots__ = ["txn", "name", "database_engine"]

    def __init__(self, txn: Cursor, name: str, database_engine: BaseDatabaseEngine):
        self.txn = txn
        self.name = name
        self.database_engine = database_engine

    def fetchone(self) -> Optional[Tuple]:
        return self.txn.fetchone()

    def fetchall(self) -> List[Tuple]:
        return self.txn.fetchall()

    def __iter__(self) -> Iterator[Tuple]:
        return iter(self.txn)

    def execute(self, sql: str, *args: Any) -> None:
        self._do_execute(self.txn.execute, sql, *args)

    def executemany(self, sql: str, *args: Any) -> None:
        self._do_execute(self.txn.executemany, sql, *args)

    def execute_batch(self, sql: str, args: Iterable[Iterable[Any]]) -> None:
        """Runs `sql` once for each set of parameters in `args`, in whichever
        way is quickest for the database."""
        self._do_execute(
            lambda converted_sql: self.database_engine.execute_batch(
                self.txn, converted_sql, args
            ),
            sql,
        )

    def _do_execute(
        self,
        func: Callable[Concatenate[str, P], R],
        sql: str,
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        if sql_logger.isEnabledFor(logging.DEBUG):
            one_line_sql = " ".join(line.strip() for line in sql.splitlines())
            sql_logger.debug("[SQL] {%s} %s", self.name, one_line_sql.strip())
            if args:
                sql_logger.debug("[SQL values] {%s} %r", self.name, args[0])  # type: ignore[index]

        sql = self.database_engine.convert_param_style(sql)

        start = time.time()
        try:
            return func(sql, *args, **kwargs)
        except Exception as e:
            sql_logger.debug("[SQL FAIL] {%s} %s", self.name, e)
            raise
        finally:
            secs = time.time() - start
            sql_logger.debug("[SQL time] {%s} %f sec", self.name, secs)
            sql_query_timer.labels(sql.split()[0]).observe(secs)

    def close(self) -> None:
        self.txn.close()

    def __enter__(self) -> "LoggingTransaction":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[types.TracebackType],
    ) -> None:
        self.close()


class PerformanceCounters:
    """Totals up the time spent in each kind of transaction between reports."""

    def __init__(self) -> None:
        self._totals: Dict[str, Tuple[int, float]] = {}
        self._reported: Dict[str, Tuple[int, float]] = {}

    def update(self, key: str, duration_secs: float) -> None:
        count, total = self._totals.get(key, (0, 0.0))
        self._totals[key] = (count + 1, total + duration_secs)

    def interval(self, interval_duration_secs: float, limit: int = 3) -> str:
        """Describes the `limit` kinds of transaction that took up the most of
        the last `interval_duration_secs`, and starts a new interval."""
        usage = []
        for key, (count, total) in self._totals.items():
            reported_count, reported_total = self._reported.get(key, (0, 0.0))
            usage.append(
                (
                    (total - reported_total) / interval_duration_secs,
                    count - reported_count,
                    key,
                )
            )
        self._reported = dict(self._totals)

        usage.sort(reverse=True)
        return ", ".join(
            "%s(%d): %.3f%%" % (key, count, 100 * ratio)
            for ratio, count, key in usage[:limit]
        )


class DatabasePool:
    """A configured database and the pool of connections to it.

    Several data stores may share one pool.
    """

    def __init__(
        self,
        hs: "KeyServer",
        database_config: DatabaseConnectionConfig,
        engine: BaseDatabaseEngine,
    ):
        self.hs = hs
        self.engine = engine
        self._clock = hs.get_clock()
        self._database_config = database_config
        self._txn_limit = database_config.config.get("txn_limit", 0)
        self._db_pool = make_pool(hs.get_reactor(), database_config, engine)

        # Transactions run by each database thread since it last reconnected.
        self._txn_counters: Dict[int, int] = defaultdict(int)
        self._txn_seq = 0

        self._txn_perf_counters = PerformanceCounters()
        self._txn_total_time = 0.0
        self._reported_txn_total_time = 0.0
        self._last_report_ts = 0.0

    def name(self) -> str:
        """The name this database is configured under."""
        return self._database_config.name

    def start_profiling(self) -> None:
        """Periodically log how busy the database has been."""
        self._last_report_ts = monotonic_time()

        def _report() -> None:
            now = monotonic_time()
            interval = now - self._last_report_ts
            busy = self._txn_total_time - self._reported_txn_total_time

            self._last_report_ts = now
            self._reported_txn_total_time = self._txn_total_time

            perf_logger.debug(
                "Total database time: %.3f%% {%s}",
                100 * busy / interval,
                self._txn_perf_counters.interval(interval, limit=3),
            )

        self._clock.looping_call(_report, PROFILE_INTERVAL_MS)

    def new_transaction(
        self,
        conn: LoggingDatabaseConnection,
        desc: str,
        cancelled: threading.Event,
        func: Callable[Concatenate[LoggingTransaction, P], R],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        """Runs `func` in a transaction on `conn`. Called on a database thread.

        Commits if `func` returns. If `func` raises, the exception propagates
        and the pool rolls the connection back.

        Args:
            conn
            desc: names the transaction in logs and metrics
            cancelled: set from the reactor thread once the caller has given
                up. Checked before `func` is called and again before
                committing: if it is set, nothing is committed and
                `CancelledError` is raised instead.
            func: called with a `LoggingTransaction`, then `args` and `kwargs`
        """
        if cancelled.is_set():
            transaction_logger.debug("[TXN SKIP] {%s} cancelled before start", desc)
            raise CancelledError()

        name = "%s-%x" % (desc, self._txn_seq)
        self._txn_seq = (self._txn_seq + 1) % (2**63 - 1)

        transaction_logger.debug("[TXN START] {%s}", name)
        start = monotonic_time()

        cursor = conn.cursor(txn_name=name)
        try:
            result = func(cursor, *args, **kwargs)

            if cancelled.is_set():
                transaction_logger.debug("[TXN CANCEL] {%s}", name)
                conn.rollback()
                raise CancelledError()

            conn.commit()
            return result
        except Exception as e:
            transaction_logger.debug("[TXN FAIL] {%s} %s", name, e)
            raise
        finally:
            # sqlite invalidates the cursor once another transaction has used
            # the connection, so it must not escape.
            cursor.close()

            duration = monotonic_time() - start
            transaction_logger.debug("[TXN END] {%s} %f sec", name, duration)

            current_context().record_database_transaction(duration)
            self._txn_total_time += duration
            self._txn_perf_counters.update(desc, duration)
            sql_txn_timer.labels(desc).observe(duration)

    async def runInteraction(
        self,
        desc: str,
        func: Callable[Concatenate[LoggingTransaction, P], R],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        """Runs `func` in a new transaction on one of the pool's connections.

        If the caller is cancelled before the transaction has committed, the
        transaction is rolled back, or never started, and the caller gets a
        `CancelledError`. Either way that only happens once the database
        thread is done with it, so the connection is free again by the time
        the caller sees the error.

        Args:
            desc: names the transaction in logs and metrics
            func: called with a `LoggingTransaction`, followed by `args` and
                `kwargs`

        Returns:
            The result of func
        """
        if not current_context():
            logger.warning("Starting db txn '%s' from sentinel context", desc)

        cancelled = threading.Event()
        return await delay_cancellation(
            self.runWithConnection(
                self.new_transaction, desc, cancelled, func, *args, **kwargs
            ),
            on_cancel=cancelled.set,
        )

    async def runWithConnection(
        self, func: Callable[..., R], *args: Any, **kwargs: Any
    ) -> R:
        """Runs `func` on a database thread with a `LoggingDatabaseConnection`
        as its first argument.

        Database time is charged to the caller's logging context.
        """
        caller_context = current_context()
        parent_context = caller_context if caller_context else None

        queued_at = monotonic_time()

        def inner_func(conn: Any, *args: Any, **kwargs: Any) -> R:
            # A connection handed back to the pool mid-transaction means some
            # earlier work neither committed nor rolled back.
            assert not self.engine.in_transaction(conn)

            with LoggingContext(
                str(caller_context), parent_context=parent_context
            ) as context:
                sched_duration_sec = monotonic_time() - queued_at
                sql_scheduling_timer.observe(sched_duration_sec)
                context.record_database_scheduled(sched_duration_sec)

                self._maybe_reconnect(conn)

                db_conn = LoggingDatabaseConnection(
                    conn, self.engine, "runWithConnection"
                )
                return func(db_conn, *args, **kwargs)

        return await make_deferred_yieldable(
            self._db_pool.runWithConnection(inner_func, *args, **kwargs)
        )

    def _maybe_reconnect(self, conn: Any) -> None:
        """Re-opens `conn` if it has dropped, or has run `txn_limit`
        transactions. Called on a database thread with an adbapi connection.
        """
        tid = self._db_pool.threadID()

        if self._txn_limit > 0:
            self._txn_counters[tid] += 1
            if self._txn_counters[tid] > self._txn_limit:
                logger.debug("Reconnecting database connection over transaction limit")
                conn.reconnect()
                self._txn_counters[tid] = 1
                return

        if self.engine.is_connection_closed(conn):
            logger.debug("Reconnecting closed database connection")
            conn.reconnect()
            self._txn_counters[tid] = 1
