# Copyright 2014-2016 OpenMarket Ltd
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

"""Tracks which operation the code running on the reactor is working for.

Log lines are stamped with the name of the active `LoggingContext`, and the
time spent in database transactions is charged to it, so that an upload which
took a long time can be matched up with the queries it ran.

The active context is held in a thread-local. Twisted knows nothing about it,
so anything that gives control back to the reactor has to put it back
afterwards:

* await an incomplete Deferred only after passing it through
  `make_deferred_yieldable`;
* start work you are not going to await with `run_in_background`.
"""
import logging
import threading
import typing
from types import TracebackType
from typing import Awaitable, Callable, Optional, Type, TypeVar, Union

import attr
from typing_extensions import Literal, ParamSpec

from twisted.internet import defer

logger = logging.getLogger(__name__)


@attr.s(slots=True, auto_attribs=True)
class DatabaseUsage:
    """Database time charged to a context."""

    # number of transactions run
    txn_count: int = 0
    # time spent inside transactions
    txn_duration_sec: float = 0.0
    # time spent waiting for a connection before a transaction could start
    sched_duration_sec: float = 0.0


class _Sentinel:
    """The context that is active when nothing else is. Usage charged to it is
    dropped."""

    __slots__ = ["previous_context"]

    def __init__(self) -> None:
        self.previous_context = None

    def __str__(self) -> str:
        return "sentinel"

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def record_database_transaction(self, duration_sec: float) -> None:
        pass

    def record_database_scheduled(self, sched_sec: float) -> None:
        pass

    def __bool__(self) -> Literal[False]:
        return False


SENTINEL_CONTEXT = _Sentinel()

LoggingContextOrSentinel = Union["LoggingContext", _Sentinel]


class LoggingContext:
    """A named operation, activated for the length of a `with` block.

    Args:
        name: shown in the `request` field of log lines. Defaults to the name
            of `parent_context`.
        parent_context: database usage charged to this context is charged to
            the parent as well. The database pool uses this to give each
            transaction its own context on the database thread while still
            accounting for it against the caller.
    """

    __slots__ = ["name", "parent_context", "previous_context", "_usage", "active"]

    def __init__(
        self,
        name: Optional[str] = None,
        parent_context: "Optional[LoggingContext]" = None,
    ) -> None:
        if name is None:
            if parent_context is None:
                raise ValueError("LoggingContext needs a name or a parent context")
            name = parent_context.name

        self.name = name
        self.parent_context = parent_context
        self.previous_context = current_context()
        self._usage = DatabaseUsage()
        self.active = False

    def __str__(self) -> str:
        return self.name

    def __enter__(self) -> "LoggingContext":
        replaced = set_current_context(self)
        if replaced is not self.previous_context:
            logger.warning(
                "Entering %s: expected to replace %s but replaced %s",
                self,
                self.previous_context,
                replaced,
            )
        return self

    def __exit__(
        self,
        type: Optional[Type[BaseException]],
        value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        replaced = set_current_context(self.previous_context)
        if replaced is not self:
            logger.warning("Leaving %s: found %s active instead", self, replaced)

    def start(self) -> None:
        """Called by `set_current_context` when this context becomes active."""
        if self.active:
            logger.warning("Logging context %s activated twice", self)
        self.active = True

    def stop(self) -> None:
        """Called by `set_current_context` when this context is swapped out."""
        self.active = False

    def get_database_usage(self) -> DatabaseUsage:
        """Returns a copy of the database usage charged to this context."""
        return attr.evolve(self._usage)

    def record_database_transaction(self, duration_sec: float) -> None:
        if duration_sec < 0:
            raise ValueError("Transaction duration cannot be negative")
        self._usage.txn_count += 1
        self._usage.txn_duration_sec += duration_sec
        if self.parent_context is not None:
            self.parent_context.record_database_transaction(duration_sec)

    def record_database_scheduled(self, sched_sec: float) -> None:
        if sched_sec < 0:
            raise ValueError("Scheduling time cannot be negative")
        self._usage.sched_duration_sec += sched_sec
        if self.parent_context is not None:
            self.parent_context.record_database_scheduled(sched_sec)


class LoggingContextFilter(logging.Filter):
    """Sets `record.request` to the name of the active context, or to
    `request` when there isn't one.
    """

    def __init__(self, request: str = ""):
        super().__init__()
        self._default_request = request

    def filter(self, record: logging.LogRecord) -> Literal[True]:
        context = current_context()
        record.request = str(context) if context else self._default_request
        return True


class PreserveLoggingContext:
    """Activates `new_context` (by default, the sentinel) for the length of a
    `with` block, then puts the old one back."""

    __slots__ = ["_old_context", "_new_context"]

    def __init__(
        self, new_context: LoggingContextOrSentinel = SENTINEL_CONTEXT
    ) -> None:
        self._new_context = new_context

    def __enter__(self) -> None:
        self._old_context = set_current_context(self._new_context)

    def __exit__(
        self,
        type: Optional[Type[BaseException]],
        value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        replaced = set_current_context(self._old_context)
        if replaced is not self._new_context:
            logger.warning(
                "Expected logging context %s but found %s", self._new_context, replaced
            )


_thread_local = threading.local()


def current_context() -> LoggingContextOrSentinel:
    return getattr(_thread_local, "current_context", SENTINEL_CONTEXT)


def set_current_context(context: LoggingContextOrSentinel) -> LoggingContextOrSentinel:
    """Makes `context` the active context on this thread.

    Returns:
        The context it replaced.
    """
    if context is None:
        raise TypeError("'context' argument may not be None")

    previous = current_context()
    if previous is not context:
        previous.stop()
        _thread_local.current_context = context
        context.start()

    return previous


P = ParamSpec("P")
R = TypeVar("R")


async def _await(awaitable: Awaitable[R]) -> R:
    return await awaitable


def run_in_background(
    f: Union[Callable[P, R], Callable[P, Awaitable[R]]],
    *args: P.args,
    **kwargs: P.kwargs,
) -> "defer.Deferred[R]":
    """Starts `f` without waiting for it, and returns a Deferred for its result.

    The caller's context is still active when this returns. The Deferred
    completes in the sentinel context, so it can be handed to
    `defer.gatherResults` and then made yieldable.

    Exceptions raised synchronously by `f` come back as a failed Deferred.
    """
    caller_context = current_context()
    try:
        res = f(*args, **kwargs)
    except Exception:
        return defer.fail()

    if isinstance(res, typing.Coroutine):
        d = defer.ensureDeferred(res)
    elif isinstance(res, defer.Deferred):
        d = res
    elif isinstance(res, Awaitable):
        d = defer.ensureDeferred(_await(res))
    else:
        d = defer.succeed(res)

    if d.called and not d.paused:
        # Finished already, so `f` will have left the caller's context alone.
        return d

    # `f` handed back to us with the sentinel active. Restore the caller's
    # context now and drop back to the sentinel when `d` completes, as
    # whatever fires it will not expect the caller's context.
    d.addBoth(_set_context_cb, set_current_context(caller_context))
    return d


T = TypeVar("T")


def make_deferred_yieldable(deferred: "defer.Deferred[T]") -> "defer.Deferred[T]":
    """Prepares a Deferred for the current context to await.

    If `deferred` has not fired, the sentinel is activated until it does, and
    the current context comes back before anything awaiting it resumes.
    """
    if deferred.called and not deferred.paused:
        return deferred

    deferred.addBoth(_set_context_cb, set_current_context(SENTINEL_CONTEXT))
    return deferred


ResultT = TypeVar("ResultT")


def _set_context_cb(result: ResultT, context: LoggingContextOrSentinel) -> ResultT:
    set_current_context(context)
    return result
