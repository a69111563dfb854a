# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2018 New Vector Ltd
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

import asyncio
import collections
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from typing_extensions import AsyncContextManager

from twisted.internet import defer
from twisted.internet.defer import CancelledError
from twisted.python.failure import Failure

from keyserver.logging.context import (
    PreserveLoggingContext,
    make_deferred_yieldable,
    run_in_background,
)
from keyserver.util import Clock, unwrapFirstError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def yieldable_gather_results(
    func: Callable[..., Awaitable[T]], iter: Iterable, *args: Any, **kwargs: Any
) -> "defer.Deferred[List[T]]":
    """Calls `func(item, *args, **kwargs)` for every item of `iter` at once,
    and waits for all of them.

    Returns:
        The results, in the order of `iter`. Fails with the first error if
        any call fails.
    """
    return make_deferred_yieldable(
        defer.gatherResults(
            [run_in_background(func, item, *args, **kwargs) for item in iter],
            consumeErrors=True,
        )
    ).addErrback(unwrapFirstError)


class Linearizer:
    """Lets one thing at a time hold each key. The rest wait their turn, in
    the order they asked.

        async with linearizer.queue(key):
            ...  # nothing else holds `key` in here

    Args:
        name: identifies the linearizer in logs
        clock
    """

    def __init__(self, name: str, clock: Clock):
        self.name = name
        self._clock = clock

        # The waiters for each key that is held, oldest first. A key is held
        # exactly when it has an entry here.
        self._waiters: Dict[
            Hashable, "collections.OrderedDict[defer.Deferred[None], None]"
        ] = {}

    def queue_length(self, key: Hashable) -> int:
        """How many are waiting for `key`, not counting its holder."""
        return len(self._waiters.get(key, ()))

    def queue(self, key: Hashable) -> AsyncContextManager[None]:
        @asynccontextmanager
        async def _hold() -> AsyncIterator[None]:
            await self._acquire(key)
            try:
                yield
            finally:
                self._release(key)

        return _hold()

    async def _acquire(self, key: Hashable) -> None:
        waiters = self._waiters.get(key)
        if waiters is None:
            logger.debug("Linearizer %r: took %r", self.name, key)
            self._waiters[key] = collections.OrderedDict()
            return

        logger.debug("Linearizer %r: waiting for %r", self.name, key)
        turn: "defer.Deferred[None]" = defer.Deferred()
        waiters[turn] = None
        try:
            await make_deferred_yieldable(turn)
        except Exception:
            # Only cancellation can get us here; we haven't been handed the
            # key, so just leave the queue.
            logger.debug("Linearizer %r: gave up waiting for %r", self.name, key)
            del waiters[turn]
            raise

        logger.debug("Linearizer %r: handed %r", self.name, key)

        # `_release` hands over from inside the previous holder's exit. Go
        # back to the reactor before running, so that a run of holders which
        # finish synchronously doesn't recurse.
        try:
            await self._clock.sleep(0)
        except CancelledError:
            self._release(key)
            raise

    def _release(self, key: Hashable) -> None:
        waiters = self._waiters[key]
        if not waiters:
            del self._waiters[key]
            return

        turn, _ = waiters.popitem(last=False)
        # The next holder resumes in its own context.
        with PreserveLoggingContext():
            turn.callback(None)


def delay_cancellation(
    awaitable: Awaitable[T], on_cancel: Optional[Callable[[], None]] = None
) -> "defer.Deferred[T]":
    """Wraps `awaitable` so that cancelling the result doesn't interrupt it.

    When the returned Deferred is cancelled, `on_cancel` is called, and the
    Deferred fails with `CancelledError` as soon as `awaitable` has finished
    (whatever its outcome). `awaitable` itself is never cancelled: it is up to
    `on_cancel` to tell it to stop early.

    Args:
        awaitable: a coroutine or Deferred. It may follow the logcontext rules.
        on_cancel: called on the reactor when cancellation is requested.
    """
    if isinstance(awaitable, defer.Deferred):
        inner = awaitable
    elif asyncio.iscoroutine(awaitable):
        inner = defer.ensureDeferred(awaitable)
    else:
        raise TypeError("Can't delay cancellation of %r" % (awaitable,))

    def _cancel(outer: "defer.Deferred[T]") -> None:
        if on_cancel is not None:
            on_cancel()

        # Hold the CancelledError back until `inner` is done. Adding to
        # `inner` also consumes its result, so a failure there is not
        # reported as unhandled.
        outer.pause()
        outer.errback(Failure(CancelledError()))
        inner.addBoth(lambda _: outer.unpause())

    outer: "defer.Deferred[T]" = defer.Deferred(_cancel)
    inner.chainDeferred(outer)
    return outer
