# Copyright 2014-2016 OpenMarket Ltd
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

import json
import logging
from typing import Any, Callable, Optional

import attr
from typing_extensions import ParamSpec

from twisted.internet import defer, task
from twisted.internet.interfaces import IDelayedCall, IReactorTime
from twisted.python.failure import Failure

from keyserver.logging import context

logger = logging.getLogger(__name__)


def _reject_invalid_json(val: Any) -> None:
    raise ValueError("Invalid JSON value: '%s'" % val)


# Key documents are canonical JSON, which has no NaN or Infinity.
json_decoder = json.JSONDecoder(parse_constant=_reject_invalid_json)


def unwrapFirstError(failure: Failure) -> Failure:
    """Errback for `gatherResults`: replaces the `FirstError` with the
    failure it wraps."""
    failure.trap(defer.FirstError)
    return failure.value.subFailure  # type: ignore[union-attr]


P = ParamSpec("P")


@attr.s(slots=True)
class Clock:
    """Time and timers, taken from a reactor so that tests can control them.

    Args:
        reactor
    """

    _reactor: IReactorTime = attr.ib()

    async def sleep(self, seconds: float) -> None:
        """Waits `seconds`. Cancelling the wait cancels the timer."""
        delayed_call: Optional[IDelayedCall] = None

        def _cancel(_: "defer.Deferred[None]") -> None:
            if delayed_call is not None and delayed_call.active():
                delayed_call.cancel()

        d: "defer.Deferred[None]" = defer.Deferred(_cancel)
        delayed_call = self._reactor.callLater(seconds, d.callback, None)
        await context.make_deferred_yieldable(d)

    def time(self) -> float:
        """Seconds since the epoch."""
        return self._reactor.seconds()

    def looping_call(
        self, f: Callable[P, object], msec: float, *args: P.args, **kwargs: P.kwargs
    ) -> task.LoopingCall:
        """Calls `f` every `msec` milliseconds, starting `msec` from now.

        `f` runs in the sentinel logging context. If it raises, the error is
        logged and the calls stop.
        """
        call = task.LoopingCall(f, *args, **kwargs)
        call.clock = self._reactor
        d = call.start(msec / 1000.0, now=False)
        d.addErrback(log_failure, "Looping call died", consumeErrors=False)
        return call


def log_failure(
    failure: Failure, msg: str, consumeErrors: bool = True
) -> Optional[Failure]:
    """Errback that logs `failure` at ERROR with `msg`.

    Returns:
        `failure` if `consumeErrors` is false, so the error carries on down
        the chain. Otherwise None.
    """
    logger.error(
        msg, exc_info=(failure.type, failure.value, failure.getTracebackObject())  # type: ignore[arg-type]
    )
    return None if consumeErrors else failure
