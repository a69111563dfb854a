# Copyright 2016 OpenMarket Ltd
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

from typing import Hashable, List

from twisted.internet import defer
from twisted.internet.defer import CancelledError, Deferred

from keyserver.logging.context import LoggingContext, current_context
from keyserver.util.async_helpers import Linearizer

from tests import unittest
from tests.server import get_clock


class _Holder:
    """Takes a key on a linearizer and keeps it until `finish` is called."""

    def __init__(
        self, linearizer: Linearizer, key: Hashable, log: List[str], name: str
    ):
        self.acquired = False
        self._release: "Deferred[None]" = Deferred()

        async def _hold() -> None:
            async with linearizer.queue(key):
                self.acquired = True
                log.append(name)
                await self._release

        self.d = defer.ensureDeferred(_hold())

    def finish(self) -> None:
        self._release.callback(None)


class LinearizerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.reactor, self.clock = get_clock()
        self.linearizer = Linearizer("test", self.clock)
        self.log: List[str] = []

    def _hold(self, key: Hashable, name: str) -> _Holder:
        return _Holder(self.linearizer, key, self.log, name)

    def test_second_holder_waits(self) -> None:
        first = self._hold("k", "first")
        second = self._hold("k", "second")
        self.assertTrue(first.acquired)
        self.assertFalse(second.acquired)
        self.assertEqual(self.linearizer.queue_length("k"), 1)

        first.finish()
        self.successResultOf(first.d)
        # The handover completes on the next reactor tick.
        self.assertFalse(second.acquired)
        self.reactor.advance(0)
        self.assertTrue(second.acquired)
        self.assertEqual(self.linearizer.queue_length("k"), 0)

        second.finish()
        self.successResultOf(second.d)

    def test_keys_are_independent(self) -> None:
        a = self._hold("a", "a")
        b = self._hold("b", "b")
        self.assertTrue(a.acquired)
        self.assertTrue(b.acquired)

        a.finish()
        b.finish()
        self.successResultOf(a.d)
        self.successResultOf(b.d)

    def test_waiters_served_in_order(self) -> None:
        holders = [self._hold("k", str(i)) for i in range(5)]
        self.assertEqual(self.linearizer.queue_length("k"), 4)

        for holder in holders:
            self.reactor.advance(0)
            self.assertTrue(holder.acquired)
            holder.finish()

        self.assertEqual(self.log, ["0", "1", "2", "3", "4"])
        self.assertEqual(self.linearizer.queue_length("k"), 0)

    def test_key_can_be_taken_again_once_free(self) -> None:
        first = self._hold("k", "first")
        first.finish()
        self.successResultOf(first.d)

        second = self._hold("k", "second")
        self.assertTrue(second.acquired)
        second.finish()

    def test_cancel_while_waiting(self) -> None:
        first = self._hold("k", "first")
        second = self._hold("k", "second")
        third = self._hold("k", "third")

        second.d.cancel()
        self.failureResultOf(second.d, CancelledError)
        self.assertEqual(self.linearizer.queue_length("k"), 1)

        first.finish()
        self.reactor.advance(0)
        self.assertFalse(second.acquired)
        self.assertTrue(third.acquired)
        third.finish()
        self.successResultOf(third.d)

    def test_cancel_after_handover(self) -> None:
        """A waiter cancelled after being handed the key, but before it has
        run, passes the key on."""
        first = self._hold("k", "first")
        second = self._hold("k", "second")
        third = self._hold("k", "third")

        first.finish()
        second.d.cancel()
        self.failureResultOf(second.d, CancelledError)

        self.reactor.advance(0)
        self.assertFalse(second.acquired)
        self.assertTrue(third.acquired)
        self.assertEqual(self.log, ["first", "third"])
        third.finish()

    def test_release_on_error(self) -> None:
        async def _fail() -> None:
            async with self.linearizer.queue("k"):
                raise ValueError("boom")

        self.failureResultOf(defer.ensureDeferred(_fail()), ValueError)

        after = self._hold("k", "after")
        self.assertTrue(after.acquired)
        after.finish()

    def test_long_queue_of_quick_holders(self) -> None:
        """Many holders that finish straight away don't recurse into each
        other, and each keeps its own logging context."""

        async def _quick(i: int) -> None:
            with LoggingContext("quick-%d" % (i,)) as ctx:
                async with self.linearizer.queue("k"):
                    self.assertIs(current_context(), ctx)
                self.assertIs(current_context(), ctx)

        slow = self._hold("k", "slow")
        quick = [defer.ensureDeferred(_quick(i)) for i in range(500)]

        slow.finish()
        self.reactor.pump([0] * 600)
        for d in quick:
            self.successResultOf(d)
