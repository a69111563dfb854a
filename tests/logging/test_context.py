# Copyright 2019 New Vector Ltd
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

from twisted.internet import defer

from keyserver.logging.context import (
    SENTINEL_CONTEXT,
    LoggingContext,
    LoggingContextFilter,
    PreserveLoggingContext,
    current_context,
    make_deferred_yieldable,
    run_in_background,
)

from tests import unittest
from tests.server import get_clock


class LoggingContextTestCase(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.reactor, self.clock = get_clock()

    def _assert_context(self, name: str) -> None:
        context = current_context()
        assert isinstance(context, LoggingContext)
        self.assertEqual(context.name, name)

    def test_with_context(self) -> None:
        with LoggingContext("upload"):
            self._assert_context("upload")
        self.assertIs(current_context(), SENTINEL_CONTEXT)

    def test_needs_name_or_parent(self) -> None:
        with self.assertRaises(ValueError):
            LoggingContext()

        parent = LoggingContext("upload")
        self.assertEqual(LoggingContext(parent_context=parent).name, "upload")

    def test_sleep_restores_context(self) -> None:
        async def _sleeper(name: str) -> None:
            with LoggingContext(name):
                await self.clock.sleep(0)
                self._assert_context(name)

        d1 = defer.ensureDeferred(_sleeper("one"))
        d2 = defer.ensureDeferred(_sleeper("two"))
        self.assertIs(current_context(), SENTINEL_CONTEXT)

        self.reactor.advance(0)
        self.successResultOf(d1)
        self.successResultOf(d2)

    def test_run_in_background_with_coroutine(self) -> None:
        async def _in_background() -> None:
            self._assert_context("one")
            await self.clock.sleep(1)
            self._assert_context("one")

        with LoggingContext("one"):
            d = run_in_background(_in_background)
            self._assert_context("one")

        self.assertNoResult(d)
        self.reactor.advance(1)
        self.successResultOf(d)
        self.assertIs(current_context(), SENTINEL_CONTEXT)

    def test_run_in_background_with_finished_coroutine(self) -> None:
        async def _in_background() -> int:
            self._assert_context("one")
            return 1

        with LoggingContext("one"):
            d = run_in_background(_in_background)
            self._assert_context("one")
        self.assertEqual(self.successResultOf(d), 1)

    def test_run_in_background_with_synchronous_exception(self) -> None:
        def _raise() -> None:
            raise ZeroDivisionError()

        with LoggingContext("one"):
            d = run_in_background(_raise)
            self._assert_context("one")
        self.failureResultOf(d, ZeroDivisionError)

    def test_make_deferred_yieldable(self) -> None:
        blocking: "defer.Deferred[None]" = defer.Deferred()

        async def _wait() -> None:
            with LoggingContext("one"):
                await make_deferred_yieldable(blocking)
                self._assert_context("one")

        d = defer.ensureDeferred(_wait())
        # The sentinel is active while the coroutine is blocked.
        self.assertIs(current_context(), SENTINEL_CONTEXT)

        blocking.callback(None)
        self.successResultOf(d)
        self.assertIs(current_context(), SENTINEL_CONTEXT)

    def test_make_deferred_yieldable_on_completed_deferred(self) -> None:
        with LoggingContext("one"):
            d = make_deferred_yieldable(defer.succeed(1))
            self._assert_context("one")
        self.assertEqual(self.successResultOf(d), 1)

    def test_preserve_logging_context(self) -> None:
        with LoggingContext("one"):
            with PreserveLoggingContext():
                self.assertIs(current_context(), SENTINEL_CONTEXT)
            self._assert_context("one")

    def test_database_usage_charged_to_parent(self) -> None:
        parent = LoggingContext("upload")
        child = LoggingContext(parent_context=parent)

        child.record_database_transaction(0.5)
        child.record_database_scheduled(0.25)
        child.record_database_transaction(0.5)

        for context in (parent, child):
            usage = context.get_database_usage()
            self.assertEqual(usage.txn_count, 2)
            self.assertEqual(usage.txn_duration_sec, 1.0)
            self.assertEqual(usage.sched_duration_sec, 0.25)

        with self.assertRaises(ValueError):
            child.record_database_transaction(-1)
        with self.assertRaises(ValueError):
            child.record_database_scheduled(-1)

    def test_database_usage_is_a_copy(self) -> None:
        context = LoggingContext("upload")
        usage = context.get_database_usage()
        usage.txn_count = 10
        self.assertEqual(context.get_database_usage().txn_count, 0)

    def test_sentinel_drops_usage(self) -> None:
        SENTINEL_CONTEXT.record_database_transaction(1.0)
        SENTINEL_CONTEXT.record_database_scheduled(1.0)
        self.assertFalse(SENTINEL_CONTEXT)


class LoggingContextFilterTestCase(unittest.TestCase):
    def _filtered(self) -> logging.LogRecord:
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", (), None)
        LoggingContextFilter(request="none").filter(record)
        return record

    def test_names_active_context(self) -> None:
        with LoggingContext("upload"):
            record = self._filtered()
        self.assertEqual(record.request, "upload")  # type: ignore[attr-defined]

    def test_default_outside_any_context(self) -> None:
        record = self._filtered()
        self.assertEqual(record.request, "none")  # type: ignore[attr-defined]
