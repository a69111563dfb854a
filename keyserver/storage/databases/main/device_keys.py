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
from typing import TYPE_CHECKING, Collection, List, Sequence, Tuple

from keyserver.storage._base import SQLBaseStore
from keyserver.storage.database import (
    DatabasePool,
    LoggingDatabaseConnection,
    LoggingTransaction,
)
from keyserver.types import DeviceKeys

if TYPE_CHECKING:
    from keyserver.server import KeyServer

logger = logging.getLogger(__name__)

# Clobber based on the (user_id, device_id) tuple. The stored stream_id is
# not compared with the new one.
UPSERT_DEVICE_KEYS_SQL = """
    INSERT INTO keyserver_device_keys
        (user_id, device_id, ts_added_secs, key_json, stream_id)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT (user_id, device_id) DO UPDATE SET
        key_json = EXCLUDED.key_json,
        stream_id = EXCLUDED.stream_id,
        ts_added_secs = EXCLUDED.ts_added_secs
"""

SELECT_DEVICE_KEYS_SQL = """
    SELECT key_json, stream_id FROM keyserver_device_keys
    WHERE user_id = ? AND device_id = ?
"""

SELECT_BATCH_DEVICE_KEYS_SQL = """
    SELECT device_id, key_json, stream_id FROM keyserver_device_keys
    WHERE user_id = ?
"""

SELECT_MAX_STREAM_ID_SQL = """
    SELECT MAX(stream_id) FROM keyserver_device_keys WHERE user_id = ?
"""

# Each statement with placeholder arguments of the right arity, used to
# check the statements against the schema at startup.
_STATEMENTS: Sequence[Tuple[str, Tuple]] = (
    (UPSERT_DEVICE_KEYS_SQL, ("", "", 0, b"", 0)),
    (SELECT_DEVICE_KEYS_SQL, ("", "")),
    (SELECT_BATCH_DEVICE_KEYS_SQL, ("",)),
    (SELECT_MAX_STREAM_ID_SQL, ("",)),
)


class DeviceKeysStore(SQLBaseStore):
    """Stores the latest identity key document for each of a user's devices,
    along with the stream ID it was uploaded at.

    Key documents are opaque bytes to this store, and are stored as they are.
    """

    def __init__(
        self,
        database: DatabasePool,
        db_conn: LoggingDatabaseConnection,
        hs: "KeyServer",
    ):
        super().__init__(database, db_conn, hs)

        self._check_statements(db_conn)

    @staticmethod
    def _check_statements(db_conn: LoggingDatabaseConnection) -> None:
        """Have the database compile each of our statements, so that a schema
        mismatch fails at startup rather than on first use.

        Raises:
            the driver's error if any statement does not compile.
        """
        txn = db_conn.cursor(txn_name="check_device_keys_statements")
        try:
            for sql, args in _STATEMENTS:
                txn.execute("EXPLAIN " + sql, args)
                txn.fetchall()
        finally:
            txn.close()
            db_conn.rollback()

    async def insert_device_keys(self, keys: Sequence[DeviceKeys]) -> None:
        """Insert or replace the key document of each given device.

        All of the records are written in a single transaction, which waits
        for its turn at the database writer. If a (user_id, device_id) pair
        appears more than once, the last record for it wins.
        """
        if not keys:
            return

        await self.writer.run_interaction(
            "insert_device_keys", self.insert_device_keys_txn, keys
        )

    def insert_device_keys_txn(
        self, txn: LoggingTransaction, keys: Sequence[DeviceKeys]
    ) -> None:
        """As `insert_device_keys`, but writes in the caller's transaction.

        `txn` must belong to a transaction opened through
        `TransactionWriter.run_interaction`.
        """
        ts_added_secs = int(self._clock.time())

        txn.execute_batch(
            UPSERT_DEVICE_KEYS_SQL,
            [
                (
                    key.user_id,
                    key.device_id,
                    ts_added_secs,
                    key.key_json,
                    key.stream_id,
                )
                for key in keys
            ],
        )

        logger.debug("Stored %d device key(s)", len(keys))

    async def select_device_keys_json(self, keys: Sequence[DeviceKeys]) -> None:
        """Fill in `key_json` and `stream_id` on each of the given records from
        the database.

        Records for devices we have no keys for are set to an empty
        `key_json` and a `stream_id` of 0.
        """

        def _select_device_keys_json_txn(txn: LoggingTransaction) -> None:
            for key in keys:
                txn.execute(SELECT_DEVICE_KEYS_SQL, (key.user_id, key.device_id))
                row = txn.fetchone()
                if row is None:
                    key.key_json = b""
                    key.stream_id = 0
                else:
                    # psycopg2 returns bytea columns as memoryviews.
                    key.key_json = bytes(row[0])
                    key.stream_id = row[1]

        await self.db_pool.runInteraction(
            "select_device_keys_json", _select_device_keys_json_txn
        )

    async def select_batch_device_keys(
        self, user_id: str, device_ids: Collection[str]
    ) -> List[DeviceKeys]:
        """Fetch the stored keys of a user's devices.

        Args:
            user_id: the user whose devices to look up
            device_ids: the devices to return. If empty, every device of the
                user is returned.

        Returns:
            A record for each requested device we have keys for, in no
            particular order.
        """
        wanted = set(device_ids)

        def _select_batch_device_keys_txn(txn: LoggingTransaction) -> List[DeviceKeys]:
            txn.execute(SELECT_BATCH_DEVICE_KEYS_SQL, (user_id,))
            return [
                DeviceKeys(
                    user_id=user_id,
                    device_id=device_id,
                    key_json=bytes(key_json),
                    stream_id=stream_id,
                )
                for device_id, key_json, stream_id in txn
                if not wanted or device_id in wanted
            ]

        return await self.db_pool.runInteraction(
            "select_batch_device_keys", _select_batch_device_keys_txn
        )

    async def select_max_stream_id_for_user(self, user_id: str) -> int:
        """The highest stream ID stored for any of the user's devices, or 0 if
        we have no keys for the user.
        """
        return await self.db_pool.runInteraction(
            "select_max_stream_id_for_user",
            self.select_max_stream_id_for_user_txn,
            user_id,
        )

    def select_max_stream_id_for_user_txn(
        self, txn: LoggingTransaction, user_id: str
    ) -> int:
        txn.execute(SELECT_MAX_STREAM_ID_SQL, (user_id,))
        row = txn.fetchone()
        # MAX() over no rows is NULL.
        if row is None or row[0] is None:
            return 0
        return row[0]
