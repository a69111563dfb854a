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
from typing import TYPE_CHECKING, Collection, Dict, List, Mapping, Optional, Tuple

from canonicaljson import encode_canonical_json

from keyserver.storage.database import LoggingTransaction
from keyserver.types import DeviceKeys, JsonDict
from keyserver.util import json_decoder
from keyserver.util.async_helpers import yieldable_gather_results

if TYPE_CHECKING:
    from keyserver.server import KeyServer

logger = logging.getLogger(__name__)


class DeviceKeysHandler:
    def __init__(self, hs: "KeyServer"):
        self.store = hs.get_datastores().main

    async def upload_local_device_keys(
        self, user_id: str, device_keys: Mapping[str, JsonDict]
    ) -> int:
        """Store new key documents for some of a local user's devices.

        Each changed document is given the same new stream ID, one higher than
        any the user already has. Documents that are identical to the stored
        ones are skipped, and don't advance the stream.

        Args:
            user_id: the user who owns the devices
            device_keys: map from device ID to that device's key document

        Returns:
            The user's latest stream ID after the upload.
        """
        new_key_json = {
            device_id: encode_canonical_json(keys)
            for device_id, keys in device_keys.items()
        }

        existing = [DeviceKeys(user_id, device_id) for device_id in new_key_json]
        await self.store.select_device_keys_json(existing)

        changed = [
            key.device_id
            for key in existing
            if key.key_json != new_key_json[key.device_id]
        ]

        if not changed:
            logger.debug("Device keys for %s unchanged", user_id)
            return await self.store.select_max_stream_id_for_user(user_id)

        def _upload_device_keys_txn(txn: LoggingTransaction) -> int:
            # Read and write under the same writer turn, so that concurrent
            # uploads for a user can't mint the same stream ID.
            stream_id = self.store.select_max_stream_id_for_user_txn(txn, user_id) + 1
            self.store.insert_device_keys_txn(
                txn,
                [
                    DeviceKeys(user_id, device_id, new_key_json[device_id], stream_id)
                    for device_id in changed
                ],
            )
            return stream_id

        stream_id = await self.store.writer.run_interaction(
            "upload_local_device_keys", _upload_device_keys_txn
        )

        logger.info(
            "Updated device keys for %s (%s) at stream ID %d",
            user_id,
            ", ".join(changed),
            stream_id,
        )
        return stream_id

    async def query_device_keys(
        self, user_id: str, device_ids: Collection[str]
    ) -> Dict[str, JsonDict]:
        """Fetch the key documents of some or all of a user's devices.

        Args:
            user_id: the user whose devices to look up
            device_ids: the devices to return, or empty for all of them

        Returns:
            Map from device ID to key document. Devices we have no keys for
            are omitted.
        """
        keys = await self.store.select_batch_device_keys(user_id, device_ids)
        return {
            key.device_id: json_decoder.decode(key.key_json.decode("utf-8"))
            for key in keys
        }

    async def query_devices(
        self, query: Mapping[str, Collection[str]]
    ) -> Dict[str, Dict[str, JsonDict]]:
        """Run `query_device_keys` for several users at once.

        Args:
            query: map from user ID to the device IDs wanted for that user

        Returns:
            Map from user ID to the result of `query_device_keys` for them.
        """

        async def _query_user(user_id: str) -> Tuple[str, Dict[str, JsonDict]]:
            return user_id, await self.query_device_keys(user_id, query[user_id])

        results: List[Tuple[str, Dict[str, JsonDict]]] = await yieldable_gather_results(
            _query_user, list(query)
        )
        return dict(results)

    async def get_device_key(
        self, user_id: str, device_id: str
    ) -> Optional[JsonDict]:
        """Fetch one device's key document, or None if we don't have one."""
        key = DeviceKeys(user_id, device_id)
        await self.store.select_device_keys_json([key])
        if key.is_empty():
            return None
        return json_decoder.decode(key.key_json.decode("utf-8"))
