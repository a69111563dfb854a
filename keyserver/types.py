# Copyright 2014-2016 OpenMarket Ltd
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
from typing import TYPE_CHECKING, Any, Dict

import attr
from zope.interface import Interface

from twisted.internet.interfaces import (
    IReactorCore,
    IReactorThreads,
    IReactorTime,
)

if TYPE_CHECKING:
    from typing_extensions import TypeAlias

# JSON types. These could be made stronger, but will do for now.
# A JSON-serialisable dict.
JsonDict: "TypeAlias" = Dict[str, Any]


class IKeyServerReactor(
    IReactorCore,
    IReactorThreads,
    IReactorTime,
    Interface,
):
    """The interfaces necessary for the key server's reactor."""


@attr.s(slots=True, auto_attribs=True)
class DeviceKeys:
    """The identity keys uploaded by one device of one user.

    `key_json` is the signed key document exactly as uploaded: this is never
    parsed by the storage layer. An empty `key_json` together with a zero
    `stream_id` means that no keys have been uploaded for the device.

    Attributes:
        user_id: The user who owns the device.
        device_id: The device, unique per user.
        key_json: The device's key document.
        stream_id: The position in the user's device key stream at which this
            version of the document was written. Assigned by the caller.
    """

    user_id: str
    device_id: str
    key_json: bytes = b""
    stream_id: int = 0

    def is_empty(self) -> bool:
        """Whether this record is the placeholder for a device with no keys."""
        return not self.key_json
