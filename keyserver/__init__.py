# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2018-2019 New Vector Ltd
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

""" This is a store for the end-to-end encryption device keys of Matrix users.
"""

import sys

# Check that we're not running on an unsupported Python version.
#
# Note that we use an (unneeded) variable here so that pyupgrade doesn't nuke the
# if-statement completely.
py_version = sys.version_info
if py_version < (3, 8):
    print("matrix-keyserver requires Python 3.8 or above.")
    sys.exit(1)

# Twisted will fail to import when this file is executed to get the __version__
# during a fresh install. That's OK and subsequent calls to actually start the
# key server will import it fine.
try:
    from twisted.internet import protocol
    from twisted.internet.protocol import Factory

    protocol.Factory.noisy = False
    Factory.noisy = False
except ImportError:
    pass

__version__ = "0.3.0"
