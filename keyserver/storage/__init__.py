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

"""
The storage layer runs against either sqlite or postgres, and is split up
into:

- `keyserver.storage.databases` builds one `DatabasePool` per configured
  database and the data stores that live on it.
- `keyserver.storage.writer` serialises the write transactions against each
  pool.
- `keyserver.storage.databases.main` is the data store that callers use.
"""
