# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2018-2019 New Vector Ltd
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

import os
import time
import warnings
from typing import Any, Dict, Union, overload

from typing_extensions import Literal

from keyserver.config.keyserver import KeyServerConfig

# Run the storage tests against postgres instead of in-memory sqlite. Each
# test gets a database of its own, dropped when the test finishes unless
# KEYSERVER_LEAVE_DB is set.
USE_POSTGRES_FOR_TESTS = bool(os.environ.get("KEYSERVER_POSTGRES"))
LEAVE_DB = bool(os.environ.get("KEYSERVER_LEAVE_DB"))


def postgres_connect_args(dbname: str) -> Dict[str, Any]:
    args: Dict[str, Any] = {"database": dbname}
    for key in ("user", "host", "password", "port"):
        value = os.environ.get("KEYSERVER_POSTGRES_" + key.upper())
        if value is not None:
            args[key] = int(value) if key == "port" else value
    return args


@overload
def default_config(name: str, parse: Literal[False] = ...) -> Dict[str, Any]:
    ...


@overload
def default_config(name: str, parse: Literal[True]) -> KeyServerConfig:
    ...


def default_config(
    name: str, parse: bool = False
) -> Union[Dict[str, Any], KeyServerConfig]:
    """A minimal config. `setup_test_keyserver` replaces the database."""
    config_dict: Dict[str, Any] = {
        "server_name": name,
        "database": {"name": "sqlite3", "args": {"database": ":memory:"}},
    }
    if not parse:
        return config_dict

    config = KeyServerConfig()
    config.parse_config_dict(config_dict)
    return config


def _run_on_admin_db(sql: str) -> bool:
    import psycopg2

    db_conn = psycopg2.connect(**postgres_connect_args("postgres"))
    # CREATE and DROP DATABASE cannot run inside a transaction.
    db_conn.autocommit = True
    try:
        with db_conn.cursor() as cur:
            cur.execute(sql)
        return True
    except psycopg2.OperationalError as e:
        warnings.warn("%s failed: %s" % (sql, e), category=UserWarning)
        return False
    finally:
        db_conn.close()


def create_postgres_test_database(test_db: str) -> None:
    _run_on_admin_db(
        "CREATE DATABASE %s ENCODING 'UTF8' LC_COLLATE='C' LC_CTYPE='C'"
        " template=template0" % (test_db,)
    )


def drop_postgres_test_database(test_db: str) -> None:
    # Connections from the closed pool can take a moment to go away.
    for _ in range(5):
        if _run_on_admin_db("DROP DATABASE IF EXISTS %s" % (test_db,)):
            return
        time.sleep(0.5)
    warnings.warn("Failed to drop test database %s" % (test_db,), category=UserWarning)
