# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/db/client.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pymongo import MongoClient
from pymongo.errors import ConfigurationError, ConnectionFailure, OperationFailure

from ..cluster.topology import Credentials
from ..errors import DbAuthError, DbCommandError, DbConnectionError

log = logging.getLogger("rsboot")

# server error codes
UNAUTHORIZED = 13
AUTHENTICATION_FAILED = 18
ALREADY_INITIALIZED = 23
NOT_YET_INITIALIZED = 94
NO_REPLICATION_ENABLED = 76
NOT_WRITABLE_PRIMARY = 10107
NOT_PRIMARY_NO_SECONDARY_OK = 13435

_AUTH_CODES = (UNAUTHORIZED, AUTHENTICATION_FAILED)


@dataclass(frozen=True)
class DbCommand:
    """
    One server command. The first key of the wire document is the command
    name, followed by *options*.
    """
    name: str
    value: Any = 1
    database: str = "admin"
    options: Dict[str, Any] = field(default_factory=dict)
    sensitive: bool = False       # carries a password: log the name only

    def document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {self.name: self.value}
        doc.update(self.options)
        return doc

    def describe(self) -> str:
        if self.sensitive:
            return f"{self.database}.{self.name}(...)"
        return f"{self.database}.{self.name}({self.document()})"


class DatabaseClient(Protocol):
    def run(
        self,
        host: str,
        port: int,
        commands: Sequence[DbCommand],
        credentials: Optional[Credentials] = None,
    ) -> List[Dict[str, Any]]: ...


class MongoDatabaseClient:
    """
    Runs command batches against a single mongod with a direct connection.
    A fresh connection is opened per batch so that restarts between steps
    never leave us holding a stale pool.
    """

    def __init__(
        self,
        connect_timeout_ms: int = 5000,
        server_selection_timeout_ms: int = 5000,
        socket_timeout_ms: int = 30000,
    ):
        self.connect_timeout_ms = connect_timeout_ms
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self.socket_timeout_ms = socket_timeout_ms

    def _connect(self, host: str, port: int, credentials: Optional[Credentials]) -> MongoClient:
        kwargs: Dict[str, Any] = dict(
            host=host,
            port=port,
            directConnection=True,
            connectTimeoutMS=self.connect_timeout_ms,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            socketTimeoutMS=self.socket_timeout_ms,
        )
        if credentials is not None:
            kwargs.update(
                username=credentials.admin_user,
                password=credentials.admin_password,
                authSource="admin",
            )
        return MongoClient(**kwargs)

    def run(
        self,
        host: str,
        port: int,
        commands: Sequence[DbCommand],
        credentials: Optional[Credentials] = None,
    ) -> List[Dict[str, Any]]:
        try:
            client = self._connect(host, port, credentials)
        except ConfigurationError as e:
            raise DbConnectionError(f"invalid connection settings for {host}:{port}: {e}") from e

        results: List[Dict[str, Any]] = []
        try:
            for cmd in commands:
                log.debug("%s:%s %s", host, port, cmd.describe())
                results.append(dict(client[cmd.database].command(cmd.document())))
            return results
        except OperationFailure as e:
            details = e.details or {}
            if e.code in _AUTH_CODES:
                raise DbAuthError(f"{host}:{port}: {details.get('errmsg', e)}") from e
            raise DbCommandError(
                f"{host}:{port}: {details.get('errmsg', e)}",
                code=e.code,
                code_name=details.get("codeName"),
            ) from e
        except ConnectionFailure as e:
            raise DbConnectionError(f"cannot reach {host}:{port}: {e}") from e
        finally:
            client.close()


class AdminSession:
    """
    Admin command runner for one orchestration run. Batches go out
    unauthenticated until a server demands a login; from then on the admin
    credentials are used for every batch.
    """

    def __init__(self, db: DatabaseClient, credentials: Optional[Credentials] = None):
        self.db = db
        self.credentials = credentials
        self.authenticated = False

    def require_auth(self) -> None:
        if self.credentials is not None:
            self.authenticated = True

    def run(self, host: str, port: int, commands: Sequence[DbCommand]) -> List[Dict[str, Any]]:
        if self.authenticated:
            return self.db.run(host, port, commands, self.credentials)
        try:
            return self.db.run(host, port, commands, None)
        except DbAuthError:
            if self.credentials is None:
                raise
            log.info("%s:%s requires authentication; using admin credentials", host, port)
            self.authenticated = True
            return self.db.run(host, port, commands, self.credentials)
