# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/db/commands.py

"""Builders for the server commands the bootstrap and teardown flows issue."""

from __future__ import annotations

from typing import Any, Dict, List

from .client import DbCommand

Role = Dict[str, str]


def ping() -> DbCommand:
    return DbCommand("ping")


def repl_set_get_config() -> DbCommand:
    return DbCommand("replSetGetConfig")


def repl_set_get_status() -> DbCommand:
    return DbCommand("replSetGetStatus")


def repl_set_initiate(config: Dict[str, Any]) -> DbCommand:
    return DbCommand("replSetInitiate", config)


def repl_set_step_down(seconds: int = 60) -> DbCommand:
    return DbCommand("replSetStepDown", seconds)


def users_info(user: str, database: str) -> DbCommand:
    return DbCommand("usersInfo", {"user": user, "db": database}, database=database)


def create_user(user: str, password: str, roles: List[Role], database: str) -> DbCommand:
    return DbCommand(
        "createUser",
        user,
        database=database,
        options={"pwd": password, "roles": roles},
        sensitive=True,
    )
