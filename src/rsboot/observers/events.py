# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str             # ISO timestamp
    run_id: str         # correlates all events in a single invocation
    replica_set: str

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(replica_set: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "replica_set": replica_set,
    }


# ---------------------------------------------------------------------
# Bootstrap lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BootstrapStarted(BaseEvent):
    members: List[str]

@dataclass(frozen=True)
class StateEntered(BaseEvent):
    state: str

@dataclass(frozen=True)
class NodeReconciled(BaseEvent):
    node: str
    edits: List[str]
    requires_restart: bool

@dataclass(frozen=True)
class NodeFailed(BaseEvent):
    node: str
    stage: str
    error: str

@dataclass(frozen=True)
class ServiceRestarted(BaseEvent):
    node: str
    action: str         # "restart" | "start"

@dataclass(frozen=True)
class ServiceHealthy(BaseEvent):
    node: str
    attempts: int

@dataclass(frozen=True)
class ReplicaSetInitiated(BaseEvent):
    seed: str
    already_existed: bool

@dataclass(frozen=True)
class PrimaryElected(BaseEvent):
    primary: str
    attempts: int

@dataclass(frozen=True)
class UserEnsured(BaseEvent):
    user: str
    database: str
    created: bool

@dataclass(frozen=True)
class BootstrapSummary(BaseEvent):
    state: str
    failed_in: Optional[str] = None
    kind: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Teardown lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TeardownStarted(BaseEvent):
    members: List[str]
    disable_auth: bool

@dataclass(frozen=True)
class StepDownResult(BaseEvent):
    node: Optional[str]
    status: str         # "STEPPED_DOWN" | "NOT_PRIMARY" | "UNREACHABLE"

@dataclass(frozen=True)
class TeardownSummary(BaseEvent):
    state: str
    failed_nodes: List[str]


# ---------------------------------------------------------------------
# Install lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class InstallStarted(BaseEvent):
    members: List[str]
    version: str

@dataclass(frozen=True)
class NodeInstalled(BaseEvent):
    node: str
    os_id: str
    package_installed: bool
    edits: List[str]

@dataclass(frozen=True)
class InstallSummary(BaseEvent):
    ok: int
    failed: int
