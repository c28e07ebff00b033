# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/bootstrap/teardown.py

"""
Reverse of bootstrap: step the primary down, then strip replica set (and
optionally security) settings from every node's config file and restart
the nodes whose files changed. Data directories are left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..cluster.topology import ClusterTopology, Credentials, split_endpoint
from ..db import commands
from ..db.client import (
    NO_REPLICATION_ENABLED,
    NOT_PRIMARY_NO_SECONDARY_OK,
    NOT_WRITABLE_PRIMARY,
    NOT_YET_INITIALIZED,
    AdminSession,
    DatabaseClient,
)
from ..errors import DbAuthError, DbCommandError, DbConnectionError, FailureKind
from ..execution.executor import RemoteExecutor
from ..mongod.conf import ConfigModel
from ..mongod.reconciler import reconcile
from ..observers.dispatcher import EventBus
from ..observers.events import (
    NodeFailed,
    NodeReconciled,
    ServiceRestarted,
    StepDownResult,
    TeardownStarted,
    TeardownSummary,
    new_ctx,
)
from .nodes import NodeLayout, NodeOutcome, ServiceControl, run_per_node
from .orchestrator import BootstrapState, Failure

log = logging.getLogger("rsboot")

STEPPED_DOWN = "STEPPED_DOWN"
NOT_PRIMARY = "NOT_PRIMARY"
NO_PRIMARY = "NO_PRIMARY"
NOT_INITIATED = "NOT_INITIATED"
UNAUTHORIZED = "UNAUTHORIZED"
UNREACHABLE = "UNREACHABLE"
STEP_DOWN_FAILED = "FAILED"

_NOT_PRIMARY_CODES = (NOT_WRITABLE_PRIMARY, NOT_PRIMARY_NO_SECONDARY_OK)


@dataclass
class TeardownReport:
    state: BootstrapState = BootstrapState.IDLE
    step_down: str = UNREACHABLE
    primary: Optional[str] = None
    nodes: List[NodeOutcome] = field(default_factory=list)
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.state == BootstrapState.COMPLETE


class TeardownOrchestrator:
    def __init__(
        self,
        topology: ClusterTopology,
        layouts: Sequence[NodeLayout],
        executor: RemoteExecutor,
        db: DatabaseClient,
        credentials: Optional[Credentials] = None,
        bus: Optional[EventBus] = None,
        command_timeout: float = 120.0,
        step_down_secs: int = 60,
        run_id: Optional[str] = None,
    ):
        self.topology = topology
        self.layouts = list(layouts)
        self.executor = executor
        self.admin = AdminSession(db, credentials)
        self.bus = bus or EventBus()
        self.command_timeout = command_timeout
        self.step_down_secs = step_down_secs
        self.service = ServiceControl(executor, timeout=command_timeout)
        self.run_ctx = new_ctx(replica_set=topology.replica_set_name, run_id=run_id)

    def run(self, disable_auth: bool = False) -> TeardownReport:
        report = TeardownReport()
        self.bus.emit(
            TeardownStarted(members=[m.endpoint for m in self.topology.members],
                            disable_auth=disable_auth, **self.run_ctx)
        )

        report.step_down, report.primary = self._step_down()
        self.bus.emit(StepDownResult(node=report.primary, status=report.step_down, **self.run_ctx))

        remove = ["replica_set_name"]
        if disable_auth:
            remove += ["authorization_enabled", "key_file"]

        def step(layout: NodeLayout) -> NodeOutcome:
            rplan = reconcile(
                layout.config_file(self.executor, self.command_timeout), ConfigModel(), remove
            )
            outcome = NodeOutcome(
                node=layout.name,
                edits=[e.describe() for e in rplan.edits],
                requires_restart=rplan.requires_restart,
            )
            self.bus.emit(
                NodeReconciled(node=layout.name, edits=outcome.edits,
                               requires_restart=outcome.requires_restart, **self.run_ctx)
            )
            if rplan.requires_restart:
                self.service.restart(layout)
                self.bus.emit(ServiceRestarted(node=layout.name, action="restart", **self.run_ctx))
            return outcome

        errors = {}
        for layout, outcome, err in run_per_node(self.layouts, step):
            if err is not None:
                errors[layout.name] = f"{err.__class__.__name__}: {err}"
                outcome = NodeOutcome(node=layout.name, error=errors[layout.name])
                self.bus.emit(NodeFailed(node=layout.name, stage="teardown", error=str(err), **self.run_ctx))
            report.nodes.append(outcome)

        if errors:
            report.state = BootstrapState.FAILED
            report.failure = Failure(
                "Teardown", FailureKind.CONFIG_ERROR,
                f"teardown failed on {len(errors)} node(s): {', '.join(errors)}", errors,
            )
            log.error(report.failure.describe())
        else:
            report.state = BootstrapState.COMPLETE
            log.info("replica set '%s' torn down on %d node(s)", self.topology.replica_set_name, len(report.nodes))

        self.bus.emit(TeardownSummary(state=report.state.value, failed_nodes=sorted(errors), **self.run_ctx))
        return report

    def _step_down(self):
        """Returns (status, primary endpoint or None). Never raises for database errors."""
        for member in self.topology.members:
            try:
                status = self.admin.run(member.host, member.port, [commands.repl_set_get_status()])[0]
            except DbConnectionError as e:
                log.info("step-down: %s unreachable (%s)", member.endpoint, e)
                continue
            except DbAuthError as e:
                log.warning("step-down: %s refused status query (%s); skipping step-down", member.endpoint, e)
                return UNAUTHORIZED, None
            except DbCommandError as e:
                if e.code in (NOT_YET_INITIALIZED, NO_REPLICATION_ENABLED):
                    log.info("step-down: %s is not part of an initiated replica set", member.endpoint)
                    return NOT_INITIATED, None
                log.warning("step-down: status on %s failed: %s", member.endpoint, e)
                continue

            primary = next(
                (str(m["name"]) for m in status.get("members", [])
                 if m.get("stateStr") == "PRIMARY" or m.get("state") == 1),
                None,
            )
            if primary is None:
                log.info("step-down: no primary reported")
                return NO_PRIMARY, None
            return self._step_down_at(primary), primary

        log.warning("step-down: no member reachable; continuing with config teardown")
        return UNREACHABLE, None

    def _step_down_at(self, primary: str) -> str:
        host, port = split_endpoint(primary)
        try:
            self.admin.run(host, port, [commands.repl_set_step_down(self.step_down_secs)])
        except DbConnectionError:
            # stepping down closes client connections
            log.info("step-down: %s dropped the connection while stepping down", primary)
            return STEPPED_DOWN
        except DbAuthError as e:
            log.warning("step-down: %s refused replSetStepDown (%s)", primary, e)
            return UNAUTHORIZED
        except DbCommandError as e:
            if e.code in _NOT_PRIMARY_CODES or "not primary" in str(e).lower():
                log.info("step-down: %s is no longer primary", primary)
                return NOT_PRIMARY
            log.warning("step-down: replSetStepDown on %s failed: %s", primary, e)
            return STEP_DOWN_FAILED
        log.info("step-down: %s stepped down", primary)
        return STEPPED_DOWN
