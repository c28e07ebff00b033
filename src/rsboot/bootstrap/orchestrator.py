# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/bootstrap/orchestrator.py

"""
End-to-end replica set bootstrap as an explicit state machine:

    Idle -> ConfiguringNodes -> AwaitingServiceHealth -> InitiatingReplicaSet
         -> AwaitingElection -> CreatingCredentials -> EnablingSecurity
         -> RestartingForSecurity -> Complete

Any state can end in Failed. Node-level work (config edits, restarts,
health checks) runs concurrently across nodes and every node's result is
collected before the transition is judged. Everything else targets a
single member and runs strictly in order.

Every step is idempotent, so re-running against a partially or fully
bootstrapped cluster converges to the same end state.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..cluster.topology import ClusterTopology, Credentials, Member, split_endpoint
from ..db import commands
from ..db.client import (
    ALREADY_INITIALIZED,
    NO_REPLICATION_ENABLED,
    NOT_YET_INITIALIZED,
    AdminSession,
    DatabaseClient,
)
from ..errors import (
    BootstrapCancelled,
    CredentialConflict,
    DbAuthError,
    DbCommandError,
    DbConnectionError,
    FailureKind,
    NoPrimaryElected,
    RsbootError,
    SecurityConfigError,
    ServiceDidNotStart,
    TopologyConflict,
    TopologyValidationError,
    failure_kind_for,
)
from ..execution.executor import RemoteExecutor, checked, shq
from ..mongod.conf import ConfigModel
from ..mongod.reconciler import reconcile
from ..observers.dispatcher import EventBus
from ..observers.events import (
    BootstrapStarted,
    BootstrapSummary,
    NodeFailed,
    NodeReconciled,
    PrimaryElected,
    ReplicaSetInitiated,
    ServiceHealthy,
    ServiceRestarted,
    StateEntered,
    UserEnsured,
    new_ctx,
)
from ..utils.retry import RetryError, retry
from .nodes import NodeLayout, NodeOutcome, ServiceControl, run_per_node

log = logging.getLogger("rsboot")


class BootstrapState(str, Enum):
    IDLE = "Idle"
    CONFIGURING_NODES = "ConfiguringNodes"
    AWAITING_SERVICE_HEALTH = "AwaitingServiceHealth"
    INITIATING_REPLICA_SET = "InitiatingReplicaSet"
    AWAITING_ELECTION = "AwaitingElection"
    CREATING_CREDENTIALS = "CreatingCredentials"
    ENABLING_SECURITY = "EnablingSecurity"
    RESTARTING_FOR_SECURITY = "RestartingForSecurity"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass(frozen=True)
class Failure:
    state: Any                    # the state the run was in when it failed
    kind: FailureKind
    message: str
    node_errors: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> str:
        state = getattr(self.state, "value", self.state)
        lines = [f"Failed({self.kind.value}) in {state}: {self.message}"]
        for node, err in self.node_errors.items():
            lines.append(f"  {node}: {err}")
        return "\n".join(lines)


class NodeStepFailed(RsbootError):
    """One or more nodes failed a concurrent step."""

    def __init__(self, kind: FailureKind, stage: str, node_errors: Dict[str, str]):
        self.kind = kind
        self.node_errors = node_errors
        super().__init__(f"{stage} failed on {len(node_errors)} node(s): {', '.join(node_errors)}")


@dataclass
class BootstrapOptions:
    bind_addresses: FrozenSet[str] = frozenset({"0.0.0.0"})
    health_retries: int = 20
    health_delay: float = 3.0
    election_retries: int = 30
    election_delay: float = 2.0
    backoff: float = 1.5
    max_delay: float = 15.0
    command_timeout: float = 120.0
    key_file_path: Optional[str] = None
    key_file_content: Optional[str] = field(default=None, repr=False)


ADMIN_ROLES = [{"role": "root", "db": "admin"}]


def app_roles(database: str) -> List[Dict[str, str]]:
    return [{"role": "readWrite", "db": database}]


def replication_config(layout: NodeLayout, replica_set_name: str, options: BootstrapOptions) -> ConfigModel:
    """Settings every member needs before the replica set can be initiated."""
    return ConfigModel(
        storage_path=layout.storage_path,
        log_path=layout.log_path,
        port=layout.member.port,
        bind_addresses=options.bind_addresses,
        replica_set_name=replica_set_name,
    )


def security_config(options: BootstrapOptions) -> ConfigModel:
    return ConfigModel(authorization_enabled=True, key_file=options.key_file_path)


@dataclass
class BootstrapReport:
    state: BootstrapState = BootstrapState.IDLE
    history: List[BootstrapState] = field(default_factory=list)
    configure: List[NodeOutcome] = field(default_factory=list)
    security: List[NodeOutcome] = field(default_factory=list)
    already_initiated: bool = False
    primary: Optional[str] = None
    users_created: List[str] = field(default_factory=list)
    users_present: List[str] = field(default_factory=list)
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.state == BootstrapState.COMPLETE

    @property
    def edits_applied(self) -> int:
        return sum(len(o.edits) for o in self.configure + self.security)


class _NoPrimaryYet(RsbootError):
    pass


class BootstrapOrchestrator:
    """
    Drives one bootstrap run. Policy lives here; commands go through the
    RemoteExecutor and DatabaseClient handed in, so the whole flow can be
    exercised against fakes.
    """

    def __init__(
        self,
        topology: ClusterTopology,
        credentials: Credentials,
        layouts: Sequence[NodeLayout],
        executor: RemoteExecutor,
        db: DatabaseClient,
        options: Optional[BootstrapOptions] = None,
        bus: Optional[EventBus] = None,
        cancel: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.topology = topology
        self.credentials = credentials
        self.layouts = list(layouts)
        self.executor = executor
        self.db = db
        self.options = options or BootstrapOptions()
        self.bus = bus or EventBus()
        self.cancel = cancel or threading.Event()
        self.run_ctx = new_ctx(replica_set=topology.replica_set_name, run_id=run_id)
        self.service = ServiceControl(executor, timeout=self.options.command_timeout)
        self.report = BootstrapReport()
        self._sleep = sleep
        self.admin = AdminSession(db, credentials)

    # ------------------ run ------------------

    def run(self) -> BootstrapReport:
        self.bus.emit(BootstrapStarted(members=[m.endpoint for m in self.topology.members], **self.run_ctx))
        self._enter(BootstrapState.IDLE)

        steps: List[Tuple[BootstrapState, Callable[[], None]]] = [
            (BootstrapState.IDLE, self._preflight),
            (BootstrapState.CONFIGURING_NODES, self._configure_nodes),
            (BootstrapState.AWAITING_SERVICE_HEALTH, self._await_service_health),
            (BootstrapState.INITIATING_REPLICA_SET, self._initiate_replica_set),
            (BootstrapState.AWAITING_ELECTION, self._await_election),
            (BootstrapState.CREATING_CREDENTIALS, self._create_credentials),
            (BootstrapState.ENABLING_SECURITY, self._enable_security),
            (BootstrapState.RESTARTING_FOR_SECURITY, self._restart_for_security),
        ]

        for state, step in steps:
            try:
                if state != BootstrapState.IDLE:
                    self._check_cancel()
                    self._enter(state)
                step()
            except RsbootError as e:
                return self._fail(e)

        self._enter(BootstrapState.COMPLETE)
        self.bus.emit(BootstrapSummary(state=BootstrapState.COMPLETE.value, **self.run_ctx))
        log.info("replica set '%s' bootstrap complete (primary %s)",
                 self.topology.replica_set_name, self.report.primary)
        return self.report

    def _enter(self, state: BootstrapState) -> None:
        self.report.state = state
        self.report.history.append(state)
        log.info("[%s] entering %s", self.topology.replica_set_name, state.value)
        self.bus.emit(StateEntered(state=state.value, **self.run_ctx))

    def _check_cancel(self) -> None:
        if self.cancel.is_set():
            raise BootstrapCancelled(f"cancelled after {self.report.state.value}")

    def _fail(self, exc: RsbootError) -> BootstrapReport:
        failed_in = self.report.state
        if isinstance(exc, NodeStepFailed):
            failure = Failure(failed_in, exc.kind, str(exc), dict(exc.node_errors))
        else:
            failure = Failure(failed_in, failure_kind_for(exc), str(exc))
        self.report.failure = failure
        self.report.state = BootstrapState.FAILED
        self.report.history.append(BootstrapState.FAILED)
        log.error(failure.describe())
        self.bus.emit(
            BootstrapSummary(
                state=BootstrapState.FAILED.value,
                failed_in=failed_in.value,
                kind=failure.kind.value,
                error=failure.message,
                **self.run_ctx,
            )
        )
        return self.report

    # ------------------ helpers ------------------

    def _for_each_node(
        self,
        stage: str,
        kind: FailureKind,
        step: Callable[[NodeLayout], NodeOutcome],
        into: Optional[List[NodeOutcome]] = None,
    ) -> List[NodeOutcome]:
        outcomes: List[NodeOutcome] = []
        errors: Dict[str, str] = {}
        for layout, outcome, err in run_per_node(self.layouts, step):
            if err is not None:
                errors[layout.name] = f"{err.__class__.__name__}: {err}"
                outcome = NodeOutcome(node=layout.name, error=errors[layout.name])
                self.bus.emit(NodeFailed(node=layout.name, stage=stage, error=str(err), **self.run_ctx))
            outcomes.append(outcome)
        if into is not None:
            into.extend(outcomes)
        if errors:
            raise NodeStepFailed(kind, stage, errors)
        return outcomes

    def _live_config(self, member: Member) -> Optional[Dict[str, Any]]:
        """The replica set config *member* currently reports, or None if it has none."""
        try:
            result = self.admin.run(member.host, member.port, [commands.repl_set_get_config()])[0]
        except DbCommandError as e:
            if e.code in (NOT_YET_INITIALIZED, NO_REPLICATION_ENABLED):
                return None
            raise
        return result.get("config")

    def _conflict(self, live: Dict[str, Any]) -> TopologyConflict:
        hosts = sorted(str(m.get("host")) for m in live.get("members", []))
        return TopologyConflict(
            f"live replica set '{live.get('_id')}' has members {hosts}; "
            f"wanted '{self.topology.replica_set_name}' with "
            f"{sorted(m.endpoint for m in self.topology.members)}. "
            "Refusing to overwrite a live topology"
        )

    def _wait_healthy(self, layout: NodeLayout) -> int:
        attempts = {"n": 0}
        host, port = layout.member.host, layout.member.port

        def on_retry(attempt: int, exc: Exception) -> None:
            attempts["n"] = attempt
            log.debug("(%s) not accepting connections yet (attempt %d): %s", layout.name, attempt, exc)

        @retry(
            retries=self.options.health_retries,
            delay=self.options.health_delay,
            backoff=self.options.backoff,
            max_delay=self.options.max_delay,
            retry_on=(DbConnectionError,),
            on_retry=on_retry,
            sleep=self._sleep,
        )
        def ping() -> None:
            self.db.run(host, port, [commands.ping()], None)

        try:
            ping()
        except RetryError as e:
            raise ServiceDidNotStart(
                f"{layout.name} did not accept connections after {e.attempts} attempts"
            ) from e
        return attempts["n"] + 1

    def _wait_for_primary(self, via: Member) -> str:
        attempts = {"n": 0}

        def on_retry(attempt: int, exc: Exception) -> None:
            attempts["n"] = attempt
            log.debug("no primary yet (attempt %d): %s", attempt, exc)

        @retry(
            retries=self.options.election_retries,
            delay=self.options.election_delay,
            backoff=self.options.backoff,
            max_delay=self.options.max_delay,
            retry_on=(_NoPrimaryYet, DbConnectionError, DbCommandError),
            on_retry=on_retry,
            sleep=self._sleep,
        )
        def poll() -> str:
            status = self.admin.run(via.host, via.port, [commands.repl_set_get_status()])[0]
            for m in status.get("members", []):
                if m.get("stateStr") == "PRIMARY" or m.get("state") == 1:
                    return str(m["name"])
            raise _NoPrimaryYet("no member reports PRIMARY")

        try:
            primary = poll()
        except RetryError as e:
            raise NoPrimaryElected(
                f"no primary elected in '{self.topology.replica_set_name}' after {e.attempts} polls"
            ) from e
        self.bus.emit(PrimaryElected(primary=primary, attempts=attempts["n"] + 1, **self.run_ctx))
        log.info("primary is %s", primary)
        return primary

    # ------------------ transitions ------------------

    def _preflight(self) -> None:
        """Check the inputs, then refuse early when the seed already belongs to a different replica set."""
        self.topology.validate()
        if len(self.layouts) != len(self.topology.members):
            raise TopologyValidationError(
                TopologyValidationError.LAYOUT_MISMATCH,
                f"{len(self.layouts)} node layouts for {len(self.topology.members)} members",
            )
        if not (self.options.key_file_path and self.options.key_file_content):
            raise SecurityConfigError(
                "members of a replica set with authorization enabled authenticate each other "
                "with a key file; set security.key_file and security.key_file_content"
            )
        seed = self.topology.designated_primary
        try:
            live = self._live_config(seed)
        except DbConnectionError as e:
            log.info("preflight: %s not reachable yet (%s)", seed.endpoint, e)
            return
        if live is not None and not self.topology.matches(live):
            raise self._conflict(live)

    def _configure_nodes(self) -> None:
        name = self.topology.replica_set_name

        def step(layout: NodeLayout) -> NodeOutcome:
            desired = replication_config(layout, name, self.options)
            rplan = reconcile(layout.config_file(self.executor, self.options.command_timeout), desired)
            outcome = NodeOutcome(
                node=layout.name,
                edits=[e.describe() for e in rplan.edits],
                requires_restart=rplan.requires_restart,
            )
            self.bus.emit(
                NodeReconciled(node=layout.name, edits=outcome.edits,
                               requires_restart=outcome.requires_restart, **self.run_ctx)
            )
            return outcome

        self._for_each_node("configure", FailureKind.CONFIG_ERROR, step, into=self.report.configure)

    def _await_service_health(self) -> None:
        restart = {o.node for o in self.report.configure if o.requires_restart}

        def step(layout: NodeLayout) -> NodeOutcome:
            if layout.name in restart:
                self.service.restart(layout)
                self.bus.emit(ServiceRestarted(node=layout.name, action="restart", **self.run_ctx))
            elif not self.service.is_active(layout):
                self.service.start(layout)
                self.bus.emit(ServiceRestarted(node=layout.name, action="start", **self.run_ctx))
            attempts = self._wait_healthy(layout)
            self.bus.emit(ServiceHealthy(node=layout.name, attempts=attempts, **self.run_ctx))
            return NodeOutcome(node=layout.name)

        self._for_each_node("service-health", FailureKind.SERVICE_DID_NOT_START, step)

    def _initiate_replica_set(self) -> None:
        seed = self.topology.designated_primary
        live = self._live_config(seed)
        if live is None:
            try:
                self.admin.run(seed.host, seed.port, [commands.repl_set_initiate(self.topology.to_initiate_command())])
                log.info("replSetInitiate sent to %s", seed.endpoint)
            except DbCommandError as e:
                if e.code != ALREADY_INITIALIZED:
                    raise
                live = self._live_config(seed)
                if live is None:
                    raise
        if live is not None:
            if not self.topology.matches(live):
                raise self._conflict(live)
            log.info("replica set '%s' already initiated with matching members", self.topology.replica_set_name)
            self.report.already_initiated = True
        self.bus.emit(
            ReplicaSetInitiated(seed=seed.endpoint, already_existed=self.report.already_initiated, **self.run_ctx)
        )

    def _await_election(self) -> None:
        self.report.primary = self._wait_for_primary(self.topology.designated_primary)

    def _ensure_user(self, user: str, password: str, database: str, roles: List[Dict[str, str]]) -> None:
        host, port = split_endpoint(self.report.primary)
        info = self.admin.run(host, port, [commands.users_info(user, database)])[0]
        existing = info.get("users", [])
        wanted = {(r["role"], r["db"]) for r in roles}
        if existing:
            have = {(r.get("role"), r.get("db")) for r in existing[0].get("roles", [])}
            if have != wanted:
                raise CredentialConflict(
                    f"user '{user}' already exists in '{database}' with roles {sorted(have)}, "
                    f"expected {sorted(wanted)}; refusing to overwrite"
                )
            self.report.users_present.append(f"{database}.{user}")
            self.bus.emit(UserEnsured(user=user, database=database, created=False, **self.run_ctx))
            return
        self.admin.run(host, port, [commands.create_user(user, password, roles, database)])
        self.report.users_created.append(f"{database}.{user}")
        log.info("created user '%s' in '%s'", user, database)
        self.bus.emit(UserEnsured(user=user, database=database, created=True, **self.run_ctx))

    def _create_credentials(self) -> None:
        c = self.credentials
        self._ensure_user(c.admin_user, c.admin_password, "admin", ADMIN_ROLES)
        self._ensure_user(c.app_user, c.app_password, c.app_database, app_roles(c.app_database))

    def _install_key_file(self, layout: NodeLayout) -> bool:
        """Put the internal-auth key file in place. Returns True when it changed."""
        path = self.options.key_file_path
        content = self.options.key_file_content
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
        p = shq(path)
        current = self.executor.execute(
            layout.target, f"if [ -e {p} ]; then sha256sum {p} | cut -d' ' -f1; fi",
            sudo=layout.sudo, timeout=self.options.command_timeout,
        )
        if current.ok and current.stdout.strip() == digest:
            return False
        tmp = shq(f"{path}.rsboot.tmp")
        script = "\n".join([
            "set -e",
            "umask 077",
            f"cat > {tmp}",
            f"chown {shq(layout.os_user)}:{shq(layout.os_user)} {tmp}",
            f"chmod 400 {tmp}",
            f"mv -f {tmp} {p}",
        ])
        checked(self.executor, layout.target, script, what="install key file",
                sudo=layout.sudo, stdin=content, timeout=self.options.command_timeout)
        return True

    def _enable_security(self) -> None:
        def step(layout: NodeLayout) -> NodeOutcome:
            key_changed = self._install_key_file(layout)
            rplan = reconcile(
                layout.config_file(self.executor, self.options.command_timeout), security_config(self.options)
            )
            edits = [e.describe() for e in rplan.edits]
            if key_changed:
                edits.insert(0, f"key file {self.options.key_file_path} installed")
            outcome = NodeOutcome(
                node=layout.name,
                edits=edits,
                requires_restart=rplan.requires_restart or key_changed,
            )
            self.bus.emit(
                NodeReconciled(node=layout.name, edits=outcome.edits,
                               requires_restart=outcome.requires_restart, **self.run_ctx)
            )
            return outcome

        self._for_each_node("enable-security", FailureKind.CONFIG_ERROR, step, into=self.report.security)

    def _verify_auth(self, layout: NodeLayout) -> NodeOutcome:
        host, port = layout.member.host, layout.member.port
        try:
            self.db.run(host, port, [commands.repl_set_get_status()], None)
        except DbAuthError:
            pass
        else:
            raise DbAuthError(f"{layout.name} accepted an unauthenticated admin command")
        self.db.run(host, port, [commands.repl_set_get_status()], self.credentials)
        return NodeOutcome(node=layout.name)

    def _restart_for_security(self) -> None:
        restart = {o.node for o in self.report.security if o.requires_restart}

        def bounce(layout: NodeLayout) -> NodeOutcome:
            if layout.name in restart:
                self.service.restart(layout)
                self.bus.emit(ServiceRestarted(node=layout.name, action="restart", **self.run_ctx))
            attempts = self._wait_healthy(layout)
            self.bus.emit(ServiceHealthy(node=layout.name, attempts=attempts, **self.run_ctx))
            return NodeOutcome(node=layout.name)

        self._for_each_node("restart", FailureKind.SERVICE_DID_NOT_START, bounce)
        self._for_each_node("verify-auth", FailureKind.AUTH_ERROR, self._verify_auth)

        self.admin.require_auth()
        if restart:
            self.report.primary = self._wait_for_primary(self.topology.designated_primary)
