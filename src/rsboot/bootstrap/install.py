# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/bootstrap/install.py

"""
Package installation and base configuration for every member:

  - detect the OS from /etc/os-release
  - add the vendor repository and install mongodb-org (skipped when
    mongod is already on the PATH)
  - create the data and log directories
  - reconcile the base mongod.conf (storage, journal, net, replication, log)
  - enable and start the service, restarting it when the config change
    needs one
"""

from __future__ import annotations

import logging
import posixpath
import textwrap
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence

from ..cluster.topology import ClusterTopology
from ..errors import UnsupportedPlatformError
from ..execution.executor import RemoteExecutor, checked, shq
from ..mongod.conf import ConfigModel
from ..mongod.reconciler import reconcile
from ..observers.dispatcher import EventBus
from ..observers.events import InstallStarted, InstallSummary, NodeFailed, NodeInstalled, new_ctx
from .nodes import NodeLayout, NodeOutcome, ServiceControl, run_per_node

log = logging.getLogger("rsboot")

APT_FAMILY = ("ubuntu", "debian")
YUM_FAMILY = ("rhel", "centos", "fedora", "rocky", "almalinux")


@dataclass
class InstallOptions:
    version: str = "6.0"
    bind_addresses: FrozenSet[str] = frozenset({"0.0.0.0"})
    journal: bool = True
    command_timeout: float = 600.0


@dataclass
class InstallOutcome(NodeOutcome):
    os_id: str = ""
    package_installed: bool = False


@dataclass
class InstallReport:
    nodes: List[InstallOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[InstallOutcome]:
        return [o for o in self.nodes if not o.ok]

    @property
    def ok(self) -> bool:
        return bool(self.nodes) and not self.failed


def apt_script(os_id: str, version: str) -> str:
    keyring = f"/etc/apt/keyrings/mongodb-{version}.gpg"
    component = "multiverse" if os_id == "ubuntu" else "main"
    return textwrap.dedent(f"""\
        set -e
        . /etc/os-release
        mkdir -p /etc/apt/keyrings
        curl -fsSL https://www.mongodb.org/static/pgp/server-{version}.asc -o /tmp/mongodb-{version}.asc
        gpg --batch --yes --dearmor -o {keyring} /tmp/mongodb-{version}.asc
        echo "deb [signed-by={keyring}] https://repo.mongodb.org/apt/{os_id} $VERSION_CODENAME/mongodb-org/{version} {component}" \\
          > /etc/apt/sources.list.d/mongodb-org-{version}.list
        apt-get update -y
        DEBIAN_FRONTEND=noninteractive apt-get install -y mongodb-org
        """)


def yum_script(version: str) -> str:
    return textwrap.dedent(f"""\
        set -e
        cat > /etc/yum.repos.d/mongodb-org-{version}.repo <<'EOF'
        [mongodb-org-{version}]
        name=MongoDB Repository
        baseurl=https://repo.mongodb.org/yum/redhat/$releasever/mongodb-org/{version}/x86_64/
        gpgcheck=1
        enabled=1
        gpgkey=https://www.mongodb.org/static/pgp/server-{version}.asc
        EOF
        yum install -y mongodb-org
        """)


def package_script(os_id: str, version: str) -> str:
    if os_id in APT_FAMILY:
        return apt_script(os_id, version)
    if os_id in YUM_FAMILY:
        return yum_script(version)
    raise UnsupportedPlatformError(f"unsupported OS '{os_id}'")


class InstallManager:
    def __init__(
        self,
        topology: ClusterTopology,
        layouts: Sequence[NodeLayout],
        executor: RemoteExecutor,
        options: Optional[InstallOptions] = None,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
    ):
        self.topology = topology
        self.layouts = list(layouts)
        self.executor = executor
        self.options = options or InstallOptions()
        self.bus = bus or EventBus()
        self.service = ServiceControl(executor, timeout=self.options.command_timeout)
        self.run_ctx = new_ctx(replica_set=topology.replica_set_name, run_id=run_id)

    # ------------------ per-node steps ------------------

    def detect_os(self, layout: NodeLayout) -> str:
        result = checked(
            self.executor, layout.target, '. /etc/os-release && echo "$ID"',
            what="detect OS", timeout=self.options.command_timeout,
        )
        return result.stdout.strip().lower()

    def is_installed(self, layout: NodeLayout) -> bool:
        return self.executor.execute(
            layout.target, "mongod --version", timeout=self.options.command_timeout
        ).ok

    def ensure_dirs(self, layout: NodeLayout) -> None:
        dirs = " ".join(shq(d) for d in (layout.storage_path, posixpath.dirname(layout.log_path)))
        owner = shq(f"{layout.os_user}:{layout.os_user}")
        checked(
            self.executor, layout.target, f"mkdir -p {dirs} && chown -R {owner} {dirs}",
            what="create data directories", sudo=layout.sudo, timeout=self.options.command_timeout,
        )

    def base_config(self, layout: NodeLayout) -> ConfigModel:
        return ConfigModel(
            storage_path=layout.storage_path,
            journal_enabled=True if self.options.journal else None,
            log_path=layout.log_path,
            port=layout.member.port,
            bind_addresses=self.options.bind_addresses,
            replica_set_name=self.topology.replica_set_name,
        )

    def install_node(self, layout: NodeLayout) -> InstallOutcome:
        os_id = self.detect_os(layout)
        installed_now = False
        if self.is_installed(layout):
            log.info("(%s) mongod already installed; skipping packages", layout.name)
        else:
            log.info("(%s) installing mongodb-org %s on %s", layout.name, self.options.version, os_id)
            checked(
                self.executor, layout.target, package_script(os_id, self.options.version),
                what="install mongodb-org", sudo=layout.sudo, timeout=self.options.command_timeout,
            )
            installed_now = True

        self.ensure_dirs(layout)
        was_active = self.service.is_active(layout)
        rplan = reconcile(
            layout.config_file(self.executor, self.options.command_timeout), self.base_config(layout)
        )
        self.service.enable_now(layout)
        if was_active and rplan.requires_restart:
            self.service.restart(layout)

        outcome = InstallOutcome(
            node=layout.name,
            edits=[e.describe() for e in rplan.edits],
            requires_restart=rplan.requires_restart,
            os_id=os_id,
            package_installed=installed_now,
        )
        self.bus.emit(
            NodeInstalled(node=layout.name, os_id=os_id, package_installed=installed_now,
                          edits=outcome.edits, **self.run_ctx)
        )
        return outcome

    # ------------------ run ------------------

    def run(self) -> InstallReport:
        self.topology.validate()
        self.bus.emit(
            InstallStarted(members=[l.name for l in self.layouts], version=self.options.version, **self.run_ctx)
        )
        report = InstallReport()
        for layout, outcome, err in run_per_node(self.layouts, self.install_node):
            if err is not None:
                outcome = InstallOutcome(node=layout.name, error=f"{err.__class__.__name__}: {err}")
                self.bus.emit(NodeFailed(node=layout.name, stage="install", error=str(err), **self.run_ctx))
            report.nodes.append(outcome)

        self.bus.emit(
            InstallSummary(ok=len(report.nodes) - len(report.failed), failed=len(report.failed), **self.run_ctx)
        )
        return report
