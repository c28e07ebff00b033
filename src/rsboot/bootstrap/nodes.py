# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/bootstrap/nodes.py

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from ..cluster.topology import Member
from ..errors import RsbootError
from ..execution.executor import NodeTarget, RemoteExecutor, checked, shq
from ..mongod.reconciler import ConfigFile

log = logging.getLogger("rsboot")

T = TypeVar("T")


@dataclass(frozen=True)
class NodeLayout:
    """
    Per-node paths and service name, plus how to reach the node.
    """
    member: Member
    target: NodeTarget
    config_path: str = "/etc/mongod.conf"
    storage_path: str = "/var/lib/mongodb"
    log_path: str = "/var/log/mongodb/mongod.log"
    service: str = "mongod"
    os_user: str = "mongodb"
    sudo: bool = True

    @property
    def name(self) -> str:
        return self.member.endpoint

    def config_file(self, executor: RemoteExecutor, timeout: Optional[float] = None) -> ConfigFile:
        return ConfigFile(executor, self.target, self.config_path, sudo=self.sudo, timeout=timeout)


@dataclass
class NodeOutcome:
    node: str
    edits: List[str] = field(default_factory=list)
    requires_restart: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_per_node(
    layouts: Sequence[NodeLayout],
    fn: Callable[[NodeLayout], T],
) -> List[Tuple[NodeLayout, Optional[T], Optional[Exception]]]:
    """
    Run *fn* for every node concurrently, one worker per node. Failures of
    one node do not stop the others; each result comes back as
    (layout, value, error) in the order of *layouts*.
    """
    if not layouts:
        return []
    results = []
    with ThreadPoolExecutor(max_workers=len(layouts), thread_name_prefix="rsboot-node") as pool:
        futures = [(layout, pool.submit(fn, layout)) for layout in layouts]
        for layout, fut in futures:
            try:
                results.append((layout, fut.result(), None))
            except (RsbootError, ValueError) as e:
                log.error("(%s) %s", layout.name, e)
                results.append((layout, None, e))
    return results


class ServiceControl:
    """systemd control of the database service on a node."""

    def __init__(self, executor: RemoteExecutor, timeout: Optional[float] = None):
        self.executor = executor
        self.timeout = timeout

    def restart(self, layout: NodeLayout) -> None:
        checked(
            self.executor, layout.target, f"systemctl restart {shq(layout.service)}",
            what=f"restart {layout.service}", sudo=layout.sudo, timeout=self.timeout,
        )

    def start(self, layout: NodeLayout) -> None:
        checked(
            self.executor, layout.target, f"systemctl start {shq(layout.service)}",
            what=f"start {layout.service}", sudo=layout.sudo, timeout=self.timeout,
        )

    def enable_now(self, layout: NodeLayout) -> None:
        checked(
            self.executor, layout.target, f"systemctl enable --now {shq(layout.service)}",
            what=f"enable {layout.service}", sudo=layout.sudo, timeout=self.timeout,
        )

    def is_active(self, layout: NodeLayout) -> bool:
        result = self.executor.execute(
            layout.target, f"systemctl is-active --quiet {shq(layout.service)}",
            sudo=False, timeout=self.timeout,
        )
        return result.ok
