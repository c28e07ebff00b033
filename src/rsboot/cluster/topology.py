# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/cluster/topology.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Tuple

from ..errors import TopologyValidationError


@dataclass(frozen=True)
class Member:
    id: int
    host: str
    port: int = 27017
    priority: float = 1.0

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class Credentials:
    """
    Admin and application logins. Held for the duration of a run only;
    passwords are kept out of repr so they never reach a log line.
    """
    admin_user: str
    admin_password: str = field(repr=False)
    app_user: str
    app_password: str = field(repr=False)
    app_database: str

    def __post_init__(self):
        for name in ("admin_user", "admin_password", "app_user", "app_password", "app_database"):
            if not getattr(self, name):
                raise ValueError(f"credentials: {name} must be non-empty")


@dataclass(frozen=True)
class ClusterTopology:
    """
    The desired replica set: its name and ordered member list.
    Built once before orchestration and read-only afterwards.
    """

    replica_set_name: str
    members: Tuple[Member, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "members", tuple(self.members))

    # ------------------ validation ------------------

    def validate(self) -> None:
        if not self.replica_set_name or not self.replica_set_name.strip():
            raise TopologyValidationError(
                TopologyValidationError.EMPTY_TOPOLOGY, "replica set name is empty"
            )
        if not self.members:
            raise TopologyValidationError(
                TopologyValidationError.EMPTY_TOPOLOGY, "topology has no members"
            )

        seen_ids: set = set()
        seen_endpoints: set = set()
        for m in self.members:
            if m.id in seen_ids:
                raise TopologyValidationError(
                    TopologyValidationError.DUPLICATE_ID, f"member id {m.id} used more than once"
                )
            seen_ids.add(m.id)

            ep = (m.host.lower(), m.port)
            if ep in seen_endpoints:
                raise TopologyValidationError(
                    TopologyValidationError.DUPLICATE_ENDPOINT, f"{m.endpoint} listed more than once"
                )
            seen_endpoints.add(ep)

            if m.priority < 0:
                raise TopologyValidationError(
                    TopologyValidationError.INVALID_PRIORITY, f"{m.endpoint} has negative priority {m.priority}"
                )
            if not 1 <= m.port <= 65535:
                raise TopologyValidationError(
                    TopologyValidationError.INVALID_PORT, f"{m.endpoint} has invalid port"
                )

        if sorted(seen_ids) != list(range(len(self.members))):
            raise TopologyValidationError(
                TopologyValidationError.NON_CONTIGUOUS_IDS,
                f"member ids must be 0..{len(self.members) - 1}, got {sorted(seen_ids)}",
            )

    # ------------------ views ------------------

    @property
    def designated_primary(self) -> Member:
        """Highest-priority member; the first listed wins a tie."""
        return max(self.members, key=lambda m: (m.priority, -self.members.index(m)))

    def to_initiate_command(self) -> Dict[str, Any]:
        """The replSetInitiate document for this topology."""
        return {
            "_id": self.replica_set_name,
            "members": [
                {"_id": m.id, "host": m.endpoint, "priority": m.priority}
                for m in self.members
            ],
        }

    def membership(self) -> FrozenSet[Tuple[int, str]]:
        return membership_of(self.to_initiate_command()["members"])

    def matches(self, live_config: Dict[str, Any]) -> bool:
        """True when a live replica set config has this name and the same (id, host) pairs."""
        return (
            live_config.get("_id") == self.replica_set_name
            and membership_of(live_config.get("members", [])) == self.membership()
        )


def membership_of(members: Iterable[Dict[str, Any]]) -> FrozenSet[Tuple[int, str]]:
    return frozenset((int(m["_id"]), str(m["host"]).lower()) for m in members)


def split_endpoint(endpoint: str) -> Tuple[str, int]:
    host, _, port = endpoint.rpartition(":")
    return host, int(port)
