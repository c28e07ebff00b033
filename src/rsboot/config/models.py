# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/config/models.py

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, model_validator

from ..bootstrap.install import InstallOptions
from ..bootstrap.nodes import NodeLayout
from ..bootstrap.orchestrator import BootstrapOptions
from ..cluster.topology import ClusterTopology, Credentials, Member
from ..execution.executor import NodeTarget


class SshSpec(BaseModel):
    username: str = "ubuntu"
    port: int = 22
    key_path: Optional[Path] = None
    password: Optional[SecretStr] = None

    model_config = {"extra": "forbid"}


class MemberSpec(BaseModel):
    host: str
    id: Optional[int] = None
    port: int = 27017
    priority: float = 1.0

    # How to reach the machine; defaults to host over SSH
    address: Optional[str] = None
    local: bool = False
    ssh: Optional[SshSpec] = None

    model_config = {"extra": "forbid"}


class PathsSpec(BaseModel):
    config: str = "/etc/mongod.conf"
    storage: str = "/var/lib/mongodb"
    log: str = "/var/log/mongodb/mongod.log"
    service: str = "mongod"
    os_user: str = "mongodb"
    sudo: bool = True

    model_config = {"extra": "forbid"}


class CredentialsSpec(BaseModel):
    admin_user: str = "admin"
    admin_password: SecretStr
    app_user: str
    app_password: SecretStr
    app_database: str

    model_config = {"extra": "forbid"}


class SecuritySpec(BaseModel):
    key_file: Optional[str] = None             # path on the nodes
    key_file_content: Optional[SecretStr] = None

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _key_pair(self) -> "SecuritySpec":
        if bool(self.key_file) != bool(self.key_file_content):
            raise ValueError("security.key_file and security.key_file_content must be set together")
        return self


class TimingSpec(BaseModel):
    command_timeout: float = 120.0
    install_timeout: float = 600.0
    ssh_connect_timeout: float = 20.0
    health_retries: int = Field(20, ge=1)
    health_delay: float = 3.0
    election_retries: int = Field(30, ge=1)
    election_delay: float = 2.0
    backoff: float = Field(1.5, ge=1.0)
    max_delay: float = 15.0

    model_config = {"extra": "forbid"}


class ClusterSpec(BaseModel):
    """
    Declarative description of one replica set: members, how to reach
    them, credentials and timing.
    """

    replica_set: str
    mongo_version: str = "6.0"
    bind_addresses: List[str] = ["0.0.0.0"]
    members: List[MemberSpec]
    ssh: SshSpec = SshSpec()
    paths: PathsSpec = PathsSpec()
    credentials: Optional[CredentialsSpec] = None
    security: SecuritySpec = SecuritySpec()
    timing: TimingSpec = TimingSpec()

    model_config = {"extra": "forbid"}

    # ------------------ domain views ------------------

    def member_objects(self) -> List[Member]:
        return [
            Member(
                id=m.id if m.id is not None else i,
                host=m.host,
                port=m.port,
                priority=m.priority,
            )
            for i, m in enumerate(self.members)
        ]

    def topology(self) -> ClusterTopology:
        return ClusterTopology(replica_set_name=self.replica_set, members=tuple(self.member_objects()))

    def to_credentials(self) -> Credentials:
        if self.credentials is None:
            raise ValueError("credentials section is required for this command")
        c = self.credentials
        return Credentials(
            admin_user=c.admin_user,
            admin_password=c.admin_password.get_secret_value(),
            app_user=c.app_user,
            app_password=c.app_password.get_secret_value(),
            app_database=c.app_database,
        )

    def require_key_file(self) -> None:
        if not self.security.key_file:
            raise ValueError(
                "security.key_file and security.key_file_content are required: "
                "replica set members authenticate each other with it once authorization is on"
            )

    def _spec_for(self, member: Member) -> MemberSpec:
        for i, m in enumerate(self.members):
            if (m.id if m.id is not None else i) == member.id:
                return m
        raise KeyError(f"no member with id {member.id}")

    def target_for(self, member: Member) -> NodeTarget:
        spec = self._spec_for(member)
        ssh = spec.ssh or self.ssh
        return NodeTarget(
            name=member.endpoint,
            address=spec.address or spec.host,
            local=spec.local,
            username=ssh.username,
            port=ssh.port,
            pkey_path=ssh.key_path.expanduser() if ssh.key_path else None,
            password=ssh.password.get_secret_value() if ssh.password else None,
        )

    def layout_for(self, member: Member) -> NodeLayout:
        p = self.paths
        return NodeLayout(
            member=member,
            target=self.target_for(member),
            config_path=p.config,
            storage_path=p.storage,
            log_path=p.log,
            service=p.service,
            os_user=p.os_user,
            sudo=p.sudo,
        )

    def layouts(self) -> List[NodeLayout]:
        return [self.layout_for(m) for m in self.member_objects()]

    def bootstrap_options(self) -> BootstrapOptions:
        t = self.timing
        return BootstrapOptions(
            bind_addresses=frozenset(self.bind_addresses),
            health_retries=t.health_retries,
            health_delay=t.health_delay,
            election_retries=t.election_retries,
            election_delay=t.election_delay,
            backoff=t.backoff,
            max_delay=t.max_delay,
            command_timeout=t.command_timeout,
            key_file_path=self.security.key_file,
            key_file_content=(
                self.security.key_file_content.get_secret_value()
                if self.security.key_file_content else None
            ),
        )

    def install_options(self) -> InstallOptions:
        return InstallOptions(
            version=self.mongo_version,
            bind_addresses=frozenset(self.bind_addresses),
            command_timeout=self.timing.install_timeout,
        )
