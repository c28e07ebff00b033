import hashlib
import re
import threading
import textwrap
from typing import Dict, List, Optional

import pytest

from rsboot.bootstrap.nodes import NodeLayout
from rsboot.bootstrap.orchestrator import BootstrapOptions
from rsboot.cluster.topology import ClusterTopology, Credentials, Member
from rsboot.db.client import (
    ALREADY_INITIALIZED,
    NO_REPLICATION_ENABLED,
    NOT_WRITABLE_PRIMARY,
    NOT_YET_INITIALIZED,
)
from rsboot.errors import DbAuthError, DbCommandError, DbConnectionError, ExecutionError
from rsboot.execution.executor import CommandResult, NodeTarget
from rsboot.mongod.conf import parse

CONF_PATH = "/etc/mongod.conf"

# what the distribution package ships
STOCK_CONF = textwrap.dedent("""\
    # mongod.conf

    # for documentation of all options, see:
    #   http://docs.mongodb.org/manual/reference/configuration-options/

    # Where and how to store data.
    storage:
      dbPath: /var/lib/mongodb

    # where to write logging data.
    systemLog:
      destination: file
      logAppend: true
      path: /var/log/mongodb/mongod.log

    # network interfaces
    net:
      port: 27017
      bindIp: 127.0.0.1

    # how the process runs
    processManagement:
      timeZoneInfo: /usr/share/zoneinfo
    """)

_QUOTED = re.compile(r"'([^']*)'")


def sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ----------------- Fake node (filesystem + systemd) -----------------

class FakeNode:
    def __init__(self, name, files=None, active=True, installed=True, os_id="ubuntu"):
        self.name = name
        self.files: Dict[str, str] = dict(files or {})
        self.modes: Dict[str, str] = {}
        self.active = active
        self.installed = installed
        self.os_id = os_id
        self.unreachable = False     # ssh fails
        self.db_down = False         # service "runs" but never answers
        self.commands: List[tuple] = []
        self.restarts = 0
        self.starts = 0
        self.enabled = False
        # config the running process was started with
        self.running = self.files.get(CONF_PATH, "") if active else None

    def _boot(self):
        self.active = True
        self.running = self.files.get(CONF_PATH, "")

    @property
    def writes(self):
        return [c for c in self.commands if "config changed on disk" in c[0]]

    def handle(self, command: str, stdin: Optional[str]) -> CommandResult:
        quoted = _QUOTED.findall(command)

        if command.startswith("if [ -e ") and "then cat" in command:
            return CommandResult(0, self.files.get(quoted[0], ""), "")

        if command.startswith("if [ -e ") and "sha256sum" in command:
            content = self.files.get(quoted[0])
            return CommandResult(0, "" if content is None else sha(content) + "\n", "")

        if "config changed on disk" in command:
            path = quoted[0]
            bak = next(q for q in quoted if ".bak." in q)
            expected = re.search(r'!= "([0-9a-f]{64})"', command).group(1)
            if sha(self.files.get(path, "")) != expected:
                return CommandResult(3, "", "config changed on disk\n")
            if path in self.files and bak not in self.files:
                self.files[bak] = self.files[path]
            self.files[path] = stdin
            return CommandResult(0, "", "")

        if "umask 077" in command:
            dest = quoted[-1]
            self.files[dest] = stdin
            self.modes[dest] = "400"
            return CommandResult(0, "", "")

        if command.startswith("systemctl "):
            if "is-active" in command:
                return CommandResult(0 if self.active else 3, "", "")
            if command.startswith("systemctl restart"):
                self.restarts += 1
                self._boot()
            elif command.startswith("systemctl start"):
                self.starts += 1
                self._boot()
            elif command.startswith("systemctl enable --now"):
                self.enabled = True
                if not self.active:
                    self._boot()
            return CommandResult(0, "", "")

        if command == "mongod --version":
            return CommandResult(0 if self.installed else 127, "db version v6.0.14\n" if self.installed else "", "")

        if "/etc/os-release" in command and "$ID" in command:
            return CommandResult(0, self.os_id + "\n", "")

        if "apt-get install -y mongodb-org" in command or "yum install -y mongodb-org" in command:
            self.installed = True
            self.files.setdefault(CONF_PATH, STOCK_CONF)
            return CommandResult(0, "", "")

        if command.startswith("mkdir -p"):
            return CommandResult(0, "", "")

        return CommandResult(127, "", f"unknown command: {command}")


class FakeExecutor:
    def __init__(self, nodes: Dict[str, FakeNode]):
        self.nodes = nodes
        self.closed = False

    def execute(self, target, command, *, sudo=False, stdin=None, timeout=None):
        node = self.nodes[target.name]
        node.commands.append((command, sudo, stdin))
        if node.unreachable:
            raise ExecutionError(f"cannot connect to {target.name} ({target.address}): timed out")
        return node.handle(command, stdin)

    def close(self):
        self.closed = True


# ----------------- Fake replica set -----------------

class FakeMongo:
    """
    Answers admin commands the way a set of mongod processes would, based on
    the config each FakeNode was last started with.
    """

    def __init__(self, nodes: Dict[str, FakeNode]):
        self.nodes = nodes
        self.rs_config: Optional[dict] = None
        self.users: Dict[tuple, dict] = {}
        self.primary: Optional[str] = None
        self.polls_until_primary = 1
        self.status_polls = 0
        self.step_down_drops_connection = True
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _elect(self):
        members = self.rs_config["members"]
        best = max(members, key=lambda m: (m.get("priority", 1), -members.index(m)))
        self.primary = best["host"]

    def _check_auth(self, ep, credentials):
        if credentials is None:
            raise DbAuthError(f"{ep}: command requires authentication")
        user = self.users.get(("admin", credentials.admin_user))
        if user is None or user["pwd"] != credentials.admin_password:
            raise DbAuthError(f"{ep}: Authentication failed.")

    def run(self, host, port, commands, credentials=None):
        ep = f"{host}:{port}"
        with self._lock:
            node = self.nodes[ep]
            if not node.active or node.db_down:
                raise DbConnectionError(f"cannot reach {ep}: connection refused")
            running = parse(node.running or "")
            if credentials is not None:
                self._check_auth(ep, credentials)
            results = []
            for cmd in commands:
                self.calls.append((ep, cmd.name, credentials is not None))
                if cmd.name != "ping" and running.authorization_enabled:
                    self._check_auth(ep, credentials)
                results.append(self._command(ep, running, cmd))
            return results

    def _command(self, ep, running, cmd):
        name = cmd.name
        if name == "ping":
            return {"ok": 1.0}
        if name in ("replSetGetConfig", "replSetGetStatus", "replSetStepDown"):
            if not running.replica_set_name:
                raise DbCommandError(f"{ep}: not running with --replSet", NO_REPLICATION_ENABLED, "NoReplicationEnabled")
            if self.rs_config is None:
                raise DbCommandError(f"{ep}: no replset config has been received", NOT_YET_INITIALIZED, "NotYetInitialized")
        if name == "replSetGetConfig":
            return {"config": self.rs_config, "ok": 1.0}
        if name == "replSetGetStatus":
            self.status_polls += 1
            if self.primary is None and self.status_polls >= self.polls_until_primary:
                self._elect()
            return {
                "set": self.rs_config["_id"],
                "members": [
                    {"name": m["host"], "stateStr": "PRIMARY" if m["host"] == self.primary else "SECONDARY"}
                    for m in self.rs_config["members"]
                ],
                "ok": 1.0,
            }
        if name == "replSetInitiate":
            if not running.replica_set_name:
                raise DbCommandError(f"{ep}: not running with --replSet", NO_REPLICATION_ENABLED, "NoReplicationEnabled")
            if self.rs_config is not None:
                raise DbCommandError(f"{ep}: already initialized", ALREADY_INITIALIZED, "AlreadyInitialized")
            self.rs_config = dict(cmd.value)
            return {"ok": 1.0}
        if name == "replSetStepDown":
            if ep != self.primary:
                raise DbCommandError(f"{ep}: not primary so can't step down", NOT_WRITABLE_PRIMARY, "NotWritablePrimary")
            self.primary = None
            self.status_polls = 0
            if self.step_down_drops_connection:
                raise DbConnectionError(f"{ep}: connection closed")
            return {"ok": 1.0}
        if name == "usersInfo":
            db, user = cmd.value["db"], cmd.value["user"]
            found = self.users.get((db, user))
            if found is None:
                return {"users": [], "ok": 1.0}
            return {"users": [{"user": user, "db": db, "roles": found["roles"]}], "ok": 1.0}
        if name == "createUser":
            self.users[(cmd.database, cmd.value)] = {"pwd": cmd.options["pwd"], "roles": cmd.options["roles"]}
            return {"ok": 1.0}
        raise DbCommandError(f"{ep}: no such command: '{name}'", 59, "CommandNotFound")


# ----------------- Cluster fixture -----------------

class FakeCluster:
    def __init__(self, hosts, conf=STOCK_CONF, active=True, rs_name="rs0"):
        self.members = [Member(id=i, host=h, port=27017) for i, h in enumerate(hosts)]
        self.topology = ClusterTopology(replica_set_name=rs_name, members=tuple(self.members))
        self.nodes = {
            m.endpoint: FakeNode(m.endpoint, files={CONF_PATH: conf} if conf is not None else {}, active=active)
            for m in self.members
        }
        self.executor = FakeExecutor(self.nodes)
        self.mongo = FakeMongo(self.nodes)
        self.layouts = [
            NodeLayout(member=m, target=NodeTarget(name=m.endpoint, address=m.host)) for m in self.members
        ]
        self.credentials = Credentials(
            admin_user="admin",
            admin_password="s3cr3t-admin",
            app_user="app",
            app_password="s3cr3t-app",
            app_database="appdb",
        )

    def node(self, host: str) -> FakeNode:
        return self.nodes[f"{host}:27017"]

    def conf(self, host: str) -> str:
        return self.node(host).files[CONF_PATH]

    def clear_commands(self):
        for n in self.nodes.values():
            n.commands.clear()


@pytest.fixture
def cluster():
    return FakeCluster(["db1", "db2", "db3"])


@pytest.fixture
def make_cluster():
    return FakeCluster


@pytest.fixture
def no_sleep():
    return lambda _seconds: None


KEY_PATH = "/etc/mongod.key"
KEY_BODY = "c2VjcmV0LWtleS1ib2R5"


def fast_options(**overrides) -> BootstrapOptions:
    values = dict(health_retries=3, election_retries=3, key_file_path=KEY_PATH, key_file_content=KEY_BODY)
    values.update(overrides)
    return BootstrapOptions(**values)
