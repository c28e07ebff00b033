import pytest

from rsboot.bootstrap.orchestrator import BootstrapOrchestrator, BootstrapState
from rsboot.bootstrap.teardown import (
    NOT_INITIATED,
    NOT_PRIMARY,
    STEPPED_DOWN,
    UNAUTHORIZED,
    UNREACHABLE,
    TeardownOrchestrator,
)
from rsboot.errors import FailureKind
from rsboot.mongod.conf import parse
from rsboot.observers.dispatcher import EventBus

from conftest import fast_options

HOSTS = ("db1", "db2", "db3")


@pytest.fixture
def bootstrapped(cluster, no_sleep):
    report = BootstrapOrchestrator(
        cluster.topology, cluster.credentials, cluster.layouts, cluster.executor, cluster.mongo,
        options=fast_options(), sleep=no_sleep,
    ).run()
    assert report.ok
    return cluster


def _teardown(cluster, credentials=True, **kw):
    return TeardownOrchestrator(
        cluster.topology, cluster.layouts, cluster.executor, cluster.mongo,
        credentials=cluster.credentials if credentials else None, **kw,
    )


def test_teardown_steps_down_and_strips_replication(bootstrapped):
    c = bootstrapped
    before = {h: c.node(h).restarts for h in HOSTS}

    events = []

    class Rec:
        def notify(self, e):
            events.append(e)

    report = _teardown(c, bus=EventBus([Rec()])).run()

    assert report.ok
    assert report.state == BootstrapState.COMPLETE
    assert report.step_down == STEPPED_DOWN
    assert report.primary == "db1:27017"
    for h in HOSTS:
        conf = c.conf(h)
        assert "\n#replication:\n  #replSetName: rs0\n" in conf
        model = parse(conf)
        assert model.replica_set_name is None
        # auth stays on unless asked
        assert model.authorization_enabled is True
        assert c.node(h).restarts == before[h] + 1
    assert [o.edits for o in report.nodes] == [["replication.replSetName: remove (was rs0)"]] * 3

    names = [e.__class__.__name__ for e in events]
    assert names[0] == "TeardownStarted"
    assert names[1] == "StepDownResult"
    assert names[-1] == "TeardownSummary"
    assert events[-1].failed_nodes == []


def test_teardown_can_disable_auth(bootstrapped):
    report = _teardown(bootstrapped).run(disable_auth=True)
    assert report.ok
    for h in HOSTS:
        model = parse(bootstrapped.conf(h))
        assert model.replica_set_name is None
        assert model.authorization_enabled is None
        assert "#security:\n" in bootstrapped.conf(h)


def test_teardown_is_idempotent(bootstrapped):
    _teardown(bootstrapped).run()
    restarts = {h: bootstrapped.node(h).restarts for h in HOSTS}
    bootstrapped.clear_commands()

    report = _teardown(bootstrapped).run()

    assert report.ok
    assert report.step_down == NOT_INITIATED
    assert all(o.edits == [] for o in report.nodes)
    for h in HOSTS:
        assert bootstrapped.node(h).restarts == restarts[h]
        assert bootstrapped.node(h).writes == []


def test_step_down_without_credentials_still_tears_down(bootstrapped):
    report = _teardown(bootstrapped, credentials=False).run()
    assert report.step_down == UNAUTHORIZED
    assert report.primary is None
    assert report.ok
    assert parse(bootstrapped.conf("db2")).replica_set_name is None


def test_never_initiated_cluster_is_untouched(cluster):
    report = _teardown(cluster).run()
    assert report.ok
    assert report.step_down == NOT_INITIATED
    for h in HOSTS:
        assert cluster.node(h).writes == []
        assert cluster.node(h).restarts == 0


def test_unreachable_database_skips_step_down(cluster):
    for h in HOSTS:
        cluster.node(h).db_down = True
    report = _teardown(cluster).run()
    assert report.step_down == UNREACHABLE
    assert report.ok


def test_failed_node_is_reported_and_others_continue(bootstrapped):
    bootstrapped.node("db2").unreachable = True

    report = _teardown(bootstrapped).run()

    assert report.state == BootstrapState.FAILED
    assert report.failure.kind == FailureKind.CONFIG_ERROR
    assert list(report.failure.node_errors) == ["db2:27017"]
    assert parse(bootstrapped.conf("db1")).replica_set_name is None
    assert parse(bootstrapped.conf("db3")).replica_set_name is None
    assert parse(bootstrapped.conf("db2")).replica_set_name == "rs0"


def test_primary_that_moved_before_step_down_counts_as_stepped_down(bootstrapped, monkeypatch):
    mongo = bootstrapped.mongo
    original = mongo._command

    def election_after_status(ep, running, cmd):
        result = original(ep, running, cmd)
        if cmd.name == "replSetGetStatus":
            mongo.primary = "db2:27017"
        return result

    monkeypatch.setattr(mongo, "_command", election_after_status)

    report = _teardown(bootstrapped).run()

    assert report.step_down == NOT_PRIMARY
    assert report.primary == "db1:27017"
    assert report.ok
    for h in HOSTS:
        assert parse(bootstrapped.conf(h)).replica_set_name is None
