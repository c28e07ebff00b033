from datetime import datetime, timezone

import pytest

from rsboot.errors import ConfigChangedError, ConfigIOError
from rsboot.execution.executor import CommandResult, NodeTarget
from rsboot.mongod.conf import ConfigModel, parse
from rsboot.mongod.reconciler import ConfigFile, apply, plan, reconcile

from conftest import CONF_PATH, STOCK_CONF, FakeExecutor, FakeNode, sha

TARGET = NodeTarget(name="db1:27017", address="db1")


def _file(node, **kw):
    executor = FakeExecutor({"db1:27017": node})
    clock = lambda: datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    return ConfigFile(executor, TARGET, CONF_PATH, clock=clock, **kw)


DESIRED = ConfigModel(bind_addresses={"0.0.0.0"}, replica_set_name="rs0")


def test_plan_lists_only_differing_fields():
    rplan = plan(parse(STOCK_CONF), DESIRED)
    assert [(e.field, e.new_value) for e in rplan.edits] == [
        ("bind_addresses", frozenset({"0.0.0.0"})),
        ("replica_set_name", "rs0"),
    ]
    assert rplan.requires_restart
    assert rplan.edits[0].describe() == "net.bindIp: 127.0.0.1 -> 0.0.0.0"
    assert rplan.edits[1].describe() == "replication.replSetName: <unset> -> rs0"


def test_plan_is_empty_once_applied():
    first = plan(parse(STOCK_CONF), DESIRED)
    second = plan(parse(first.result_text()), DESIRED)
    assert second.empty
    assert not second.requires_restart


def test_non_restart_fields_do_not_require_restart():
    rplan = plan(parse(STOCK_CONF), ConfigModel(storage_path="/data/db"))
    assert not rplan.requires_restart
    assert rplan.result_text() == STOCK_CONF.replace("dbPath: /var/lib/mongodb", "dbPath: /data/db")


def test_remove_comments_out_and_marks_restart():
    text = STOCK_CONF + "\nreplication:\n  replSetName: rs0\n"
    rplan = plan(parse(text), ConfigModel(), remove=["replica_set_name", "authorization_enabled"])
    assert [e.field for e in rplan.edits] == ["replica_set_name"]
    assert rplan.edits[0].is_removal
    assert rplan.requires_restart
    assert rplan.result_text().endswith("\n#replication:\n  #replSetName: rs0\n")


def test_plan_rejects_unknown_or_conflicting_fields():
    with pytest.raises(ValueError):
        plan(parse(STOCK_CONF), ConfigModel(), remove=["nope"])
    with pytest.raises(ValueError):
        plan(parse(STOCK_CONF), DESIRED, remove=["replica_set_name"])


def test_apply_writes_backup_and_new_content():
    node = FakeNode("db1:27017", files={CONF_PATH: STOCK_CONF})
    target = _file(node)
    rplan = reconcile(target, DESIRED)

    new_text = node.files[CONF_PATH]
    assert "  bindIp: 0.0.0.0\n" in new_text
    assert new_text.endswith("\nreplication:\n  replSetName: rs0\n")
    assert new_text == rplan.result_text()

    backup = f"{CONF_PATH}.bak.20260301120000.{sha(STOCK_CONF)[:12]}"
    assert node.files[backup] == STOCK_CONF
    # content travels over stdin, never on the command line
    write_cmd, sudo, stdin = node.writes[0]
    assert sudo is True
    assert stdin == new_text
    assert "replSetName" not in write_cmd


def test_reconcile_twice_writes_once():
    node = FakeNode("db1:27017", files={CONF_PATH: STOCK_CONF})
    target = _file(node)
    reconcile(target, DESIRED)
    rplan = reconcile(target, DESIRED)
    assert rplan.empty
    assert len(node.writes) == 1


def test_dry_run_does_not_write():
    node = FakeNode("db1:27017", files={CONF_PATH: STOCK_CONF})
    rplan = reconcile(_file(node), DESIRED, dry_run=True)
    assert len(rplan.edits) == 2
    assert node.files[CONF_PATH] == STOCK_CONF
    assert node.writes == []


def test_empty_plan_returns_current_text_without_writing():
    node = FakeNode("db1:27017", files={CONF_PATH: STOCK_CONF})
    target = _file(node)
    rplan = plan(target.read(), ConfigModel(port=27017))
    assert apply(rplan, target) == STOCK_CONF
    assert node.writes == []


def test_missing_file_is_created():
    node = FakeNode("db1:27017", files={})
    reconcile(_file(node), ConfigModel(port=27017))
    assert node.files[CONF_PATH] == "net:\n  port: 27017\n"
    assert not any(".bak." in p for p in node.files)


def test_concurrent_change_is_detected():
    node = FakeNode("db1:27017", files={CONF_PATH: STOCK_CONF})
    target = _file(node)
    rplan = plan(target.read(), DESIRED)
    node.files[CONF_PATH] = STOCK_CONF + "# edited by someone else\n"
    with pytest.raises(ConfigChangedError):
        apply(rplan, target)
    assert node.files[CONF_PATH].endswith("# edited by someone else\n")


def test_read_failure_is_io_error():
    class Denied:
        def execute(self, target, command, **kw):
            return CommandResult(1, "", "sudo: a password is required\n")

    with pytest.raises(ConfigIOError):
        ConfigFile(Denied(), TARGET).read()
