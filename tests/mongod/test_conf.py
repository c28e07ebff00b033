import textwrap

import pytest

from rsboot.errors import ConfigParseError
from rsboot.mongod.conf import ConfigDocument, ConfigModel, parse, render


def test_parse_stock_config_reads_managed_fields():
    text = textwrap.dedent("""\
        # mongod.conf
        storage:
          dbPath: /var/lib/mongodb
          journal:
            enabled: true

        systemLog:
          destination: file
          path: /var/log/mongodb/mongod.log   # log here

        net:
          port: 27017
          bindIp: 127.0.0.1,10.0.0.5
    """)
    model = parse(text)
    assert model.storage_path == "/var/lib/mongodb"
    assert model.journal_enabled is True
    assert model.log_path == "/var/log/mongodb/mongod.log"
    assert model.port == 27017
    assert model.bind_addresses == frozenset({"127.0.0.1", "10.0.0.5"})
    assert model.replica_set_name is None
    assert model.authorization_enabled is None


def test_render_without_changes_is_byte_identical():
    text = (
        "# keep me\r\n"
        "storage:\r\n"
        "  dbPath: /data   # comment\r\n"
        "\r\n"
        "setParameter:\r\n"
        "  enableLocalhostAuthBypass: false\r\n"
        "net:\r\n"
        "    port: 27017\r\n"
        "    bindIp: [127.0.0.1, \"::1\"]"
    )
    model = parse(text)
    assert model.bind_addresses == frozenset({"127.0.0.1", "::1"})
    assert render(model) == text
    # re-asserting the same values is also a no-op
    assert render(model.with_changes(port=27017, storage_path="/data")) == text


def test_rewrite_keeps_indent_and_comment():
    text = "net:\n    port: 27017  # default\n    bindIp: 127.0.0.1\n"
    out = render(parse(text).with_changes(port=27018, bind_addresses={"10.0.0.2", "0.0.0.0"}))
    assert out == "net:\n    port: 27018  # default\n    bindIp: 0.0.0.0,10.0.0.2\n"


def test_new_section_appended_after_blank_line():
    text = "storage:\n  dbPath: /data\n"
    out = render(parse(text).with_changes(replica_set_name="rs0", authorization_enabled=True))
    assert out == (
        "storage:\n  dbPath: /data\n"
        "\nreplication:\n  replSetName: rs0\n"
        "\nsecurity:\n  authorization: \"enabled\"\n"
    )


def test_child_key_inserted_at_sibling_indent():
    text = "net:\n    port: 27017\nprocessManagement:\n  fork: true\n"
    out = render(parse(text).with_changes(bind_addresses={"0.0.0.0"}))
    assert out == "net:\n    port: 27017\n    bindIp: 0.0.0.0\nprocessManagement:\n  fork: true\n"


def test_nested_section_created_under_existing_parent():
    out = render(parse("storage:\n  dbPath: /data\n").with_changes(journal_enabled=True))
    assert out == "storage:\n  dbPath: /data\n  journal:\n    enabled: true\n"


def test_render_from_scratch():
    model = ConfigModel(storage_path="/data/db", port=27017, replica_set_name="rs 0")
    assert model.text == (
        "storage:\n  dbPath: /data/db\n"
        "\nnet:\n  port: 27017\n"
        "\nreplication:\n  replSetName: \"rs 0\"\n"
    )


def test_quoted_values_are_unquoted_on_parse():
    model = parse("replication:\n  replSetName: \"rs0\"\nsecurity:\n  authorization: 'disabled'\n")
    assert model.replica_set_name == "rs0"
    assert model.authorization_enabled is False


def test_missing_trailing_newline_is_handled_on_insert():
    out = render(parse("net:\n  port: 27017").with_changes(replica_set_name="rs0"))
    assert out == "net:\n  port: 27017\n\nreplication:\n  replSetName: rs0\n"


@pytest.mark.parametrize(
    "text, line",
    [
        ("net:\n\tport: 27017\n", 2),
        ("net:\n  port: 27017\nnet:\n  bindIp: 0.0.0.0\n", 3),
        ("net:\n  port: 27017\n  port: 27018\n", 3),
        ("net:\n  port: 27017\n    bindIp: 0.0.0.0\n", 3),
        ("net:\n    port: 27017\n  bindIp: 0.0.0.0\n", 3),
        ("  net:\n", 1),
        ("net\n", 1),
        ("net:\n  port: http\n", 2),
        ("net:\n  port: 70000\n", 2),
        ("storage:\n  journal:\n    enabled: maybe\n", 3),
        ("security:\n  authorization: sometimes\n", 2),
        ("replication:\n  replSetName: \"\"\n", 2),
    ],
)
def test_parse_errors_carry_line_numbers(text, line):
    with pytest.raises(ConfigParseError) as ei:
        parse(text)
    assert ei.value.line == line


def test_comment_out_key_and_empty_parent():
    doc = ConfigDocument.parse(
        "net:\n  port: 27017\nreplication:\n  replSetName: rs0\nsecurity:\n  authorization: enabled\n  keyFile: /k\n"
    )
    doc = doc.comment_out(("replication", "replSetName"))
    doc = doc.comment_out(("security", "keyFile"))
    assert doc.text == (
        "net:\n  port: 27017\n#replication:\n  #replSetName: rs0\n"
        "security:\n  authorization: enabled\n  #keyFile: /k\n"
    )
    assert not doc.has(("replication",))
    assert doc.has(("security", "authorization"))


def test_unknown_sections_survive_edits():
    text = "auditLog:\n  destination: file\n  filter: '{ atype: \"authenticate\" }'\nnet:\n  port: 27017\n"
    out = render(parse(text).with_changes(port=27100))
    assert out.startswith("auditLog:\n  destination: file\n  filter: '{ atype: \"authenticate\" }'\n")
    assert "  port: 27100\n" in out


def test_model_rejects_invalid_values():
    with pytest.raises(ValueError):
        ConfigModel(port=0)
    with pytest.raises(ValueError):
        ConfigModel(replica_set_name="  ")
    with pytest.raises(ValueError):
        ConfigModel(bind_addresses=frozenset())


SEQUENCE_OF_MAPPINGS = textwrap.dedent("""\
    net:
      port: 27017
      tls:
        certificates:
          - host: a
            port: 1
          - host: b
            port: 2
    replication:
      replSetName: rs0
""")

SEQUENCE_AT_OWNER_INDENT = textwrap.dedent("""\
    setParameter:
      list:
      - name: x
        value: 1
      - name: y
        value: 2
    net:
      port: 27017
""")

BLOCK_SCALAR = textwrap.dedent("""\
    processManagement:
      pidFilePath: >
        /var/run/mongodb/
        # part of the value
        mongod.pid

      fork: true
    net:
      port: 27017
""")

DOCUMENT_MARKERS = "---\n# mongod.conf\nnet:\n  port: 27017\n...\n"


@pytest.mark.parametrize(
    "text",
    [SEQUENCE_OF_MAPPINGS, SEQUENCE_AT_OWNER_INDENT, BLOCK_SCALAR, DOCUMENT_MARKERS],
    ids=["seq-of-maps", "seq-at-owner-indent", "block-scalar", "doc-markers"],
)
def test_other_yaml_forms_survive_unchanged(text):
    model = parse(text)
    assert model.port == 27017
    assert render(model) == text


def test_edits_around_a_sequence():
    out = render(parse(SEQUENCE_OF_MAPPINGS).with_changes(port=27018, bind_addresses={"0.0.0.0"}))
    assert out == SEQUENCE_OF_MAPPINGS.replace("  port: 27017\n", "  port: 27018\n").replace(
        "        port: 2\n", "        port: 2\n  bindIp: 0.0.0.0\n"
    )
    assert parse(out).replica_set_name == "rs0"


def test_block_scalar_is_commented_out_with_its_key():
    doc = ConfigDocument.parse(BLOCK_SCALAR).comment_out(("processManagement", "pidFilePath"))
    assert doc.text == (
        "processManagement:\n"
        "  #pidFilePath: >\n"
        "    #/var/run/mongodb/\n"
        "    ## part of the value\n"
        "    #mongod.pid\n"
        "\n"
        "  fork: true\n"
        "net:\n"
        "  port: 27017\n"
    )


def test_managed_key_as_block_scalar_is_rejected():
    text = "systemLog:\n  path: |\n    /var/log/mongodb/mongod.log\n"
    with pytest.raises(ConfigParseError) as ei:
        parse(text)
    assert ei.value.line == 2
    with pytest.raises(ConfigParseError):
        ConfigDocument.parse(text).set(("systemLog", "path"), "/tmp/x")


@pytest.mark.parametrize("text, line", [("- a\n", 1), ("net:\n  port: 1\n  - x\n", 3)])
def test_sequence_item_needs_an_owning_section(text, line):
    with pytest.raises(ConfigParseError, match="sequence item") as ei:
        ConfigDocument.parse(text)
    assert ei.value.line == line
