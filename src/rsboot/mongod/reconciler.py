# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/mongod/reconciler.py

"""
Diff a desired ConfigModel against the file on a node and apply the
smallest edit that closes the gap.

Writes go through ConfigFile, which backs the old file up, writes the new
content to a temp file and renames it into place, refusing to write if the
file changed since it was read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from ..errors import ConfigChangedError, ConfigIOError, ExecutionError
from ..execution.executor import NodeTarget, RemoteExecutor, shq
from .conf import FIELDS, FIELDS_BY_NAME, RESTART_FIELDS, ConfigDocument, ConfigModel, apply_values, parse

log = logging.getLogger("rsboot")

_CHANGED_RC = 3


@dataclass(frozen=True)
class FieldEdit:
    field: str
    old_value: Any
    new_value: Any          # None removes the key

    @property
    def touches_restart(self) -> bool:
        return self.field in RESTART_FIELDS

    @property
    def is_removal(self) -> bool:
        return self.new_value is None

    def describe(self) -> str:
        key = ".".join(FIELDS_BY_NAME[self.field].path)
        if self.is_removal:
            return f"{key}: remove (was {_show(self.old_value)})"
        return f"{key}: {_show(self.old_value)} -> {_show(self.new_value)}"


def _show(value: Any) -> str:
    if value is None:
        return "<unset>"
    if isinstance(value, frozenset):
        return ",".join(sorted(value))
    return str(value)


@dataclass(frozen=True)
class ReconciliationPlan:
    base: ConfigModel
    edits: Tuple[FieldEdit, ...] = ()

    @property
    def requires_restart(self) -> bool:
        return any(e.touches_restart for e in self.edits)

    @property
    def empty(self) -> bool:
        return not self.edits

    def result_document(self) -> ConfigDocument:
        doc = self.base.document if self.base.document is not None else ConfigDocument.empty()
        doc = apply_values(doc, {e.field: e.new_value for e in self.edits if not e.is_removal})
        for e in self.edits:
            if e.is_removal:
                doc = doc.comment_out(FIELDS_BY_NAME[e.field].path)
        return doc

    def result_text(self) -> str:
        return self.result_document().text


def plan(current: ConfigModel, desired: ConfigModel, remove: Iterable[str] = ()) -> ReconciliationPlan:
    """
    Edits that make *current* equal *desired* on every field *desired*
    specifies. Fields named in *remove* are dropped from the file when
    present. Everything else is left alone.
    """
    remove = set(remove)
    unknown = remove - set(FIELDS_BY_NAME)
    if unknown:
        raise ValueError(f"unknown config fields: {sorted(unknown)}")

    wanted = desired.specified()
    clash = remove & set(wanted)
    if clash:
        raise ValueError(f"fields both set and removed: {sorted(clash)}")

    edits: List[FieldEdit] = []
    for spec in FIELDS:
        old = getattr(current, spec.name)
        if spec.name in wanted and old != wanted[spec.name]:
            edits.append(FieldEdit(spec.name, old, wanted[spec.name]))
        elif spec.name in remove and old is not None:
            edits.append(FieldEdit(spec.name, old, None))
    return ReconciliationPlan(base=current, edits=tuple(edits))


class ConfigFile:
    """
    The mongod config file on one node, read and written through a
    RemoteExecutor.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        target: NodeTarget,
        path: str = "/etc/mongod.conf",
        *,
        sudo: bool = True,
        timeout: Optional[float] = None,
        clock=lambda: datetime.now(timezone.utc),
    ):
        self.executor = executor
        self.target = target
        self.path = path
        self.sudo = sudo
        self.timeout = timeout
        self._clock = clock

    def __repr__(self) -> str:
        return f"ConfigFile({self.target.name}:{self.path})"

    def read(self) -> ConfigModel:
        p = shq(self.path)
        cmd = f"if [ -e {p} ]; then cat {p}; fi"
        result = self.executor.execute(self.target, cmd, sudo=self.sudo, timeout=self.timeout)
        if not result.ok:
            raise ConfigIOError(
                f"cannot read {self.path} on {self.target.name}: {result.stderr.strip()}"
            )
        return parse(result.stdout)

    def backup_path(self, digest: str) -> str:
        ts = self._clock().strftime("%Y%m%d%H%M%S")
        return f"{self.path}.bak.{ts}.{digest[:12]}"

    def write(self, text: str, expected_digest: str) -> None:
        """
        Replace the file with *text* if its SHA-256 still equals
        *expected_digest*. The original is copied to a backup first.
        """
        p = shq(self.path)
        tmp = shq(f"{self.path}.rsboot.tmp")
        bak = shq(self.backup_path(expected_digest))
        empty_digest = ConfigDocument.empty().digest
        script = "\n".join([
            "set -e",
            f"if [ -e {p} ]; then cur=$(sha256sum {p} | cut -d' ' -f1); else cur={empty_digest}; fi",
            f'if [ "$cur" != "{expected_digest}" ]; then echo "config changed on disk" >&2; exit {_CHANGED_RC}; fi',
            f"if [ -e {p} ] && [ ! -e {bak} ]; then cp -p {p} {bak}; fi",
            f"cat > {tmp}",
            f"if [ -e {p} ]; then chmod --reference={p} {tmp}; chown --reference={p} {tmp}; fi",
            f"mv -f {tmp} {p}",
        ])
        try:
            result = self.executor.execute(
                self.target, script, sudo=self.sudo, stdin=text, timeout=self.timeout
            )
        except ExecutionError as e:
            raise ConfigIOError(f"cannot write {self.path} on {self.target.name}: {e}") from e
        if result.exit_code == _CHANGED_RC:
            raise ConfigChangedError(
                f"{self.path} on {self.target.name} changed since it was read; re-run to re-plan"
            )
        if not result.ok:
            raise ConfigIOError(
                f"cannot write {self.path} on {self.target.name}: {result.stderr.strip()}"
            )


def apply(rplan: ReconciliationPlan, target: ConfigFile) -> str:
    """
    Write the plan's result to *target* and return the new text. An empty
    plan writes nothing and returns the current text.
    """
    base_doc = rplan.base.document if rplan.base.document is not None else ConfigDocument.empty()
    if rplan.empty:
        return base_doc.text

    new_text = rplan.result_text()
    for e in rplan.edits:
        log.debug("(%s) %s", target.target.name, e.describe())
    target.write(new_text, base_doc.digest)
    log.info("(%s) applied %d config edit(s) to %s", target.target.name, len(rplan.edits), target.path)
    return new_text


def reconcile(
    target: ConfigFile,
    desired: ConfigModel,
    remove: Iterable[str] = (),
    *,
    dry_run: bool = False,
) -> ReconciliationPlan:
    """Read, plan and (unless *dry_run*) apply in one step."""
    current = target.read()
    rplan = plan(current, desired, remove)
    if not dry_run:
        apply(rplan, target)
    return rplan
