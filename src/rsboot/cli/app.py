# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/cli/app.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from rsboot.bootstrap.install import InstallManager
from rsboot.bootstrap.nodes import NodeLayout, run_per_node
from rsboot.bootstrap.orchestrator import (
    BootstrapOrchestrator,
    Failure,
    replication_config,
    security_config,
)
from rsboot.bootstrap.teardown import TeardownOrchestrator
from rsboot.config.loader import load_config
from rsboot.config.models import ClusterSpec
from rsboot.db.client import MongoDatabaseClient
from rsboot.errors import ClusterDefinitionError, RsbootError
from rsboot.execution.executor import LocalExecutor, RoutingExecutor, SSHExecutor
from rsboot.logging.log import init_logging
from rsboot.mongod.reconciler import ReconciliationPlan, reconcile
from rsboot.observers.console import ConsoleObserver
from rsboot.observers.dispatcher import EventBus
from rsboot.observers.jsonfile import JsonFileObserver
from rsboot.observers.logger import LoggerObserver


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="MongoDB replica set bootstrap CLI")

LOG_DIR = Path.home() / ".rsboot" / "logs"


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load(config: str) -> ClusterSpec:
    try:
        return load_config(config)
    except (OSError, ClusterDefinitionError) as e:
        typer.secho(f"Invalid cluster definition {config}:\n{e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


def _secrets(cfg: ClusterSpec) -> List[str]:
    values = [cfg.security.key_file_content]
    if cfg.credentials:
        values += [cfg.credentials.admin_password, cfg.credentials.app_password]
    values += [s.password for s in [cfg.ssh] + [m.ssh for m in cfg.members if m.ssh]]
    return [v.get_secret_value() for v in values if v is not None]


def _start(title: str, debug: bool, cfg: ClusterSpec) -> Tuple[logging.Logger, str, EventBus]:
    logger, run_id, log_path = init_logging(base_dir=LOG_DIR, verbose=debug, secrets=_secrets(cfg))

    typer.echo("")
    typer.secho(title, bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(LOG_DIR / f"{run_id}.jsonl"),
    ]
    return logger, run_id, EventBus(observers=observers)


def _executor(cfg: ClusterSpec, timeout: float) -> RoutingExecutor:
    return RoutingExecutor(
        local=LocalExecutor(cmd_timeout=timeout),
        remote=SSHExecutor(connect_timeout=cfg.timing.ssh_connect_timeout, cmd_timeout=timeout),
    )


def _print_failure(failure: Optional[Failure]) -> None:
    if failure is None:
        return
    typer.secho(failure.describe(), fg=typer.colors.RED, err=True)


def _finish(ok: bool, state: str, failure: Optional[Failure] = None) -> None:
    if ok:
        typer.secho(f"\nFinal state: {state}", fg=typer.colors.GREEN, bold=True)
        return
    typer.secho(f"\nFinal state: {state}", fg=typer.colors.RED, bold=True)
    _print_failure(failure)
    raise typer.Exit(code=1)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def install(
    config: str = typer.Argument(..., help="Replica set definition YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Install mongod on every member and write the base config."""
    cfg = _load(config)
    logger, run_id, bus = _start("rsboot install", debug, cfg)

    executor = _executor(cfg, cfg.timing.install_timeout)
    try:
        report = InstallManager(
            cfg.topology(), cfg.layouts(), executor,
            options=cfg.install_options(), bus=bus, run_id=run_id,
        ).run()
    except RsbootError as e:
        logger.error("install aborted: %s", e)
        _finish(False, f"Failed: {e}")
    finally:
        executor.close()

    for o in report.nodes:
        status = "ok" if o.ok else f"FAILED: {o.error}"
        typer.echo(f"  {o.node:<28} {o.os_id or '-':<10} {status}")
    _finish(report.ok, "Complete" if report.ok else f"Failed on {len(report.failed)} node(s)")


@app.command()
def bootstrap(
    config: str = typer.Argument(..., help="Replica set definition YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Configure, initiate and secure the replica set."""
    cfg = _load(config)
    try:
        credentials = cfg.to_credentials()
        cfg.require_key_file()
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    logger, run_id, bus = _start("rsboot bootstrap", debug, cfg)
    executor = _executor(cfg, cfg.timing.command_timeout)
    try:
        report = BootstrapOrchestrator(
            cfg.topology(),
            credentials,
            cfg.layouts(),
            executor,
            MongoDatabaseClient(),
            options=cfg.bootstrap_options(),
            bus=bus,
            run_id=run_id,
        ).run()
    finally:
        executor.close()

    typer.echo(f"  States   : {' -> '.join(s.value for s in report.history)}")
    typer.echo(f"  Edits    : {report.edits_applied}")
    if report.primary:
        typer.echo(f"  Primary  : {report.primary}")
    if report.users_created:
        typer.echo(f"  Created  : {', '.join(report.users_created)}")
    _finish(report.ok, report.state.value, report.failure)


@app.command()
def teardown(
    config: str = typer.Argument(..., help="Replica set definition YAML"),
    disable_auth: bool = typer.Option(False, "--disable-auth", help="Also remove authorization and keyFile"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Step the primary down and remove replica set settings from every member."""
    cfg = _load(config)
    credentials = cfg.to_credentials() if cfg.credentials else None

    logger, run_id, bus = _start("rsboot teardown", debug, cfg)
    executor = _executor(cfg, cfg.timing.command_timeout)
    try:
        report = TeardownOrchestrator(
            cfg.topology(),
            cfg.layouts(),
            executor,
            MongoDatabaseClient(),
            credentials=credentials,
            bus=bus,
            command_timeout=cfg.timing.command_timeout,
            run_id=run_id,
        ).run(disable_auth=disable_auth)
    finally:
        executor.close()

    typer.echo(f"  Step-down: {report.step_down}")
    for o in report.nodes:
        typer.echo(f"  {o.node:<28} {len(o.edits)} edit(s)" if o.ok else f"  {o.node:<28} FAILED")
    _finish(report.ok, report.state.value, report.failure)


@app.command()
def plan(
    config: str = typer.Argument(..., help="Replica set definition YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Show the config edits bootstrap would make on each member, without applying them."""
    cfg = _load(config)
    logger, run_id, _ = _start("rsboot plan", debug, cfg)

    options = cfg.bootstrap_options()
    security = security_config(options).specified()
    executor = _executor(cfg, cfg.timing.command_timeout)

    def dry_run(layout: NodeLayout) -> ReconciliationPlan:
        desired = replication_config(layout, cfg.replica_set, options).with_changes(**security)
        return reconcile(
            layout.config_file(executor, cfg.timing.command_timeout), desired, dry_run=True
        )

    try:
        results = run_per_node(cfg.layouts(), dry_run)
    finally:
        executor.close()

    failed: List[str] = []
    for layout, rplan, err in results:
        if err is not None:
            failed.append(layout.name)
            typer.secho(f"{layout.name}: cannot plan: {err}", fg=typer.colors.RED)
            continue
        if rplan.empty:
            typer.echo(f"{layout.name}: up to date")
            continue
        restart = " (restart required)" if rplan.requires_restart else ""
        typer.echo(f"{layout.name}: {len(rplan.edits)} edit(s){restart}")
        for e in rplan.edits:
            typer.echo(f"    {e.describe()}")

    _finish(not failed, "Planned" if not failed else f"Failed on {len(failed)} node(s)")


if __name__ == "__main__":
    app()
