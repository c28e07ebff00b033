# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/config/loader.py

import logging
import os
import re
import yaml
from pathlib import Path
from typing import Dict, List, Tuple

from pydantic import ValidationError

from ..errors import ClusterDefinitionError
from .models import ClusterSpec

log = logging.getLogger("rsboot")

_UNRESOLVED = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# dotted key path -> file that supplied it
Sources = Dict[str, str]


def _merge_secrets(base: dict, override: dict, origin: str, sources: Sources, prefix: str = "") -> None:
    """
    Overlay the secrets file onto the cluster file in place. Empty values in
    the secrets file never blank out a value from the cluster file, and every
    key taken from the secrets file is recorded in *sources*.
    """
    for key, value in override.items():
        dotted = f"{prefix}{key}"
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _merge_secrets(base[key], value, origin, sources, dotted + ".")
        elif value not in (None, ""):
            base[key] = value
            sources[dotted] = origin


def _find_secrets_file(config_path: Path) -> Path | None:
    """RSBOOT_SECRETS_FILE if set, else secrets.yaml beside the cluster file."""
    env = os.environ.get("RSBOOT_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("RSBOOT_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    return p if p.is_file() else None


def _load_yaml(path: Path) -> dict:
    """Read a YAML mapping after ${ENV_VAR} expansion. Unset variables are an error."""
    expanded = os.path.expandvars(path.read_text())
    missing = sorted(set(_UNRESOLVED.findall(expanded)))
    if missing:
        raise ClusterDefinitionError(
            path.name, [f"environment variable {name} is not set" for name in missing]
        )
    try:
        data = yaml.safe_load(expanded)
    except yaml.YAMLError as e:
        raise ClusterDefinitionError(path.name, [str(e)]) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ClusterDefinitionError(path.name, [f"top level must be a mapping, got {type(data).__name__}"])
    return data


def _problems(exc: ValidationError, default: str, sources: Sources) -> List[Tuple[str, str]]:
    """(location, message) for each validation error, naming the file the key came from."""
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        origin = sources.get(loc, default)
        out.append((loc or "<root>", f"{err['msg']} ({origin})"))
    return out


def load_config(path: str | Path) -> ClusterSpec:
    """
    Load and validate a replica set definition.

    Passwords and the key file body usually live outside the cluster file:

    **secrets.yaml**
        A file mirroring the cluster file's structure (typically just the
        ``credentials`` and ``security`` sections), merged before
        validation. Found via ``RSBOOT_SECRETS_FILE`` or next to the
        cluster file.

    **environment variables**
        ``${ENV_VAR}`` placeholders in either file are resolved from the
        environment; a placeholder left unresolved is rejected.

    Any problem is raised as ClusterDefinitionError with one line per
    offending key and the file that supplied it.
    """
    path = Path(path)
    data = _load_yaml(path)
    sources: Sources = {}

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _merge_secrets(data, _load_yaml(secrets_path), secrets_path.name, sources)
    else:
        log.debug("No secrets.yaml found, using cluster file only")

    try:
        return ClusterSpec.model_validate(data)
    except ValidationError as e:
        problems = _problems(e, path.name, sources)
        raise ClusterDefinitionError(path.name, [f"{loc}: {msg}" for loc, msg in problems]) from e
