# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/rsboot/logging/log.py

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

_URI_CREDS = re.compile(r"mongodb(\+srv)?://[^:/@\s]+:[^@\s]+@")


class SecretMask(logging.Filter):
    """
    Replaces known secret values (passwords, key file bodies) and
    credentials embedded in mongodb:// URIs with '***' before a record
    reaches any handler.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self.secrets = {s for s in secrets if s}

    def mask(self, text: str) -> str:
        text = _URI_CREDS.sub(r"mongodb\1://***:***@", text)
        # longest first so a secret containing another is masked whole
        for s in sorted(self.secrets, key=len, reverse=True):
            text = text.replace(s, "***")
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        masked = self.mask(msg)
        if masked != msg:
            record.msg, record.args = masked, None
        return True


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "rsboot",
    verbose: bool = False,
    secrets: Iterable[str] = (),
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full trace log file (every command and its exit status)
      - console output at INFO (DEBUG with --debug)
      - a SecretMask on both handlers, seeded with *secrets*
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".rsboot" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        h.close()
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    mask = SecretMask(secrets)

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    fh.addFilter(mask)

    # Console = INFO by default, DEBUG when --debug is passed
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)
    ch.addFilter(mask)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("=== rsboot run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path

