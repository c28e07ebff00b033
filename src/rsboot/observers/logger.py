# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
import logging
from .events import BaseEvent, BootstrapSummary, NodeFailed, TeardownSummary

_SKIP = ("ts", "replica_set")


def _level(event: BaseEvent) -> int:
    if isinstance(event, NodeFailed):
        return logging.WARNING
    if isinstance(event, (BootstrapSummary, TeardownSummary)) and event.state == "Failed":
        return logging.ERROR
    return logging.INFO


class LoggerObserver:
    """Mirrors events into the run log; failures are logged above INFO."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _SKIP and v is not None)
        self.logger.log(_level(event), "[EVENT] %s: %s", event.__class__.__name__, fields)
