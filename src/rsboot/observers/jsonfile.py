# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
import json
import threading
from pathlib import Path
from .dispatcher import Observer
from .events import BaseEvent


class JsonFileObserver(Observer):
    """
    Appends one JSON object per event to a .jsonl file. Node-level events
    arrive from worker threads, so writes are serialized.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": event.__class__.__name__, **event.dict()}, default=str)
        with self._lock, self.path.open("a") as f:
            f.write(line + "\n")
