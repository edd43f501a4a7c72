"""Append-only JSONL record of published events."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from ..domain.models import Event


class EventLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def append(self, event: Event) -> None:
        line = json.dumps(event.to_dict(), default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def replay(self, feature_id: Optional[str] = None) -> list[Event]:
        if not self.path.exists():
            return []
        events: list[Event] = []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = Event.from_dict(json.loads(line))
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Skipping unreadable event at {}:{}: {}", self.path.name, lineno, exc)
                continue
            if feature_id is None or event.feature_id == feature_id:
                events.append(event)
        return events
