from __future__ import annotations

import json
import logging
import time
from typing import Any

from conductor.models import utcnow_iso
from conductor.store.tasks import TaskStore, atomic_write_json

logger = logging.getLogger(__name__)

STATUS_ORDER = ("working", "idle", "done", "failed")


class LoopStateFile:
    """Role status board for the running iteration, kept next to the task board."""

    def __init__(self, store: TaskStore, *, max_events: int = 200) -> None:
        self.store = store
        self.path = store.root / "state.json"
        self.max_events = max_events

    @staticmethod
    def _empty(loop_id: str) -> dict[str, Any]:
        return {
            "loop_id": loop_id,
            "started_at": int(time.time()),
            "agents": [],
            "events": [],
        }

    def _read_unlocked(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Loop state file %s is corrupt; re-initialising", self.path)
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("agents"), list):
            return None
        payload.setdefault("events", [])
        return payload

    def read(self) -> dict[str, Any]:
        with self.store.lock():
            payload = self._read_unlocked()
        return payload if payload is not None else self._empty("")

    def start(self, loop_id: str) -> None:
        with self.store.lock():
            atomic_write_json(self.path, self._empty(loop_id))

    def upsert_agent(self, name: str, status: str) -> None:
        now = int(time.time())
        with self.store.lock():
            state = self._read_unlocked() or self._empty("")
            agents = state["agents"]
            for agent in agents:
                if agent.get("name") == name:
                    agent["status"] = status
                    agent["updated_at"] = now
                    break
            else:
                next_id = max((int(agent.get("id", 0)) for agent in agents), default=0) + 1
                agents.append({"id": next_id, "name": name, "status": status, "updated_at": now})
            atomic_write_json(self.path, state)

    def record_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = utcnow_iso()
        with self.store.lock():
            state = self._read_unlocked() or self._empty("")
            events = state["events"]
            events.append(payload)
            state["events"] = events[-self.max_events :]
            atomic_write_json(self.path, state)

    def counts(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUS_ORDER}
        for agent in self.read().get("agents", []):
            status = str(agent.get("status", ""))
            if status in counts:
                counts[status] += 1
        return counts

    def summary_line(self) -> str:
        counts = self.counts()
        parts = [f"{counts[status]} {status}" for status in STATUS_ORDER if counts[status]]
        return ", ".join(parts) if parts else "idle"
