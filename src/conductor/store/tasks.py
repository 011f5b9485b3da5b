from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor.models import TASK_STATUSES, Artifact, IterationReport, Task, utcnow_iso

logger = logging.getLogger(__name__)

PARTITIONS = {
    "backlog": "backlog",
    "ready": "ready",
    "in_progress": "in-progress",
    "blocked": "blocked",
    "done": "done",
}
LEGAL_TRANSITIONS = {
    ("backlog", "ready"),
    ("ready", "in_progress"),
    ("in_progress", "done"),
    ("in_progress", "blocked"),
    ("blocked", "in_progress"),
}


class TaskStoreError(RuntimeError):
    """Raised when task board operations fail."""


class TaskNotFound(TaskStoreError):
    """Raised when no record exists for a task id."""


class InvalidTransition(TaskStoreError):
    """Raised when a status change is not one of the legal moves."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(f"Illegal transition for {task_id}: {current} -> {requested}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON durably: temp file, fsync, rename over the target."""
    tmp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)
    _fsync_directory(path.parent)


class TaskStore:
    """Partitioned task board: one JSON record per task, one directory per status."""

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.root = root.resolve()
        self.reports_dir = self.root / "reports"
        self.lock_file = self.root / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        for directory in PARTITIONS.values():
            (self.root / directory).mkdir(parents=True, exist_ok=True)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def new_task_id() -> str:
        return f"task-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"

    def _partition_dir(self, status: str) -> Path:
        if status not in PARTITIONS:
            raise TaskStoreError(f"Unknown task status: {status}")
        return self.root / PARTITIONS[status]

    def _record_path(self, status: str, task_id: str) -> Path:
        return self._partition_dir(status) / f"{task_id}.json"

    @contextmanager
    def lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise TaskStoreError("Timed out waiting for task store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_record(path: Path) -> Task | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return Task.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            return None

    def _locate(self, task_id: str) -> tuple[Task, Path]:
        copies: list[tuple[Task, Path]] = []
        for status in TASK_STATUSES:
            path = self._record_path(status, task_id)
            if not path.exists():
                continue
            task = self._read_record(path)
            if task is not None:
                task.status = status
                copies.append((task, path))
        if not copies:
            raise TaskNotFound(f"Task not found: {task_id}")
        copies.sort(key=lambda item: item[0].revision, reverse=True)
        current = copies[0]
        for _stale, stale_path in copies[1:]:
            # Leftover from an interrupted move; the higher revision is authoritative.
            logger.warning("Removing stale copy of %s at %s", task_id, stale_path)
            stale_path.unlink(missing_ok=True)
        return current

    def _write(self, task: Task, previous_path: Path | None = None) -> Task:
        task.revision += 1
        task.updated_at = utcnow_iso()
        target = self._record_path(task.status, task.id)
        atomic_write_json(target, task.to_dict())
        if previous_path is not None and previous_path != target:
            previous_path.unlink(missing_ok=True)
            _fsync_directory(previous_path.parent)
        return task

    def _mutate(self, task_id: str, mutator: Callable[[Task], None]) -> Task:
        with self.lock():
            task, path = self._locate(task_id)
            mutator(task)
            return self._write(task, previous_path=path)

    def create(
        self,
        description: str,
        *,
        priority: int = 2,
        depends_on: list[str] | tuple[str, ...] = (),
        status: str = "backlog",
        origin: str | None = None,
    ) -> Task:
        if status not in {"backlog", "ready"}:
            raise TaskStoreError("New tasks start in backlog or ready.")
        task = Task(
            id=self.new_task_id(),
            description=description.strip(),
            priority=int(priority),
            status=status,
            depends_on=list(depends_on),
            revision=0,
            origin=origin,
        )
        with self.lock():
            self._write(task)
        logger.info("Created %s in %s (priority %s)", task.id, status, task.priority)
        return task

    def get(self, task_id: str) -> Task:
        with self.lock():
            task, _path = self._locate(task_id)
        return task

    def list_tasks(self, status: str | None = None) -> list[Task]:
        statuses = [status] if status else list(TASK_STATUSES)
        tasks: list[Task] = []
        seen: set[str] = set()
        for current in statuses:
            for path in sorted(self._partition_dir(current).glob("*.json")):
                if path.stem in seen:
                    continue
                seen.add(path.stem)
                task = self._read_record(path)
                if task is not None:
                    task.status = current
                    tasks.append(task)
        tasks.sort(key=lambda task: (task.priority, task.created_at, task.id))
        return tasks

    def _dependencies_done(self, task: Task) -> bool:
        return all(self._record_path("done", dep_id).exists() for dep_id in task.depends_on)

    def fetch_next(self) -> Task | None:
        candidates: list[tuple[int, int, str, Task]] = []
        for rank, status in enumerate(("ready", "backlog")):
            for task in self.list_tasks(status):
                if self._dependencies_done(task):
                    candidates.append((task.priority, rank, task.created_at, task))
        if not candidates:
            return None
        candidates.sort(key=lambda item: item[:3])
        return candidates[0][3]

    def transition(self, task_id: str, new_status: str, *, reason: str | None = None) -> Task:
        if new_status not in PARTITIONS:
            raise TaskStoreError(f"Unknown task status: {new_status}")

        def _apply(task: Task) -> None:
            if (task.status, new_status) not in LEGAL_TRANSITIONS:
                raise InvalidTransition(task.id, task.status, new_status)
            task.status = new_status
            task.blocked_reason = reason if new_status == "blocked" else None

        with self.lock():
            task, path = self._locate(task_id)
            previous = task.status
            _apply(task)
            updated = self._write(task, previous_path=path)
        logger.info("Task %s: %s -> %s", task_id, previous, new_status)
        return updated

    def append_artifact(self, task_id: str, artifact: Artifact) -> Task:
        return self._mutate(task_id, lambda task: task.artifacts.append(artifact))

    def report_path(self, iteration_id: str) -> Path:
        return self.reports_dir / f"{iteration_id}.json"

    def message_log_path(self, iteration_id: str) -> Path:
        return self.reports_dir / f"{iteration_id}.messages.jsonl"

    def write_report(self, report: IterationReport, messages: list[dict[str, Any]]) -> Path:
        path = self.report_path(report.iteration_id)
        with self.lock():
            if path.exists():
                raise TaskStoreError(f"Report already written: {report.iteration_id}")
            log_path = self.message_log_path(report.iteration_id)
            with log_path.open("w", encoding="utf-8") as handle:
                for message in messages:
                    handle.write(json.dumps(message, ensure_ascii=False) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            atomic_write_json(path, report.to_dict())
        return path

    def read_report(self, iteration_id: str) -> IterationReport:
        path = self.report_path(iteration_id)
        if not path.exists():
            raise TaskStoreError(f"No report for iteration {iteration_id}")
        return IterationReport.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def list_reports(self) -> list[IterationReport]:
        reports: list[IterationReport] = []
        for path in sorted(self.reports_dir.glob("*.json")):
            try:
                reports.append(IterationReport.from_dict(json.loads(path.read_text("utf-8"))))
            except (OSError, json.JSONDecodeError, KeyError):
                logger.warning("Skipping unreadable report %s", path)
        reports.sort(key=lambda report: report.started_at)
        return reports

    def read_messages(self, iteration_id: str) -> list[dict[str, Any]]:
        path = self.message_log_path(iteration_id)
        if not path.exists():
            return []
        messages: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                messages.append(json.loads(line))
        return messages
