"""Persistence boundaries used by the orchestrator.

The engine only talks to three small interfaces:
- `RecordRepository`: keyed store of canonical records, namespaced by task.
- `RunRecorder`: run bookkeeping and append-only run logs.
- `TaskStore`: where import tasks are read from.

In-memory implementations back the tests; JSON-file implementations back the
CLI. Each create/update/delete is atomic on its own; there are no cross-record
transactions.
"""

from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .errors import SyncError
from .logging import get_logger
from .models import (
    CanonicalRecord,
    ImportRun,
    ImportTask,
    LogEntry,
    RunCounts,
    RunStatus,
    StoredRecord,
    TriggerType,
)
from .utils import utc_now

log = get_logger("core")


def _new_id() -> str:
    return uuid.uuid4().hex


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class RecordRepository(Protocol):
    def find_by_unique_id(self, unique_id: str, namespace: str) -> Optional[StoredRecord]: ...

    def create(
        self,
        namespace: str,
        unique_id: str,
        record: CanonicalRecord,
        *,
        provider_id: str = "",
        kind: str = "vacancy",
        status: str = "publish",
    ) -> str: ...

    def update(self, record_id: str, record: CanonicalRecord, *, status: Optional[str] = None) -> bool: ...

    def delete(self, record_id: str) -> bool: ...

    def list(self, namespace: str) -> List[StoredRecord]: ...

    def flush(self) -> None: ...


class RunRecorder(Protocol):
    def start_run(self, task_id: str, trigger: TriggerType, provider_id: str = "") -> str: ...

    def append_log(
        self,
        run_id: Optional[str],
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        component: str = "core",
    ) -> None: ...

    def update_counts(self, run_id: str, counts: RunCounts) -> None: ...

    def finish_run(self, run_id: str, status: RunStatus, counts: RunCounts, error: Optional[str] = None) -> ImportRun: ...

    def get_run(self, run_id: str) -> Optional[ImportRun]: ...

    def list_runs(self, task_id: Optional[str] = None, limit: Optional[int] = None) -> List[ImportRun]: ...


class TaskStore(Protocol):
    def get(self, task_id: str) -> Optional[ImportTask]: ...

    def all(self) -> List[ImportTask]: ...


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class InMemoryRecordRepository:
    def __init__(self) -> None:
        self._records: Dict[str, StoredRecord] = {}
        self._index: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()

    def find_by_unique_id(self, unique_id: str, namespace: str) -> Optional[StoredRecord]:
        with self._lock:
            record_id = self._index.get((namespace, unique_id))
            return self._records.get(record_id) if record_id else None

    def get(self, record_id: str) -> Optional[StoredRecord]:
        with self._lock:
            return self._records.get(record_id)

    def create(
        self,
        namespace: str,
        unique_id: str,
        record: CanonicalRecord,
        *,
        provider_id: str = "",
        kind: str = "vacancy",
        status: str = "publish",
    ) -> str:
        with self._lock:
            stored = StoredRecord(
                id=_new_id(),
                unique_id=unique_id,
                task_id=namespace,
                provider_id=provider_id,
                kind=kind,
                status=status,
                record=record,
            )
            self._records[stored.id] = stored
            # With duplicates allowed the index points at the newest copy.
            self._index[(namespace, unique_id)] = stored.id
            self._changed()
            return stored.id

    def update(self, record_id: str, record: CanonicalRecord, *, status: Optional[str] = None) -> bool:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return False
            changes: Dict[str, Any] = {"record": record, "updated_at": utc_now()}
            if status is not None:
                changes["status"] = status
            self._records[record_id] = current.model_copy(update=changes)
            self._changed()
            return True

    def delete(self, record_id: str) -> bool:
        with self._lock:
            stored = self._records.pop(record_id, None)
            if stored is None:
                return False
            key = (stored.task_id, stored.unique_id)
            if self._index.get(key) == record_id:
                del self._index[key]
                # Point the index at a surviving duplicate, if any.
                for other in self._records.values():
                    if (other.task_id, other.unique_id) == key:
                        self._index[key] = other.id
            self._changed()
            return True

    def list(self, namespace: str) -> List[StoredRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.task_id == namespace]

    def count(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            if namespace is None:
                return len(self._records)
            return sum(1 for r in self._records.values() if r.task_id == namespace)

    def flush(self) -> None:
        """Persist pending changes. Nothing to do in memory."""

    def _changed(self) -> None:
        """Hook for persistent subclasses."""


class JsonFileRecordRepository(InMemoryRecordRepository):
    """Records kept in one JSON file.

    Changes are written atomically once `flush_every` of them are pending, and
    on `flush()`. The orchestrator flushes at the end of every run.
    """

    def __init__(self, path: Path, flush_every: int = 500) -> None:
        super().__init__()
        self.path = Path(path)
        self.flush_every = max(1, flush_every)
        self._pending = 0
        if self.path.exists():
            for row in json.loads(self.path.read_text(encoding="utf-8")):
                stored = StoredRecord.model_validate(row)
                self._records[stored.id] = stored
                self._index[(stored.task_id, stored.unique_id)] = stored.id

    def flush(self) -> None:
        with self._lock:
            if not self._pending:
                return
            data = [r.model_dump(mode="json") for r in self._records.values()]
            _atomic_write(self.path, json.dumps(data, indent=2, ensure_ascii=False))
            self._pending = 0

    def _changed(self) -> None:
        self._pending += 1
        if self._pending >= self.flush_every:
            self.flush()


# ---------------------------------------------------------------------------
# Runs and logs
# ---------------------------------------------------------------------------


class InMemoryRunRecorder:
    def __init__(self) -> None:
        self._runs: Dict[str, ImportRun] = {}
        self._logs: List[LogEntry] = []
        self._lock = threading.RLock()

    def start_run(self, task_id: str, trigger: TriggerType, provider_id: str = "") -> str:
        with self._lock:
            run = ImportRun(id=_new_id(), task_id=task_id, trigger=trigger, provider_id=provider_id)
            self._runs[run.id] = run
            self._runs_changed()
        self.append_log(run.id, "info", f"Run started ({trigger.value})", {"task_id": task_id})
        return run.id

    def append_log(
        self,
        run_id: Optional[str],
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        component: str = "core",
    ) -> None:
        entry = LogEntry(run_id=run_id, level=level, component=component, message=message, context=context or {})
        with self._lock:
            self._logs.append(entry)
            self._log_appended(entry)

    def update_counts(self, run_id: str, counts: RunCounts) -> None:
        with self._lock:
            run = self._require_open(run_id)
            self._runs[run_id] = run.model_copy(update={"counts": counts.model_copy()})

    def finish_run(self, run_id: str, status: RunStatus, counts: RunCounts, error: Optional[str] = None) -> ImportRun:
        if not status.is_final:
            raise ValueError("finish_run needs a final status")
        with self._lock:
            run = self._require_open(run_id)
            finished = run.model_copy(
                update={
                    "status": status,
                    "finished_at": utc_now(),
                    "counts": counts.model_copy(),
                    "error": error,
                }
            )
            self._runs[run_id] = finished
            self._runs_changed()
        self.append_log(
            run_id,
            "error" if status is RunStatus.FAILED else "info",
            f"Run {status.value}",
            {**counts.model_dump(), **({"error": error} if error else {})},
        )
        return finished

    def get_run(self, run_id: str) -> Optional[ImportRun]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, task_id: Optional[str] = None, limit: Optional[int] = None) -> List[ImportRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if task_id is None or r.task_id == task_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit] if limit else runs

    def logs_for_run(self, run_id: str) -> List[LogEntry]:
        with self._lock:
            return [e for e in self._logs if e.run_id == run_id]

    def cleanup(self, retention_days: int = 30) -> int:
        """Drop finished runs and log entries older than the retention window."""
        cutoff = utc_now() - timedelta(days=retention_days)
        with self._lock:
            old_runs = [
                rid for rid, r in self._runs.items() if r.status.is_final and (r.finished_at or r.started_at) < cutoff
            ]
            for rid in old_runs:
                del self._runs[rid]
            before = len(self._logs)
            self._logs = [e for e in self._logs if e.timestamp >= cutoff]
            removed = len(old_runs) + (before - len(self._logs))
            if removed:
                self._runs_changed()
                self._logs_rewritten()
        return removed

    def _require_open(self, run_id: str) -> ImportRun:
        run = self._runs.get(run_id)
        if run is None:
            raise SyncError(f"Unknown run '{run_id}'")
        if run.status.is_final:
            raise SyncError(f"Run '{run_id}' is already finalized")
        return run

    def _runs_changed(self) -> None:
        """Hook for persistent subclasses."""

    def _log_appended(self, entry: LogEntry) -> None:
        """Hook for persistent subclasses."""

    def _logs_rewritten(self) -> None:
        """Hook for persistent subclasses."""


class JsonFileRunRecorder(InMemoryRunRecorder):
    """Runs in `runs.json`, logs appended to `logs.jsonl` under one directory."""

    def __init__(self, directory: Path) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.runs_path = self.directory / "runs.json"
        self.logs_path = self.directory / "logs.jsonl"
        if self.runs_path.exists():
            for row in json.loads(self.runs_path.read_text(encoding="utf-8")):
                run = ImportRun.model_validate(row)
                self._runs[run.id] = run
        if self.logs_path.exists():
            with self.logs_path.open(encoding="utf-8") as fh:
                self._logs = [LogEntry.model_validate_json(line) for line in fh if line.strip()]

    def _runs_changed(self) -> None:
        data = [r.model_dump(mode="json") for r in self._runs.values()]
        _atomic_write(self.runs_path, json.dumps(data, indent=2, ensure_ascii=False))

    def _log_appended(self, entry: LogEntry) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with self.logs_path.open("a", encoding="utf-8") as fh:
            fh.write(entry.model_dump_json() + "\n")

    def _logs_rewritten(self) -> None:
        _atomic_write(self.logs_path, "".join(e.model_dump_json() + "\n" for e in self._logs))


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class InMemoryTaskStore:
    def __init__(self, tasks: Optional[List[ImportTask]] = None) -> None:
        self._tasks: Dict[str, ImportTask] = {t.id: t for t in tasks or []}

    def get(self, task_id: str) -> Optional[ImportTask]:
        return self._tasks.get(task_id)

    def all(self) -> List[ImportTask]:
        return list(self._tasks.values())

    def save(self, task: ImportTask) -> None:
        self._tasks[task.id] = task


class JsonFileTaskStore(InMemoryTaskStore):
    """Tasks read from a JSON file holding a list of task objects."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        tasks: List[ImportTask] = []
        if self.path.exists():
            rows = json.loads(self.path.read_text(encoding="utf-8"))
            tasks = [ImportTask.model_validate(row) for row in rows]
        else:
            log.warning(f"Task file not found: {self.path}")
        super().__init__(tasks)

    def save(self, task: ImportTask) -> None:
        super().save(task)
        data = [t.model_dump(mode="json") for t in self._tasks.values()]
        _atomic_write(self.path, json.dumps(data, indent=2, ensure_ascii=False))
