"""Import orchestration and reconciliation.

One run for a task goes:

    pending -> fetching -> mapping -> reconciling -> completed

and ends `failed` on a fatal error or `cancelled` when `cancel()` is called.
Every run that starts is finalized in the run recorder, whatever happens.

Only one run per task may be active at a time; a second trigger for the same
task is rejected (not queued) and no run is recorded for it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import CancellationError, ConfigurationError, RecordError, SyncError
from .logging import get_logger
from .mapping import FieldMapper
from .models import (
    CanonicalRecord,
    ConnectionTestResult,
    DuplicateAction,
    ImportResult,
    ImportTask,
    RunCounts,
    RunPhase,
    RunStatus,
    RunStatusView,
    TaskStatus,
    TriggerType,
)
from .providers.base import ClientFactory, Provider
from .providers.registry import ProviderRegistry
from .providers.task import TaskProvider
from .storage import RecordRepository, RunRecorder, TaskStore
from .utils import utc_now

log = get_logger("core")

_TERMINAL_PHASE = {
    RunStatus.COMPLETED: RunPhase.COMPLETED,
    RunStatus.FAILED: RunPhase.FAILED,
    RunStatus.CANCELLED: RunPhase.CANCELLED,
}

# Persist running counts every N reconciled items.
_COUNTS_FLUSH_EVERY = 50


@dataclass
class _ActiveRun:
    run_id: str
    task_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    phase: RunPhase = RunPhase.PENDING
    current: int = 0
    total: int = 0
    counts: RunCounts = field(default_factory=RunCounts)

    def should_stop(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CancellationError(f"Run {self.run_id} cancelled during {self.phase.value}")


class ImportOrchestrator:
    """Drives import runs for tasks. All collaborators are passed in."""

    def __init__(
        self,
        registry: ProviderRegistry,
        tasks: TaskStore,
        repository: RecordRepository,
        recorder: RunRecorder,
        *,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.tasks = tasks
        self.repository = repository
        self.recorder = recorder
        self._client_factory = client_factory
        self.settings = settings or get_settings()
        self._clock = clock
        self._lock = threading.Lock()
        self._active_by_task: Dict[str, _ActiveRun] = {}
        self._active_by_run: Dict[str, _ActiveRun] = {}

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def test_connection(self, target: Union[str, ImportTask, Provider]) -> ConnectionTestResult:
        """Check a task or provider can reach its source. Never raises for expected failures."""
        task: Optional[ImportTask] = None
        provider: Optional[Provider] = None
        try:
            if isinstance(target, Provider):
                provider = target
            elif isinstance(target, ImportTask):
                task = target
            else:
                task = self.tasks.get(target)
                if task is None:
                    provider = self.registry.get(target)
                    if provider is None:
                        return ConnectionTestResult(success=False, message=f"No task or provider named '{target}'")
            if task is not None:
                provider = self._provider_for(task)
            sample_size = min(5, task.page_size) if task is not None else 3
            result = provider.test_connection(sample_size=sample_size)
        except SyncError as exc:
            return ConnectionTestResult(success=False, message=exc.message)

        if result.success and task is not None and result.sample:
            if task.unique_id_field:
                found = FieldMapper(unique_id_field=task.unique_id_field).unique_id(result.sample[0])
            else:
                found = provider.unique_id(result.sample[0])
            if not found:
                where = task.unique_id_field or f"{provider.id} default"
                result = result.model_copy(
                    update={"message": f"{result.message} Warning: unique id field '{where}' not found in sample."}
                )
        return result

    def run_import(self, task_id: str, trigger: TriggerType = TriggerType.MANUAL) -> ImportResult:
        """Run one import for a task synchronously and return its final counts."""
        task = self.tasks.get(task_id)
        provider_id = (task.provider_id or f"task:{task.id}") if task is not None else ""

        with self._lock:
            if task_id in self._active_by_task:
                active = self._active_by_task[task_id]
                message = f"An import is already running for task '{task_id}' (run {active.run_id})"
                log.warning(message)
                self.recorder.append_log(None, "warning", message, {"task_id": task_id, "trigger": trigger.value})
                return ImportResult(success=False, message=message)
            run_id = self.recorder.start_run(task_id, trigger, provider_id)
            state = _ActiveRun(run_id=run_id, task_id=task_id)
            self._active_by_task[task_id] = state
            self._active_by_run[run_id] = state

        status = RunStatus.FAILED
        error: Optional[str] = None
        try:
            if task is None:
                raise ConfigurationError(f"Task '{task_id}' not found")
            self._execute(task, state)
            status = RunStatus.COMPLETED
        except CancellationError as exc:
            status = RunStatus.CANCELLED
            self._log(state, "warning", exc.message)
        except SyncError as exc:
            error = exc.message
            self._log(state, "error", f"Run failed: {exc.message}", {"error_code": exc.error_code, **exc.details})
        except Exception as exc:
            error = f"Unexpected error: {type(exc).__name__}: {exc}"
            log.exception(f"Run {run_id} crashed")
            self.recorder.append_log(run_id, "critical", error)
        finally:
            run = self.recorder.finish_run(run_id, status, state.counts, error)
            with self._lock:
                state.phase = _TERMINAL_PHASE[status]
                self._active_by_task.pop(task_id, None)
                self._active_by_run.pop(run_id, None)

        counts = run.counts
        log.info(
            f"Run {run_id} for task '{task_id}' {status.value}: fetched={counts.fetched} created={counts.created} "
            f"updated={counts.updated} deleted={counts.deleted} skipped={counts.skipped} errors={counts.errors}"
        )
        return ImportResult(
            success=status is RunStatus.COMPLETED,
            run_id=run_id,
            status=status,
            message=error or f"Import {status.value}",
            **counts.model_dump(),
        )

    def get_status(self, run_id: str) -> Optional[RunStatusView]:
        with self._lock:
            state = self._active_by_run.get(run_id)
            if state is not None and state.phase not in _TERMINAL_PHASE.values():
                return RunStatusView(
                    run_id=run_id,
                    status=RunStatus.RUNNING,
                    phase=state.phase,
                    current=state.current,
                    total=state.total,
                )
        run = self.recorder.get_run(run_id)
        if run is None:
            return None
        done = run.counts.fetched
        return RunStatusView(
            run_id=run_id,
            status=run.status,
            phase=_TERMINAL_PHASE.get(run.status, RunPhase.PENDING),
            current=done,
            total=done,
        )

    def cancel(self, run_id: str) -> bool:
        """Ask a running import to stop at the next page or record boundary."""
        with self._lock:
            state = self._active_by_run.get(run_id)
            if state is None or state.phase in _TERMINAL_PHASE.values():
                return False
            state.cancel_event.set()
        self._log(state, "warning", "Cancellation requested")
        return True

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._active_by_task

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    def _provider_for(self, task: ImportTask) -> Provider:
        if task.provider_id:
            provider = self.registry.get(task.provider_id)
            if provider is None:
                raise ConfigurationError(f"Task '{task.id}' uses unknown provider '{task.provider_id}'")
            return provider
        return TaskProvider(task, client_factory=self._client_factory)

    def _execute(self, task: ImportTask, state: _ActiveRun) -> None:
        if task.status is not TaskStatus.ACTIVE:
            raise ConfigurationError(f"Task '{task.id}' is not active (status: {task.status.value})")

        provider = self._provider_for(task)
        provider.ensure_configured()
        mapper = FieldMapper.for_task(
            task,
            max_steps=self.settings.transform_max_steps,
            max_code_chars=self.settings.transform_max_code_chars,
            timeout_s=self.settings.transform_timeout_s,
            max_memory_mb=self.settings.transform_max_memory_mb,
        )
        counts = state.counts

        # Fetch
        state.phase = RunPhase.FETCHING
        self._log(state, "info", f"Fetching from {provider.name}", {"provider_id": provider.id})

        def on_page(pages: int, total_pages: Optional[int], fetched: int) -> None:
            state.current = fetched
            self._log(state, "debug", f"Fetched page {pages}/{total_pages or '?'} ({fetched} items)", component="api")

        try:
            fetched = provider.fetch_all(
                max_pages=task.max_pages or self.settings.max_pages,
                should_stop=state.should_stop,
                on_page=on_page,
            )
        finally:
            if isinstance(provider, TaskProvider):
                provider.close()
        counts.fetched = len(fetched.items)
        state.total = counts.fetched
        self.recorder.update_counts(state.run_id, counts)
        self._log(
            state,
            "info",
            f"Fetched {counts.fetched} items in {fetched.pages_fetched} page(s)",
            {"total": fetched.total, "truncated": fetched.truncated},
        )

        # Map
        state.phase = RunPhase.MAPPING
        state.current = 0
        seen: Set[str] = set()
        mapped: List[Tuple[str, CanonicalRecord]] = []
        try:
            for index, raw in enumerate(fetched.items):
                state.check_cancelled()
                state.current = index + 1
                try:
                    unique_id, record = self._map_item(task, provider, mapper, raw)
                except RecordError as exc:
                    counts.errors += 1
                    self._log(state, "warning", f"Item {index + 1}: {exc.message}", {"error_code": exc.error_code}, component="mapping")
                    continue
                seen.add(unique_id)
                mapped.append((unique_id, record))
        finally:
            mapper.close()
        self.recorder.update_counts(state.run_id, counts)

        # Reconcile
        state.phase = RunPhase.RECONCILING
        state.current = 0
        state.total = len(mapped)
        try:
            for index, (unique_id, record) in enumerate(mapped):
                state.check_cancelled()
                state.current = index + 1
                self._reconcile(task, provider, unique_id, record, state)
                if (index + 1) % _COUNTS_FLUSH_EVERY == 0:
                    self.recorder.update_counts(state.run_id, counts)

            if task.retire_missing:
                if fetched.truncated:
                    self._log(state, "warning", "Skipping retire pass: fetch stopped at max_pages")
                else:
                    self._retire_missing(task, seen, state)
        finally:
            self.repository.flush()

        state.phase = RunPhase.COMPLETED

    def _map_item(
        self,
        task: ImportTask,
        provider: Provider,
        mapper: FieldMapper,
        raw: Any,
    ) -> Tuple[str, CanonicalRecord]:
        if not isinstance(raw, dict):
            raise RecordError(f"Item is a {type(raw).__name__}, not an object")
        unique_id = mapper.unique_id(raw) if task.unique_id_field else provider.unique_id(raw)
        if not unique_id:
            raise RecordError(f"Missing unique id at '{task.unique_id_field or provider.id + ' default'}'")
        try:
            base = provider.normalize(raw)
        except ValidationError as exc:
            raise RecordError(f"Normalization failed: {exc.errors()[0].get('msg')}") from exc
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise RecordError(f"Normalization failed: {type(exc).__name__}: {exc}") from exc
        return unique_id, mapper.map(raw, base)

    def _reconcile(
        self,
        task: ImportTask,
        provider: Provider,
        unique_id: str,
        record: CanonicalRecord,
        state: _ActiveRun,
    ) -> None:
        counts = state.counts
        action = task.duplicate_action
        try:
            existing = self.repository.find_by_unique_id(unique_id, task.id)
            if existing is None or action is DuplicateAction.CREATE_NEW:
                self.repository.create(
                    task.id,
                    unique_id,
                    record,
                    provider_id=provider.id,
                    kind=task.target_post_type,
                    status=task.post_status,
                )
                counts.created += 1
            elif action is DuplicateAction.UPDATE:
                # Keep the first import time so unchanged upstream data yields identical records.
                record = record.model_copy(update={"imported_at": existing.record.imported_at})
                if not self.repository.update(existing.id, record, status=task.post_status):
                    raise RecordError(f"Record {existing.id} disappeared before update")
                counts.updated += 1
            else:
                counts.skipped += 1
        except RecordError as exc:
            counts.errors += 1
            self._log(state, "warning", f"{unique_id}: {exc.message}")
        except Exception as exc:
            counts.errors += 1
            self._log(state, "error", f"{unique_id}: repository write failed: {type(exc).__name__}: {exc}")

    def _retire_missing(self, task: ImportTask, seen: Set[str], state: _ActiveRun) -> None:
        retention = task.retention_days if task.retention_days is not None else self.settings.retention_days
        window = timedelta(days=retention)
        now = self._clock()
        for stored in self.repository.list(task.id):
            state.check_cancelled()
            if stored.unique_id in seen:
                continue
            reference = stored.record.closing_date or stored.updated_at
            if reference + window >= now:
                continue
            try:
                if self.repository.delete(stored.id):
                    state.counts.deleted += 1
            except Exception as exc:
                state.counts.errors += 1
                self._log(state, "error", f"{stored.unique_id}: delete failed: {type(exc).__name__}: {exc}")
        if state.counts.deleted:
            self._log(state, "info", f"Retired {state.counts.deleted} record(s) no longer listed upstream")

    def _log(
        self,
        state: _ActiveRun,
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        component: str = "core",
    ) -> None:
        get_logger(component).log(level.upper(), f"[run {state.run_id[:8]}] {message}")
        self.recorder.append_log(state.run_id, level, message, context, component)
