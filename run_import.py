"""CLI entry point.

Runs imports for tasks defined in a JSON file and keeps records, runs and logs
as JSON files under the data directory.

Examples:
    python run_import.py providers
    python run_import.py test uk-gov --tasks tasks.json --out sample.json
    python run_import.py run uk-gov --tasks tasks.json
    python run_import.py tick --tasks tasks.json            # call from cron
    python run_import.py tick --tasks tasks.json --loop     # built-in timer
    python run_import.py status <run_id>

Provider credentials come from the JSON file named by
VACANCY_SYNC_PROVIDER_CONFIGS_FILE (provider id -> config).
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional

from vacancy_sync.config import Settings
from vacancy_sync.logging import get_logger, setup_logging
from vacancy_sync.orchestrator import ImportOrchestrator
from vacancy_sync.providers import build_default_registry, default_client_factory
from vacancy_sync.scheduler import Scheduler
from vacancy_sync.storage import JsonFileRecordRepository, JsonFileRunRecorder, JsonFileTaskStore

log = get_logger("system")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Import vacancies from configured sources into the local store.")
    p.add_argument("--tasks", type=str, default="tasks.json", help="JSON file with a list of import tasks.")
    p.add_argument("--data-dir", type=str, default=None, help="Override VACANCY_SYNC_DATA_DIR.")
    p.add_argument("--log-level", type=str, default=None, help="Override VACANCY_SYNC_LOG_LEVEL.")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one import now.")
    run.add_argument("task_id")
    run.add_argument("--out", type=str, default=None, help="Also write the result JSON to this file.")

    test = sub.add_parser("test", help="Test the connection for a task or provider.")
    test.add_argument("target", help="Task id or provider id.")
    test.add_argument("--out", type=str, default=None, help="Write the result (with sample) to this file.")

    tick = sub.add_parser("tick", help="Run every task whose schedule is due.")
    tick.add_argument("--loop", action="store_true", help="Keep ticking until interrupted.")
    tick.add_argument("--interval", type=float, default=60.0, help="Seconds between ticks with --loop.")
    tick.add_argument("--workers", type=int, default=1, help="Run up to N different tasks concurrently.")

    sub.add_parser("providers", help="List registered providers and whether they are configured.")

    status = sub.add_parser("status", help="Show a run and its log.")
    status.add_argument("run_id")

    sub.add_parser("cleanup", help="Drop runs and logs older than the log retention window.")
    return p.parse_args(argv)


def _write_json(path: str, data: Any) -> Path:
    out_path = Path(path).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return out_path


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    overrides = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = Settings(**overrides)
    setup_logging(settings.log_level, settings.log_file, settings.log_retention_days)

    client_factory = default_client_factory(settings)
    registry = build_default_registry(client_factory)
    registry.load_configs(settings.load_provider_configs())

    data_dir = settings.data_path
    tasks = JsonFileTaskStore(Path(args.tasks))
    log.debug(f"Loaded {len(tasks.all())} task(s) from {args.tasks}")
    recorder = JsonFileRunRecorder(data_dir)
    repository = JsonFileRecordRepository(data_dir / "records.json")
    orchestrator = ImportOrchestrator(
        registry,
        tasks,
        repository,
        recorder,
        client_factory=client_factory,
        settings=settings,
    )

    try:
        if args.command == "providers":
            _print(registry.providers_info())
            return 0

        if args.command == "test":
            result = orchestrator.test_connection(args.target)
            data = result.model_dump(mode="json")
            if args.out:
                print(f"Wrote connection test to: {_write_json(args.out, data)}")
            print(result.message)
            return 0 if result.success else 1

        if args.command == "run":
            # Ctrl+C asks the run to stop at the next page/record boundary.
            def _cancel(signum, frame):
                for run in recorder.list_runs(args.task_id, limit=1):
                    orchestrator.cancel(run.id)

            previous = signal.signal(signal.SIGINT, _cancel)
            try:
                result = orchestrator.run_import(args.task_id)
            finally:
                signal.signal(signal.SIGINT, previous)
            data = result.model_dump(mode="json")
            if args.out:
                print(f"Wrote result to: {_write_json(args.out, data)}")
            _print(data)
            return 0 if result.success else 1

        if args.command == "tick":
            executor = ThreadPoolExecutor(max_workers=args.workers) if args.workers > 1 else None
            scheduler = Scheduler(orchestrator, tasks, recorder, executor=executor)
            try:
                if args.loop:
                    stop = threading.Event()
                    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
                    scheduler.run_forever(stop, args.interval)
                    return 0
                results = scheduler.tick()
                out = {}
                for task_id, result in results.items():
                    if isinstance(result, Future):
                        result = result.result()
                    out[task_id] = result.model_dump(mode="json")
                _print(out or {"message": "No tasks due"})
                return 0 if all(r["success"] for r in out.values()) else 1
            finally:
                if executor is not None:
                    executor.shutdown(wait=True)

        if args.command == "status":
            run = recorder.get_run(args.run_id)
            if run is None:
                print(f"Run not found: {args.run_id}", file=sys.stderr)
                return 1
            _print(
                {
                    "run": run.model_dump(mode="json"),
                    "logs": [e.model_dump(mode="json") for e in recorder.logs_for_run(args.run_id)],
                }
            )
            return 0

        if args.command == "cleanup":
            removed = recorder.cleanup(settings.log_retention_days)
            print(f"Removed {removed} old run/log entries")
            return 0
    finally:
        repository.flush()
        registry.close()

    return 2


if __name__ == "__main__":
    sys.exit(main())
