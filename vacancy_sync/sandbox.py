"""Out-of-process execution of user transform code.

A `TransformWorker` owns one spawned child process. The child runs already
validated transform source with a restricted builtins table and a line-step
budget, under an address-space cap where the platform supports one. The parent
waits on every record with a wall-clock timeout and kills the child when it is
exceeded; the next record starts a fresh worker.

This module only imports the standard library and `errors` so the child starts
quickly.
"""

from __future__ import annotations

import contextlib
import multiprocessing
import sys
from typing import Any, Dict, Optional

from .errors import TransformError

TRANSFORM_FILENAME = "<transform>"
MAX_RANGE = 100_000

_STARTUP_TIMEOUT_S = 30.0
_SHUTDOWN_TIMEOUT_S = 1.0


def _bounded_range(*args: int) -> range:
    r = range(*args)
    if len(r) > MAX_RANGE:
        raise TransformError(f"range() larger than {MAX_RANGE} items is not allowed")
    return r


SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "range": _bounded_range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
}


def run_transform(code: Any, payload: Dict[str, Any], max_steps: int) -> Any:
    """Execute compiled transform code against `payload`; returns the final `record`."""
    steps = 0

    def tracer(frame, event, arg):
        nonlocal steps
        if frame.f_code.co_filename != TRANSFORM_FILENAME:
            return None
        if event == "line":
            steps += 1
            if steps > max_steps:
                raise TransformError(f"Transform exceeded {max_steps} steps")
        return tracer

    scope: Dict[str, Any] = {"__builtins__": SAFE_BUILTINS, "record": payload}
    previous = sys.gettrace()
    sys.settrace(tracer)
    try:
        exec(code, scope)
    finally:
        sys.settrace(previous)
    return scope.get("record")


def _address_space_bytes(page_size: int) -> Optional[int]:
    try:
        with open("/proc/self/statm", encoding="ascii") as fh:
            return int(fh.read().split()[0]) * page_size
    except (OSError, ValueError, IndexError):
        return None


def _limit_memory(max_memory_mb: int) -> Optional[str]:
    """Cap the child's address space at its current size plus `max_memory_mb`.

    Returns a reason when no cap could be applied.
    """
    if sys.platform == "win32":
        return "memory limits are not supported on Windows"
    import resource

    current = _address_space_bytes(resource.getpagesize())
    if current is None:
        return "current address space size is unknown"
    limit = current + max_memory_mb * 1024 * 1024
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit = min(limit, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as exc:
        return f"setrlimit failed: {exc}"
    return None


def _worker_main(conn: Any, source: str, max_steps: int, max_memory_mb: int) -> None:
    warning = _limit_memory(max_memory_mb) if max_memory_mb else None
    code = compile(source, TRANSFORM_FILENAME, "exec")
    conn.send(("ready", warning))
    while True:
        try:
            payload = conn.recv()
        except EOFError:
            break
        if payload is None:
            break
        try:
            conn.send(("ok", run_transform(code, payload, max_steps)))
        except TransformError as exc:
            conn.send(("error", exc.message))
        except MemoryError:
            conn.send(("error", f"Transform exceeded the {max_memory_mb} MB memory limit"))
        except Exception as exc:
            conn.send(("error", f"Transform failed: {type(exc).__name__}: {exc}"))
    conn.close()


class TransformWorker:
    """Runs one task's transform in a child process, one record at a time."""

    def __init__(self, source: str, *, max_steps: int, timeout_s: float, max_memory_mb: int) -> None:
        self.source = source
        self.max_steps = max_steps
        self.timeout_s = timeout_s
        self.max_memory_mb = max_memory_mb
        self.startup_warning: Optional[str] = None
        self._process: Any = None
        self._conn: Any = None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _start(self) -> None:
        ctx = multiprocessing.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        process = ctx.Process(
            target=_worker_main,
            args=(child_conn, self.source, self.max_steps, self.max_memory_mb),
            name="transform-worker",
            daemon=True,
        )
        process.start()
        child_conn.close()
        self._process, self._conn = process, parent_conn
        if not parent_conn.poll(_STARTUP_TIMEOUT_S):
            self.kill()
            raise TransformError("Transform worker did not start")
        try:
            _, self.startup_warning = parent_conn.recv()
        except EOFError as exc:
            self.kill()
            raise TransformError("Transform worker exited during startup") from exc

    def run(self, payload: Dict[str, Any]) -> Any:
        """Send one record to the worker and wait at most `timeout_s` for the result."""
        if not self.alive:
            self.kill()
            self._start()
        self._conn.send(payload)
        if not self._conn.poll(self.timeout_s):
            self.kill()
            raise TransformError(f"Transform exceeded the {self.timeout_s:g}s time limit")
        try:
            status, value = self._conn.recv()
        except EOFError as exc:
            exitcode = self._process.exitcode
            self.kill()
            raise TransformError(f"Transform worker died (exit code {exitcode})") from exc
        if status == "error":
            raise TransformError(value)
        return value

    def kill(self) -> None:
        if self._conn is not None:
            self._conn.close()
        if self._process is not None:
            if self._process.is_alive():
                self._process.kill()
            self._process.join()
        self._process = self._conn = None

    def close(self) -> None:
        """Ask an idle worker to exit, killing it if it does not."""
        if self.alive:
            # The worker may exit between the check and the send.
            with contextlib.suppress(BrokenPipeError):
                self._conn.send(None)
            self._process.join(_SHUTDOWN_TIMEOUT_S)
        self.kill()
