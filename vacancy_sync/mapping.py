"""Field mapping and user transforms.

`FieldMapper` copies values from raw source items into a `CanonicalRecord`
using a task's `field_mappings` (canonical field -> source dot-path, e.g.
`"primary_address.postcode": "addresses[0].postcode"`).

`TransformEngine` runs the optional per-task transform code. The code is a
small, restricted Python subset that edits a `record` dict in place:

    record["title"] = record["title"].strip().title()
    if not record["wage_text"]:
        record["wage_text"] = "Competitive"

It sees a copy of the record, cannot import or reach private attributes and
has no I/O builtins. It runs in a worker process (see `sandbox.py`) under a
line-step budget, a per-record time limit and a memory cap. Only canonical
fields are merged back; anything else it adds is dropped.
"""

from __future__ import annotations

import ast
from typing import Any, Dict, FrozenSet, Optional

from pydantic import ValidationError

from .errors import ConfigurationError, RecordError, TransformError
from .logging import get_logger
from .models import Address, CanonicalRecord, ImportTask
from .sandbox import SAFE_BUILTINS, TRANSFORM_FILENAME, TransformWorker
from .utils import resolve_path

log = get_logger("mapping")

PROTECTED_FIELDS: FrozenSet[str] = frozenset({"raw_data", "imported_at", "provider_id"})
MUTABLE_FIELDS: FrozenSet[str] = frozenset(CanonicalRecord.model_fields) - PROTECTED_FIELDS

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.While,
    ast.FunctionDef,
    ast.AsyncFunctionDef,
    ast.Lambda,
    ast.ClassDef,
    ast.Global,
    ast.Nonlocal,
    ast.With,
    ast.AsyncWith,
    ast.AsyncFor,
    ast.Try,
    ast.Raise,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.Pow,
)
if hasattr(ast, "TryStar"):
    _FORBIDDEN_NODES += (ast.TryStar,)

# Attribute names that reach interpreter internals without a leading underscore.
_FORBIDDEN_ATTRS = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_globals",
        "f_locals",
        "tb_frame",
        "co_code",
    }
)


def _validate_transform(tree: ast.AST) -> None:
    assigned = {"record"}
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
            assigned.add(node.id)

    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ConfigurationError(f"Transform code may not use {type(node).__name__} (line {getattr(node, 'lineno', '?')})")
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRS:
                raise ConfigurationError(f"Transform code may not access attribute '{node.attr}'")
        elif isinstance(node, ast.Name):
            if node.id.startswith("_"):
                raise ConfigurationError(f"Transform code may not use name '{node.id}'")
            if isinstance(node.ctx, ast.Load) and node.id not in assigned and node.id not in SAFE_BUILTINS:
                raise ConfigurationError(f"Transform code uses unknown name '{node.id}'")


class TransformEngine:
    """Compiled, validated transform for one task.

    Records are transformed in a worker process started on first use; call
    `close()` when the run is done.
    """

    def __init__(
        self,
        code: str,
        *,
        max_steps: int = 10000,
        max_code_chars: int = 20000,
        timeout_s: float = 2.0,
        max_memory_mb: int = 256,
    ) -> None:
        if len(code) > max_code_chars:
            raise ConfigurationError(f"Transform code is longer than {max_code_chars} characters")
        try:
            tree = ast.parse(code, filename=TRANSFORM_FILENAME, mode="exec")
        except SyntaxError as exc:
            raise ConfigurationError(f"Transform code has a syntax error: {exc.msg} (line {exc.lineno})") from exc
        _validate_transform(tree)
        self._worker = TransformWorker(code, max_steps=max_steps, timeout_s=timeout_s, max_memory_mb=max_memory_mb)

    def close(self) -> None:
        self._worker.close()

    def apply(self, record: CanonicalRecord) -> CanonicalRecord:
        """Run the transform against a copy of `record` and return a new record."""
        payload = record.model_dump(mode="json", exclude=set(PROTECTED_FIELDS))
        started = self._worker.alive
        result = self._worker.run(payload)
        if not started and self._worker.startup_warning:
            log.warning(f"Transform worker runs without a memory cap: {self._worker.startup_warning}")

        if not isinstance(result, dict):
            raise TransformError("Transform must leave `record` as a dict")

        changes = {k: v for k, v in result.items() if k in MUTABLE_FIELDS}
        dropped = sorted(set(result) - MUTABLE_FIELDS)
        if dropped:
            log.debug(f"Transform output dropped unknown/protected fields: {dropped}")

        merged = record.model_dump()
        merged.update(changes)
        try:
            return CanonicalRecord.model_validate(merged)
        except ValidationError as exc:
            raise TransformError(f"Transform produced invalid values: {exc.errors()[0].get('msg')}") from exc


def _zero_value(model: type, name: str) -> Any:
    return model.model_fields[name].get_default(call_default_factory=True)


class FieldMapper:
    """Maps raw items onto canonical records for one task."""

    def __init__(
        self,
        field_mappings: Optional[Dict[str, str]] = None,
        unique_id_field: str = "",
        transform: Optional[TransformEngine] = None,
    ) -> None:
        self.unique_id_field = unique_id_field
        self.transform = transform
        self.field_mappings: Dict[str, str] = {}
        for target, source in (field_mappings or {}).items():
            if self._target_model(target) is None:
                log.warning(f"Ignoring mapping to unknown canonical field '{target}'")
                continue
            self.field_mappings[target] = source

    @classmethod
    def for_task(
        cls,
        task: ImportTask,
        *,
        max_steps: int = 10000,
        max_code_chars: int = 20000,
        timeout_s: float = 2.0,
        max_memory_mb: int = 256,
    ) -> "FieldMapper":
        transform = None
        if task.transforms_enabled and task.transforms_code.strip():
            transform = TransformEngine(
                task.transforms_code,
                max_steps=max_steps,
                max_code_chars=max_code_chars,
                timeout_s=timeout_s,
                max_memory_mb=max_memory_mb,
            )
        return cls(task.field_mappings, task.unique_id_field, transform)

    def close(self) -> None:
        if self.transform is not None:
            self.transform.close()

    @staticmethod
    def _target_model(target: str) -> Optional[type]:
        head, _, tail = target.partition(".")
        if not tail:
            return CanonicalRecord if head in CanonicalRecord.model_fields else None
        if head == "primary_address" and tail in Address.model_fields:
            return Address
        return None

    def unique_id(self, raw: Any) -> str:
        """Resolve the dedup key against the raw item; '' when absent."""
        value = resolve_path(raw, self.unique_id_field) if self.unique_id_field else None
        if value is None or isinstance(value, (dict, list, bool)):
            return ""
        return str(value).strip()

    def map(self, raw: Dict[str, Any], base: Optional[CanonicalRecord] = None) -> CanonicalRecord:
        """Build a canonical record from `raw`, starting from `base` if given.

        Missing source paths produce the target field's zero value. Values that
        cannot be coerced to the field's type raise `RecordError`.
        """
        data: Dict[str, Any] = base.model_dump() if base is not None else {}
        for target, source in self.field_mappings.items():
            value = resolve_path(raw, source)
            head, _, tail = target.partition(".")
            if tail:
                address = dict(data.get(head) or {})
                address[tail] = value if value is not None else _zero_value(Address, tail)
                data[head] = address
            else:
                data[head] = value if value is not None else _zero_value(CanonicalRecord, head)
        data["raw_data"] = raw

        try:
            record = CanonicalRecord.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ()))
            raise RecordError(f"Cannot map field '{where}': {first.get('msg')}") from exc

        if self.transform is not None:
            record = self.transform.apply(record)
        return record
