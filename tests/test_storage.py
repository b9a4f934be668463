"""
Tests for the record repositories, run recorders and task stores.
"""
import json
from datetime import timedelta

import pytest

from vacancy_sync.errors import SyncError
from vacancy_sync.models import CanonicalRecord, ImportTask, RunCounts, RunStatus, TriggerType
from vacancy_sync.storage import (
    InMemoryRecordRepository,
    InMemoryRunRecorder,
    JsonFileRecordRepository,
    JsonFileRunRecorder,
    JsonFileTaskStore,
)


def test_repository_crud(repository):
    record_id = repository.create("t1", "R1", CanonicalRecord(title="A"), provider_id="p", kind="vacancy")

    found = repository.find_by_unique_id("R1", "t1")
    assert found.id == record_id
    assert found.record.title == "A"
    assert repository.find_by_unique_id("R1", "other") is None

    assert repository.update(record_id, CanonicalRecord(title="B"), status="draft") is True
    updated = repository.get(record_id)
    assert updated.record.title == "B"
    assert updated.status == "draft"
    assert updated.updated_at >= updated.created_at

    assert repository.delete(record_id) is True
    assert repository.delete(record_id) is False
    assert repository.update(record_id, CanonicalRecord()) is False
    assert repository.find_by_unique_id("R1", "t1") is None


def test_index_follows_surviving_duplicate():
    repo = InMemoryRecordRepository()
    older = repo.create("t1", "R1", CanonicalRecord(title="old"))
    newer = repo.create("t1", "R1", CanonicalRecord(title="new"))

    assert repo.find_by_unique_id("R1", "t1").id == newer
    repo.delete(newer)
    assert repo.find_by_unique_id("R1", "t1").id == older


def test_json_repository_round_trip(tmp_path):
    path = tmp_path / "records.json"
    repo = JsonFileRecordRepository(path)
    record = CanonicalRecord(title="Persisted", closing_date="2024-06-01", skills_required=["x"])
    record_id = repo.create("t1", "R1", record, provider_id="p")
    repo.flush()

    reloaded = JsonFileRecordRepository(path)
    stored = reloaded.find_by_unique_id("R1", "t1")

    assert stored.id == record_id
    assert stored.provider_id == "p"
    assert stored.record == record
    assert json.loads(path.read_text())[0]["unique_id"] == "R1"


def test_json_repository_batches_writes(tmp_path):
    path = tmp_path / "records.json"
    repo = JsonFileRecordRepository(path, flush_every=3)

    first = repo.create("t1", "R1", CanonicalRecord(title="A"))
    repo.update(first, CanonicalRecord(title="B"))
    assert not path.exists()

    repo.create("t1", "R2", CanonicalRecord(title="C"))
    assert len(json.loads(path.read_text())) == 2

    repo.delete(first)
    assert len(JsonFileRecordRepository(path).list("t1")) == 2

    repo.flush()
    assert [r.unique_id for r in JsonFileRecordRepository(path).list("t1")] == ["R2"]
    mtime = path.stat().st_mtime_ns
    repo.flush()
    assert path.stat().st_mtime_ns == mtime


def test_run_lifecycle(recorder):
    run_id = recorder.start_run("t1", TriggerType.MANUAL, "task:t1")
    assert recorder.get_run(run_id).status is RunStatus.RUNNING

    recorder.update_counts(run_id, RunCounts(fetched=3))
    assert recorder.get_run(run_id).counts.fetched == 3

    run = recorder.finish_run(run_id, RunStatus.COMPLETED, RunCounts(fetched=3, created=3))
    assert run.status is RunStatus.COMPLETED
    assert run.finished_at is not None
    assert run.counts.created == 3


def test_run_is_finalized_exactly_once(recorder):
    run_id = recorder.start_run("t1", TriggerType.MANUAL)
    recorder.finish_run(run_id, RunStatus.FAILED, RunCounts(), "boom")

    with pytest.raises(SyncError):
        recorder.finish_run(run_id, RunStatus.COMPLETED, RunCounts())
    with pytest.raises(SyncError):
        recorder.update_counts(run_id, RunCounts(created=1))
    assert recorder.get_run(run_id).error == "boom"


def test_finish_run_needs_final_status(recorder):
    run_id = recorder.start_run("t1", TriggerType.MANUAL)
    with pytest.raises(ValueError):
        recorder.finish_run(run_id, RunStatus.RUNNING, RunCounts())


def test_list_runs_newest_first(recorder):
    ids = [recorder.start_run(task, TriggerType.MANUAL) for task in ("a", "b", "a")]

    runs = recorder.list_runs("a")

    assert {r.id for r in runs} == {ids[0], ids[2]}
    assert runs[0].started_at >= runs[1].started_at
    assert len(recorder.list_runs(limit=1)) == 1


def test_cleanup_drops_old_finished_runs():
    recorder = InMemoryRunRecorder()
    old = recorder.start_run("t1", TriggerType.MANUAL)
    recorder.finish_run(old, RunStatus.COMPLETED, RunCounts())
    live = recorder.start_run("t1", TriggerType.MANUAL)
    # Age the finished run and its log lines.
    aged = recorder._runs[old]
    recorder._runs[old] = aged.model_copy(update={"finished_at": aged.finished_at - timedelta(days=40)})
    recorder._logs = [
        e.model_copy(update={"timestamp": e.timestamp - timedelta(days=40)}) if e.run_id == old else e
        for e in recorder._logs
    ]

    removed = recorder.cleanup(retention_days=30)

    assert removed >= 1
    assert recorder.get_run(old) is None
    assert recorder.get_run(live) is not None
    assert recorder.logs_for_run(old) == []


def test_json_recorder_round_trip(tmp_path):
    recorder = JsonFileRunRecorder(tmp_path / "runs")
    run_id = recorder.start_run("t1", TriggerType.SCHEDULED)
    recorder.append_log(run_id, "warning", "Item 3: missing id", {"index": 3}, component="mapping")
    recorder.finish_run(run_id, RunStatus.COMPLETED, RunCounts(created=2))

    reloaded = JsonFileRunRecorder(tmp_path / "runs")

    run = reloaded.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert run.trigger is TriggerType.SCHEDULED
    assert run.counts.created == 2
    logs = reloaded.logs_for_run(run_id)
    assert [e.level for e in logs] == ["info", "warning", "info"]
    assert logs[1].component == "mapping"
    assert logs[1].context == {"index": 3}


def test_json_task_store(tmp_path):
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "uk",
                    "name": "UK",
                    "status": "active",
                    "api_headers": '{"X-Version": "2"}',
                    "field_mappings": {"title": "title"},
                    "schedule_time": "7:5",
                }
            ]
        )
    )

    store = JsonFileTaskStore(path)
    task = store.get("uk")
    assert task.api_headers == {"X-Version": "2"}
    assert task.schedule_time == "07:05"

    store.save(ImportTask.uk_gov_template("gov", "Gov", subscription_key="k"))
    assert {t.id for t in JsonFileTaskStore(path).all()} == {"uk", "gov"}


def test_missing_task_file_is_empty(tmp_path):
    assert JsonFileTaskStore(tmp_path / "nope.json").all() == []
