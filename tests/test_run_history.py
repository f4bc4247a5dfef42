import json
from datetime import datetime, timezone

from utils.pipeline_contracts import CycleOutcome, CycleResult
from utils.run_history import RunHistoryStore


def _outcome(name, result=CycleResult.MERGED, **extra):
    return CycleOutcome(
        spec_name=name,
        result=result,
        started_at=datetime(2026, 2, 10, 10, 0, 0, tzinfo=timezone.utc),
        elapsed_seconds=1.23456,
        **extra,
    )


def test_append_persists_payload_and_reloads(tmp_path):
    path = tmp_path / "backfill_runs.json"
    store = RunHistoryStore(path)

    store.append(_outcome("cpu", records=5, block_path="/tmp/x", max_series=3))

    saved = json.loads(path.read_text())
    assert saved["version"] == 1
    assert saved["entries"] == [
        {
            "spec_name": "cpu",
            "result": "merged",
            "started_at": "2026-02-10T10:00:00Z",
            "elapsed_seconds": 1.235,
            "records": 5,
            "block_path": "/tmp/x",
            "max_series": 3,
            "error": None,
        }
    ]
    assert RunHistoryStore(path).last("cpu")["records"] == 5


def test_append_keeps_only_window_size_entries(tmp_path):
    store = RunHistoryStore(tmp_path / "runs.json", window_size=2)

    store.append(_outcome("a"))
    store.append(_outcome("b", result=CycleResult.SKIPPED))
    store.append(_outcome("c", result=CycleResult.FAILED, error="boom"))

    assert [entry["spec_name"] for entry in store.entries()] == ["b", "c"]
    assert store.last("a") is None
    assert store.last("c")["error"] == "boom"


def test_corrupt_history_file_starts_empty(tmp_path):
    path = tmp_path / "runs.json"
    path.write_text("{broken")

    store = RunHistoryStore(path)

    assert store.entries() == []
    store.append(_outcome("cpu"))
    assert len(json.loads(path.read_text())["entries"]) == 1
