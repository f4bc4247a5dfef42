import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from scripts import pipeline_worker
from scripts.pipeline_worker import (
    WorkerPaths,
    execute_cycle,
    main,
    resolve_block_path,
    run_cycle,
    run_worker,
)
from utils.config import BackfillConfig, QuerySpec
from utils.errors import QueryFailedError
from utils.pipeline_contracts import CycleResult, ExecutionHandle, ResultPage
from utils.run_history import RunHistoryStore
from workers.block_builder import BlockBuilderOptions

COLUMNS = ["timestamp", "value", "job"]
NOW = datetime(2026, 2, 10, 10, 37, 12, tzinfo=timezone.utc)


def _spec(name="cpu", max_series=0):
    return QuerySpec(
        name=name,
        region="us-east-1",
        query="SELECT timestamp, value, job FROM cpu",
        workgroup="primary",
        interval=timedelta(hours=1),
        max_series=max_series,
    )


def _two_page_result():
    return [
        ResultPage(
            column_names=COLUMNS,
            rows=[COLUMNS, ["1000", "1.0", "a"], ["2000", "2.0", "b"]],
            next_token="t1",
        ),
        ResultPage(
            column_names=COLUMNS,
            rows=[["3000", "3.0", "c"], ["4000", "4.0", "d"], ["5000", "5.0", "e"]],
        ),
    ]


class FakeQueryClient:
    def __init__(self, pages=None, fail_state=None):
        self._pages = pages if pages is not None else _two_page_result()
        self._fail_state = fail_state
        self.calls = []

    def submit(self, spec, stop_event=None):
        self.calls.append("submit")
        return ExecutionHandle(
            query_execution_id="qe-1", spec_name=spec.name, submitted_at=NOW
        )

    def await_completion(self, handle, stop_event=None):
        self.calls.append("await")
        if self._fail_state:
            raise QueryFailedError(handle.query_execution_id, self._fail_state, "boom")

    def iter_result_pages(self, handle):
        self.calls.append("pages")
        yield from self._pages


@pytest.fixture
def paths(tmp_path):
    dst = tmp_path / "tsdb"
    dst.mkdir()
    (dst / "01EXISTING").mkdir()
    return WorkerPaths(dst_path=str(dst), tmp_prefix=str(tmp_path / "tmp_"))


@pytest.fixture(autouse=True)
def captured_alerts(monkeypatch):
    alerts = []
    monkeypatch.setattr(pipeline_worker, "send_alert", alerts.append)
    return alerts


def _dst_entries(paths):
    return sorted(child.name for child in Path(paths.dst_path).iterdir())


def test_resolve_block_path_uses_truncated_stamp_and_name_suffix():
    spec = _spec()
    assert resolve_block_path("/data/tmp_", spec, NOW, multi_query=False) == (
        "/data/tmp_20260210_100000"
    )
    assert resolve_block_path("/data/tmp/", spec, NOW, multi_query=True) == (
        "/data/tmp/20260210_100000_cpu"
    )


def test_run_cycle_merges_block_into_destination(paths):
    client = FakeQueryClient()

    outcome = run_cycle(
        _spec(),
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: client,
        cycle_now=NOW,
    )

    assert outcome.result == CycleResult.MERGED
    assert outcome.records == 5
    assert outcome.max_series == 5
    assert client.calls == ["submit", "await", "pages"]
    entries = _dst_entries(paths)
    assert "01EXISTING" in entries
    assert len(entries) == 2
    merged = [name for name in entries if name != "01EXISTING"][0]
    meta = json.loads(
        (Path(paths.dst_path) / merged / "meta.json").read_text()
    )
    assert meta["stats"]["numSamples"] == 5
    assert not Path(outcome.block_path).exists()


def test_run_cycle_skips_block_over_series_limit(paths):
    outcome = run_cycle(
        _spec(max_series=1),
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: FakeQueryClient(),
        cycle_now=NOW,
    )

    assert outcome.result == CycleResult.SKIPPED
    assert outcome.max_series == 5
    assert _dst_entries(paths) == ["01EXISTING"]
    assert not Path(outcome.block_path).exists()


def test_run_cycle_failed_query_creates_no_temporary_path(paths, tmp_path):
    client = FakeQueryClient(fail_state="FAILED")

    with pytest.raises(QueryFailedError):
        run_cycle(
            _spec(),
            paths=paths,
            builder_options=BlockBuilderOptions(),
            query_client_factory=lambda spec: client,
            cycle_now=NOW,
        )

    assert "pages" not in client.calls
    assert not list(tmp_path.glob("tmp_*"))
    assert _dst_entries(paths) == ["01EXISTING"]


def test_run_cycle_parse_error_removes_partial_block(paths, tmp_path):
    bad_pages = [ResultPage(column_names=COLUMNS, rows=[COLUMNS, ["x", "1.0", "a"]])]

    with pytest.raises(Exception) as exc_info:
        run_cycle(
            _spec(),
            paths=paths,
            builder_options=BlockBuilderOptions(),
            query_client_factory=lambda spec: FakeQueryClient(pages=bad_pages),
            cycle_now=NOW,
        )

    assert exc_info.value.stage == "parse"
    assert not list(tmp_path.glob("tmp_*"))
    assert _dst_entries(paths) == ["01EXISTING"]


def test_run_cycle_empty_result_merges_nothing(paths):
    empty = [ResultPage(column_names=COLUMNS, rows=[COLUMNS])]

    outcome = run_cycle(
        _spec(),
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: FakeQueryClient(pages=empty),
        cycle_now=NOW,
    )

    assert outcome.result == CycleResult.MERGED
    assert outcome.records == 0
    assert _dst_entries(paths) == ["01EXISTING"]


def test_execute_cycle_turns_failure_into_outcome_and_alert(paths, captured_alerts):
    outcome = execute_cycle(
        _spec(),
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: FakeQueryClient(fail_state="CANCELLED"),
    )

    assert outcome.result == CycleResult.FAILED
    assert "QueryFailedError" in outcome.error
    assert any("stage=poll" in alert for alert in captured_alerts)


def test_run_worker_once_runs_every_query_and_records_history(paths, tmp_path):
    config = BackfillConfig(queries=[_spec("cpu"), _spec("mem", max_series=1)])
    history = RunHistoryStore(tmp_path / "runs.json")

    code = run_worker(
        config,
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: FakeQueryClient(),
        history=history,
        once=True,
    )

    assert code == 0
    assert [entry["result"] for entry in history.entries()] == ["merged", "skipped"]
    assert len(_dst_entries(paths)) == 2


def test_run_worker_exit_on_error_returns_one(paths):
    config = BackfillConfig(queries=[_spec("cpu"), _spec("mem")])
    clients = []

    def _factory(spec):
        client = FakeQueryClient(fail_state="FAILED")
        clients.append(client)
        return client

    code = run_worker(
        config,
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=_factory,
        once=True,
        exit_on_error=True,
    )

    assert code == 1
    assert len(clients) == 1


def test_run_worker_returns_immediately_when_stopped(paths):
    stop = threading.Event()
    stop.set()

    code = run_worker(
        BackfillConfig(queries=[_spec()]),
        paths=paths,
        builder_options=BlockBuilderOptions(),
        query_client_factory=lambda spec: pytest.fail("no cycle expected"),
        stop_event=stop,
    )

    assert code == 0


def test_main_returns_two_on_config_error(tmp_path):
    code = main(
        [
            "--config.file",
            str(tmp_path / "missing.yml"),
            "--tsdb.path",
            str(tmp_path),
            "--tsdb.tmp.path",
            str(tmp_path / "tmp_"),
        ]
    )
    assert code == 2


def test_main_requires_tsdb_path(tmp_path, monkeypatch):
    config_file = tmp_path / "backfill.yml"
    config_file.write_text(
        "queries:\n"
        "  - region: us-east-1\n"
        "    query: SELECT 1\n"
        "    workgroup: primary\n"
        "    interval: 1h\n"
    )
    monkeypatch.setattr(pipeline_worker.worker_config, "DEFAULT_TSDB_PATH", "")

    code = main(["--config.file", str(config_file), "--tsdb.tmp.path", str(tmp_path / "tmp_")])

    assert code == 2


def test_main_passes_cli_paths_to_worker(tmp_path, monkeypatch):
    config_file = tmp_path / "backfill.yml"
    config_file.write_text(
        "queries:\n"
        "  - name: cpu\n"
        "    region: us-east-1\n"
        "    query: SELECT 1\n"
        "    workgroup: primary\n"
        "    interval: 1h\n"
    )
    captured = {}

    def _fake_run_worker(config, **kwargs):
        captured["config"] = config
        captured.update(kwargs)
        return 0

    monkeypatch.setattr(pipeline_worker, "run_worker", _fake_run_worker)
    monkeypatch.setattr(pipeline_worker, "_install_signal_handlers", lambda stop: None)
    monkeypatch.setattr(pipeline_worker.worker_config, "RUN_LOG_FILE", "")

    code = main(
        [
            "--config.file",
            str(config_file),
            "--tsdb.path",
            str(tmp_path / "tsdb"),
            "--tsdb.tmp.path",
            str(tmp_path / "tmp_"),
            "--once",
        ]
    )

    assert code == 0
    assert [spec.name for spec in captured["config"].queries] == ["cpu"]
    assert captured["paths"] == WorkerPaths(
        dst_path=str(tmp_path / "tsdb"), tmp_prefix=str(tmp_path / "tmp_")
    )
    assert captured["once"] is True
    assert captured["exit_on_error"] is False
