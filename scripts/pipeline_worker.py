"""
Backfill worker orchestrator.

Why this file exists:
- Runtime orchestration(스케줄, cycle 실행, 알림, 실행 이력 저장)을 한곳에서 제어한다.
- 실제 단계 로직(submit/poll, streaming, block build, import)은 workers/*로 분리해 변경 폭을 줄인다.

Stage order (per cycle):
1) submit + poll (종료 상태까지 block)
2) streamer thread 시작 -> main path에서 block builder가 channel을 끝까지 소비
3) block import (merge 또는 discard)
4) 실행 이력 기록 후 다음 정렬 시각까지 대기

즉, 이 파일은 "변환 계산"보다 "운영 제어면(control-plane)"에 집중한다.
"""

from __future__ import annotations

import argparse
import os
import signal
import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import requests

from scripts import worker_config
from scripts.worker_scheduling import initialize_schedule, reschedule, resolve_due_queries
from utils.config import BackfillConfig, QuerySpec, load_config
from utils.errors import BlockImportError, ConfigError, CycleCancelled
from utils.file_io import remove_tree
from utils.logger import get_logger, setup_logging
from utils.pipeline_contracts import CycleOutcome, CycleResult, ImportDecision
from utils.run_history import RunHistoryStore
from utils.time_alignment import format_cycle_stamp
from workers.athena_query import AthenaQueryClient, PollPolicy
from workers.block_builder import BlockBuilder, BlockBuilderOptions
from workers.block_importer import (
    MANIFEST_FILE_NAME,
    import_block,
    recover_pending_imports,
)
from workers.result_streamer import RecordChannel, StreamerThread

logger = get_logger(__name__)

QueryClientFactory = Callable[[QuerySpec], AthenaQueryClient]
RUN_LOG_FILE_NAME = "backfill_runs.json"


@dataclass(frozen=True)
class WorkerPaths:
    dst_path: str
    tmp_prefix: str


def send_alert(message: str) -> None:
    """
    디스코드 webhook으로 알림 전송. URL이 없으면 로그만 남긴다.
    """
    if not worker_config.DISCORD_WEBHOOK_URL:
        logger.warning(f"[Alert Ignored] {message}")
        return

    try:
        payload = {"content": f"**Athena Backfill Alert**\n```{message}```"}
        requests.post(worker_config.DISCORD_WEBHOOK_URL, json=payload, timeout=5)
    except requests.RequestException as e:
        logger.error(f"Failed to send alert: {e}")


def resolve_block_path(
    tmp_prefix: str, spec: QuerySpec, cycle_now: datetime, *, multi_query: bool
) -> str:
    """
    cycle의 임시 block 경로 (`tmp_prefix + truncate 시각[_query 이름]`).

    Why:
    - 같은 interval 안에서는 같은 경로가 나오므로 cycle 간 충돌을 가려낼 수 있다.
    - query 정의가 여러 개면 이름을 붙여 서로의 임시 경로를 분리한다.
    """
    stamp = format_cycle_stamp(cycle_now, spec.interval)
    if multi_query:
        return f"{tmp_prefix}{stamp}_{spec.name}"
    return f"{tmp_prefix}{stamp}"


def _prepare_block_path(block_path: str) -> None:
    """
    이전 cycle이 남긴 같은 이름의 임시 block을 정리한다.
    merge manifest가 남아 있으면 destination 일부가 이미 옮겨진 상태이므로 지우지 않는다.
    """
    path = Path(block_path)
    if not path.exists():
        return
    if (path / MANIFEST_FILE_NAME).exists():
        raise BlockImportError(
            block_path, "pending import manifest found; restart worker to recover"
        )
    logger.warning("[Cycle] stale temporary block removed, path = %s", block_path)
    remove_tree(path)


def _cleanup_failed_block(block_path: str) -> None:
    path = Path(block_path)
    if not path.exists():
        return
    if (path / MANIFEST_FILE_NAME).exists():
        logger.error(
            "[Cycle] merge interrupted, temporary block kept for recovery, path = %s",
            block_path,
        )
        return
    try:
        remove_tree(path)
    except OSError as e:
        logger.error(f"[Cycle] failed to remove temporary block {block_path}: {e}")


def run_cycle(
    spec: QuerySpec,
    *,
    paths: WorkerPaths,
    builder_options: BlockBuilderOptions,
    query_client_factory: QueryClientFactory,
    stop_event: threading.Event | None = None,
    cycle_now: datetime | None = None,
    multi_query: bool = False,
) -> CycleOutcome:
    """
    query 정의 1개에 대해 submit -> poll -> stream/build -> import를 끝까지 실행한다.

    Called from:
    - `execute_cycle`

    Raises:
    - SubmissionError / QueryFailedError / PollError / CycleCancelled:
      임시 block을 만들기 전에 중단된다.
    - RowParseError / BlockImportError / OSError:
      partial block은 merge하지 않고 임시 경로를 지운다.
    """
    started_at = cycle_now or datetime.now(timezone.utc)
    start_time = time.time()
    block_path = resolve_block_path(
        paths.tmp_prefix, spec, started_at, multi_query=multi_query
    )

    query_client = query_client_factory(spec)
    handle = query_client.submit(spec, stop_event)
    query_client.await_completion(handle, stop_event)

    _prepare_block_path(block_path)
    channel = RecordChannel(builder_options.channel_capacity)
    streamer = StreamerThread(query_client, handle, channel)
    builder = BlockBuilder(builder_options, channel, block_path)

    try:
        streamer.start()
        try:
            summary = builder.run()
        except Exception:
            channel.abort()
            raise
        finally:
            streamer.join()
        if streamer.error is not None:
            raise streamer.error

        result = import_block(block_path, spec, paths.dst_path)
    except Exception:
        _cleanup_failed_block(block_path)
        raise

    cycle_result = (
        CycleResult.SKIPPED
        if result.decision == ImportDecision.SKIP
        else CycleResult.MERGED
    )
    return CycleOutcome(
        spec_name=spec.name,
        result=cycle_result,
        started_at=started_at,
        elapsed_seconds=time.time() - start_time,
        records=summary.records,
        block_path=block_path,
        max_series=result.max_series,
    )


def execute_cycle(
    spec: QuerySpec,
    *,
    paths: WorkerPaths,
    builder_options: BlockBuilderOptions,
    query_client_factory: QueryClientFactory,
    stop_event: threading.Event | None = None,
    multi_query: bool = False,
) -> CycleOutcome:
    """
    run_cycle 실패를 cycle 단위로 가둔다 (로그 + 알림 + failed outcome).

    Called from:
    - `run_worker`
    """
    started_at = datetime.now(timezone.utc)
    start_time = time.time()
    logger.info(
        f"\n[Cycle] [{spec.name}] 작업 시작: {started_at.strftime('%Y-%m-%d %H:%M:%S')}"
    )
    try:
        outcome = run_cycle(
            spec,
            paths=paths,
            builder_options=builder_options,
            query_client_factory=query_client_factory,
            stop_event=stop_event,
            cycle_now=started_at,
            multi_query=multi_query,
        )
    except CycleCancelled as e:
        logger.warning(f"[Cycle] [{spec.name}] cancelled: {e}")
        return CycleOutcome(
            spec_name=spec.name,
            result=CycleResult.CANCELLED,
            started_at=started_at,
            elapsed_seconds=time.time() - start_time,
            error=str(e),
        )
    except Exception as e:
        stage = getattr(e, "stage", "cycle")
        error_msg = (
            f"[{spec.name}] cycle failed at stage={stage}: {e}\n{traceback.format_exc()}"
        )
        logger.error(error_msg)
        send_alert(f"[{spec.name}] cycle failed at stage={stage}: {e}")
        return CycleOutcome(
            spec_name=spec.name,
            result=CycleResult.FAILED,
            started_at=started_at,
            elapsed_seconds=time.time() - start_time,
            error=f"{type(e).__name__}: {e}",
        )

    if outcome.result == CycleResult.SKIPPED:
        send_alert(
            f"[{spec.name}] block skipped: series={outcome.max_series} "
            f"> maxSeries={spec.max_series}"
        )
    logger.info(
        f"[Cycle] [{spec.name}] finished result={outcome.result.value} "
        f"records={outcome.records} in {outcome.elapsed_seconds:.2f}s"
    )
    return outcome


def run_worker(
    config: BackfillConfig,
    *,
    paths: WorkerPaths,
    builder_options: BlockBuilderOptions,
    poll_policy: PollPolicy | None = None,
    query_client_factory: QueryClientFactory | None = None,
    history: RunHistoryStore | None = None,
    stop_event: threading.Event | None = None,
    once: bool = False,
    exit_on_error: bool = False,
) -> int:
    """
    worker 메인 루프. exit code를 반환한다.

    - 시작 시 중단된 merge를 먼저 복구한다.
    - query 정의별 다음 정렬 시각을 관리하고, due인 정의를 순서대로 1개씩 실행한다.
    - cycle은 겹치지 않는다. 다음 대기 시간은 cycle이 끝난 뒤 계산한다.
    - once=True면 모든 정의를 즉시 1회씩 실행하고 종료한다.
    """
    stop = stop_event or threading.Event()
    factory = query_client_factory or (
        lambda spec: AthenaQueryClient.from_spec(spec, poll_policy=poll_policy)
    )
    specs = config.queries
    multi_query = len(specs) > 1

    recovered = recover_pending_imports(paths.tmp_prefix, paths.dst_path)
    if recovered:
        send_alert(f"Recovered interrupted merges: {recovered}")

    logger.info(
        f"[Backfill Worker] Started. Queries: {[spec.name for spec in specs]}, "
        f"Destination: {paths.dst_path}, TmpPrefix: {paths.tmp_prefix}, Once: {once}"
    )
    send_alert("Backfill worker started.")

    next_run_by_name = initialize_schedule(datetime.now(timezone.utc), specs)
    any_failed = False

    while not stop.is_set():
        if once:
            due_specs = list(specs)
        else:
            due_specs, wait = resolve_due_queries(
                now=datetime.now(timezone.utc),
                specs=specs,
                next_run_by_name=next_run_by_name,
            )
            if not due_specs:
                sleep_time = max(0.0, wait.total_seconds()) if wait else 0.0
                logger.info(
                    f"[Scheduler] no due query. sleep={sleep_time:.2f}s until next run."
                )
                stop.wait(sleep_time)
                continue

        for spec in due_specs:
            if stop.is_set():
                break
            outcome = execute_cycle(
                spec,
                paths=paths,
                builder_options=builder_options,
                query_client_factory=factory,
                stop_event=stop,
                multi_query=multi_query,
            )
            if history is not None:
                try:
                    history.append(outcome)
                except OSError as e:
                    logger.error(f"Run history update failed: {e}")

            if outcome.result == CycleResult.FAILED:
                any_failed = True
                if exit_on_error:
                    logger.error(f"[Backfill Worker] exiting after failed cycle [{spec.name}]")
                    return 1

            scheduled = reschedule(datetime.now(timezone.utc), spec, next_run_by_name)
            if not once:
                logger.info(
                    f"[Scheduler] [{spec.name}] next run at "
                    f"{scheduled.strftime('%Y-%m-%d %H:%M:%S')}"
                )

        if once:
            break

    logger.info("[Backfill Worker] stopped.")
    return 1 if (once and any_failed) else 0


def _default_run_log_path(tmp_prefix: str) -> Path:
    if tmp_prefix.endswith(os.sep):
        return Path(tmp_prefix) / RUN_LOG_FILE_NAME
    return Path(tmp_prefix).parent / RUN_LOG_FILE_NAME


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Periodically run Athena queries and merge the results into a "
            "Prometheus TSDB directory."
        )
    )
    parser.add_argument(
        "--config.file",
        dest="config_file",
        default=worker_config.DEFAULT_CONFIG_FILE,
        help="Configuration file path (default: BACKFILL_CONFIG_FILE or ./backfill.yml).",
    )
    parser.add_argument(
        "--tsdb.path",
        dest="tsdb_path",
        default=worker_config.DEFAULT_TSDB_PATH,
        help="Destination Prometheus TSDB path. Must already exist.",
    )
    parser.add_argument(
        "--tsdb.tmp.path",
        dest="tsdb_tmp_path",
        default=worker_config.DEFAULT_TSDB_TMP_PATH,
        help="Prefix of per-cycle temporary block paths.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle per query immediately and exit.",
    )
    parser.add_argument(
        "--exit-on-error",
        action="store_true",
        help="Exit with code 1 when a cycle fails instead of waiting for the next run.",
    )
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame):
        logger.warning(f"[Backfill Worker] signal {signum} received, stopping.")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = build_arg_parser().parse_args(argv)

    try:
        config = load_config(args.config_file)
        if not args.tsdb_path:
            raise ConfigError("--tsdb.path is required.")
        if not args.tsdb_tmp_path:
            raise ConfigError("--tsdb.tmp.path is required.")
        builder_options = worker_config.build_block_builder_options()
    except (ConfigError, ValueError) as exc:
        logger.error(f"[Backfill Worker] invalid configuration: {exc}")
        return 2

    run_log_path = (
        Path(worker_config.RUN_LOG_FILE)
        if worker_config.RUN_LOG_FILE
        else _default_run_log_path(args.tsdb_tmp_path)
    )
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    return run_worker(
        config,
        paths=WorkerPaths(dst_path=args.tsdb_path, tmp_prefix=args.tsdb_tmp_path),
        builder_options=builder_options,
        poll_policy=worker_config.build_poll_policy(),
        history=RunHistoryStore(run_log_path, window_size=worker_config.RUN_LOG_WINDOW_SIZE),
        stop_event=stop_event,
        once=args.once,
        exit_on_error=args.exit_on_error,
    )


if __name__ == "__main__":
    raise SystemExit(main())
