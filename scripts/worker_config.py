"""
Worker configuration constants.

Why this module exists:
- pipeline_worker.py의 환경변수 기반 설정값을 분리해 오케스트레이션 코드의 인지 부하를 줄인다.
- block builder 튜닝 값은 여기서 BlockBuilderOptions 하나로 묶어 주입한다.
  (프로세스 전역 mutable 상수로 두지 않는다)

Note:
- query 정의(region/query/interval...)는 YAML 설정 파일(utils.config)에서 읽는다.
  여기는 경로/튜닝/알림 같은 배포 환경 값만 둔다.
"""

import os
from datetime import timedelta

from utils.time_alignment import parse_duration
from workers.athena_query import PollPolicy
from workers.block_builder import BlockBuilderOptions


def _parse_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default

    try:
        value = int(float(raw))
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_optional_positive_int_env(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _parse_duration_env(name: str, default: timedelta) -> timedelta:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse_duration(raw)
    except ValueError:
        return default
    return value if value > timedelta(0) else default


# ── Paths / CLI defaults ──
DEFAULT_CONFIG_FILE = os.getenv("BACKFILL_CONFIG_FILE", "./backfill.yml")
DEFAULT_TSDB_PATH = os.getenv("TSDB_PATH", "")
DEFAULT_TSDB_TMP_PATH = os.getenv("TSDB_TMP_PATH", "")
RUN_LOG_FILE = os.getenv("BACKFILL_RUN_LOG", "")
RUN_LOG_WINDOW_SIZE = _parse_positive_int_env("BACKFILL_RUN_LOG_WINDOW_SIZE", 240)

# ── Alerting ──
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")

# ── Query polling ──
# 기본은 무제한 재시도. QUERY_POLL_MAX_ERRORS를 주면 연속 실패 상한이 생긴다.
QUERY_POLL_INTERVAL_SECONDS = 1.0
QUERY_POLL_MAX_ERRORS = _parse_optional_positive_int_env("QUERY_POLL_MAX_ERRORS")

# ── Block builder ──
BLOCK_DURATION = _parse_duration_env("BLOCK_DURATION", timedelta(hours=2))
MAX_SAMPLES_PER_APPENDER = _parse_positive_int_env("MAX_SAMPLES_PER_APPENDER", 100_000_000)
BLOCK_FLUSH_THRESHOLD = _parse_positive_int_env("BLOCK_FLUSH_THRESHOLD", 1_000)
RECORD_CHANNEL_CAPACITY = _parse_positive_int_env("RECORD_CHANNEL_CAPACITY", 128)
BLOCK_WRITER_CONCURRENCY = _parse_positive_int_env("BLOCK_WRITER_CONCURRENCY", 32)
EXPECTED_RECORDS_HINT = _parse_positive_int_env("EXPECTED_RECORDS_HINT", 20_000)
RECORD_TIMESTAMP_UNIT = os.getenv("RECORD_TIMESTAMP_UNIT", "ms").strip().lower()


def build_poll_policy() -> PollPolicy:
    return PollPolicy(
        interval_seconds=QUERY_POLL_INTERVAL_SECONDS,
        max_consecutive_errors=QUERY_POLL_MAX_ERRORS,
    )


def build_block_builder_options() -> BlockBuilderOptions:
    """
    환경변수 값으로 BlockBuilderOptions를 만든다.
    timestamp 단위 오설정은 ValueError로 시작 시점에 드러난다.
    """
    return BlockBuilderOptions(
        block_duration=BLOCK_DURATION,
        max_samples_per_appender=MAX_SAMPLES_PER_APPENDER,
        flush_threshold=BLOCK_FLUSH_THRESHOLD,
        channel_capacity=RECORD_CHANNEL_CAPACITY,
        concurrency=BLOCK_WRITER_CONCURRENCY,
        expected_records=EXPECTED_RECORDS_HINT,
        timestamp_unit=RECORD_TIMESTAMP_UNIT,
    )
