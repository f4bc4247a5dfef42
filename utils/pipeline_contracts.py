"""
Backfill pipeline runtime contracts (DTO + Enum).

Why this module exists:
- query 상태/import 판정/cycle 결과를 문자열 대신 명시적인 타입으로 고정해
  런타임 오타와 분기 누락을 줄인다.
- worker 단계(poller/streamer/builder/importer) 사이에서 주고받는 데이터 형태를
  한 곳에 모아 단계 간 결합을 타입으로만 제한한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict

UTC_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
RESULT_PAGE_SIZE = 1000


def parse_utc_datetime(text: str | None) -> datetime | None:
    """
    UTC 문자열을 aware datetime으로 파싱한다.
    """
    if not isinstance(text, str) or not text:
        return None
    try:
        return datetime.strptime(text, UTC_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def format_utc_datetime(value: datetime | None) -> str | None:
    """
    datetime을 프로젝트 표준 UTC 문자열로 직렬화한다.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        normalized = value.replace(tzinfo=timezone.utc)
    else:
        normalized = value.astimezone(timezone.utc)
    return normalized.strftime(UTC_DATETIME_FORMAT)


class QueryState(str, Enum):
    """
    원격 query 실행 상태.
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_pending(self) -> bool:
        return self in {QueryState.QUEUED, QueryState.RUNNING}


class ImportDecision(str, Enum):
    """
    max series guard 판정 결과.
    """

    MERGE = "merge"
    SKIP = "skip"


class CycleResult(str, Enum):
    """
    cycle 1회 결과 코드.
    """

    MERGED = "merged"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TimeSeriesRecord:
    """
    query 결과 1 row에 대응하는 sample.

    timestamp/value는 reserved column에서, 나머지 column은 모두 label로 들어간다.
    """

    timestamp: int
    value: float
    labels: dict[str, str] = field(default_factory=dict)

    def series_key(self) -> tuple[tuple[str, str], ...]:
        return tuple(sorted(self.labels.items()))


@dataclass(frozen=True)
class ResultPage:
    """
    결과 page 1개. column 순서는 같은 query의 모든 page에서 동일하다.
    첫 page의 첫 row는 column 이름을 반복하는 header row다.
    """

    column_names: list[str]
    rows: list[list[str | None]]
    next_token: str | None = None

    @property
    def is_last(self) -> bool:
        return self.next_token is None


@dataclass(frozen=True)
class ExecutionHandle:
    """
    원격 query 실행 1건의 식별자. cycle 간 재사용하지 않는다.
    """

    query_execution_id: str
    spec_name: str
    submitted_at: datetime


@dataclass(frozen=True)
class ImportResult:
    """
    block import 결과 DTO.
    """

    decision: ImportDecision
    block_path: str
    series_counts: dict[str, int]
    moved: list[str] = field(default_factory=list)

    @property
    def max_series(self) -> int:
        return max(self.series_counts.values(), default=0)


class CycleOutcomePayload(TypedDict):
    """
    backfill_runs.json entries 내부 단일 row payload.
    """

    spec_name: str
    result: str
    started_at: str
    elapsed_seconds: float
    records: int
    block_path: str | None
    max_series: int | None
    error: str | None


@dataclass(frozen=True)
class CycleOutcome:
    """
    cycle 실행 결과 DTO.
    """

    spec_name: str
    result: CycleResult
    started_at: datetime
    elapsed_seconds: float
    records: int = 0
    block_path: str | None = None
    max_series: int | None = None
    error: str | None = None

    def to_payload(self) -> CycleOutcomePayload:
        return {
            "spec_name": self.spec_name,
            "result": self.result.value,
            "started_at": format_utc_datetime(self.started_at) or "",
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "records": self.records,
            "block_path": self.block_path,
            "max_series": self.max_series,
            "error": self.error,
        }


def parse_query_state(raw_state: str | None) -> QueryState | None:
    """
    Athena 상태 문자열을 Enum으로 정규화한다. 알 수 없는 값은 None.
    """
    if not isinstance(raw_state, str):
        return None
    try:
        return QueryState(raw_state.strip().upper())
    except ValueError:
        return None
