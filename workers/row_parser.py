"""
Row parsing logic.

Why this module exists:
- Athena 결과 row(문자열 cell 목록)를 TimeSeriesRecord로 바꾸는 순수 함수만 모아
  네트워크/스레드 없이 테스트할 수 있게 한다.
- reserved column 파싱 실패는 row skip이 아니라 cycle 실패로 올려야 하므로
  예외 타입(RowParseError)을 여기서 고정한다.
"""

from __future__ import annotations

import re

from utils.errors import RowParseError
from utils.pipeline_contracts import ResultPage, TimeSeriesRecord

TIMESTAMP_COLUMN = "timestamp"
VALUE_COLUMN = "value"
RESERVED_COLUMNS = (TIMESTAMP_COLUMN, VALUE_COLUMN)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_DECIMAL_INT_PATTERN = re.compile(r"^[+-]?[0-9]+$")


def column_index(column_names: list[str]) -> dict[str, int]:
    """
    column 이름 -> 위치 매핑. 중복 이름은 마지막 위치가 남는다.
    """
    return {name: idx for idx, name in enumerate(column_names)}


def parse_timestamp(raw: str | None) -> int:
    if raw is None:
        raise RowParseError(TIMESTAMP_COLUMN, None)
    if not _DECIMAL_INT_PATTERN.fullmatch(raw):
        raise RowParseError(TIMESTAMP_COLUMN, raw, "expected base-10 integer")
    parsed = int(raw, 10)
    if not _INT64_MIN <= parsed <= _INT64_MAX:
        raise RowParseError(TIMESTAMP_COLUMN, raw, "out of signed 64-bit range")
    return parsed


def parse_value(raw: str | None) -> float:
    if raw is None:
        raise RowParseError(VALUE_COLUMN, None)
    # float()는 앞뒤 공백, "1_0" 형태, non-ASCII 숫자를 허용하므로 먼저 걸러낸다.
    if raw != raw.strip() or "_" in raw or not raw or not raw.isascii():
        raise RowParseError(VALUE_COLUMN, raw, "expected floating point number")
    try:
        return float(raw)
    except ValueError as e:
        raise RowParseError(VALUE_COLUMN, raw, "expected floating point number") from e


def parse_row(column_names: list[str], cells: list[str | None]) -> TimeSeriesRecord:
    """
    row 1개를 TimeSeriesRecord로 변환한다.

    Called from:
    - `parse_page`

    Rules:
    - column 이름은 위치로 결정하고 대소문자 구분 exact match만 한다.
    - `timestamp` -> signed int64, `value` -> float, 나머지는 label(raw string).
    - 같은 label 이름이 여러 번 나오면 마지막 값이 남는다.
    """
    if len(cells) > len(column_names):
        raise RowParseError(
            f"#{len(column_names)}",
            cells[len(column_names)],
            f"row has {len(cells)} cells but only {len(column_names)} columns",
        )

    timestamp: int | None = None
    value: float | None = None
    labels: dict[str, str] = {}
    for idx, cell in enumerate(cells):
        name = column_names[idx]
        if name == TIMESTAMP_COLUMN:
            timestamp = parse_timestamp(cell)
        elif name == VALUE_COLUMN:
            value = parse_value(cell)
        else:
            # NULL label은 빈 문자열로 둔다 (Prometheus에서 빈 label은 없는 label).
            labels[name] = cell if cell is not None else ""

    if timestamp is None:
        raise RowParseError(TIMESTAMP_COLUMN, None)
    if value is None:
        raise RowParseError(VALUE_COLUMN, None)
    return TimeSeriesRecord(timestamp=timestamp, value=value, labels=labels)


def parse_page(page: ResultPage, is_first_page: bool) -> list[TimeSeriesRecord]:
    """
    page 1개를 record 목록으로 변환한다. 첫 page는 header row를 건너뛴다.

    Called from:
    - `workers.result_streamer.stream_results`
    """
    rows = page.rows[1:] if is_first_page else page.rows
    return [parse_row(page.column_names, row) for row in rows]
