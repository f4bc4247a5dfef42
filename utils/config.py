"""
Backfill query definition loader.

Why this module exists:
- YAML 설정 파일을 시작 시점에 1회 읽어 불변 QuerySpec 목록으로 고정한다.
- 형식 오류(파일/키/duration)는 전부 ConfigError로 모아 프로세스 시작 단계에서 종료시킨다.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from utils.errors import ConfigError
from utils.time_alignment import parse_duration

DEFAULT_OFFSET = "0s"
QUERY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_REQUIRED_KEYS = ("region", "query", "workgroup", "interval")


@dataclass(frozen=True)
class QuerySpec:
    name: str
    region: str
    query: str
    workgroup: str
    interval: timedelta
    offset: timedelta = timedelta(0)
    assume_role_arn: str | None = None
    max_series: int = 0

    @property
    def has_series_guard(self) -> bool:
        return self.max_series > 0


@dataclass(frozen=True)
class BackfillConfig:
    queries: list[QuerySpec]


def _require_text(raw: dict[str, Any], key: str, *, label: str) -> str:
    value = raw.get(key)
    if value is None:
        raise ConfigError(f"{label}: missing required key {key!r}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label}: key {key!r} must not be empty.")
    return text


def _parse_duration_field(raw_value: Any, *, key: str, label: str) -> timedelta:
    try:
        return parse_duration(str(raw_value))
    except ValueError as e:
        raise ConfigError(f"{label}: invalid {key} {raw_value!r}: {e}") from e


def _parse_max_series(raw_value: Any, *, label: str) -> int:
    """
    maxSeries를 정수로 정규화한다. 없음/0은 무제한.
    """
    if raw_value is None:
        return 0
    if isinstance(raw_value, bool):
        raise ConfigError(f"{label}: maxSeries must be an integer, got {raw_value!r}.")
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"{label}: maxSeries must be an integer, got {raw_value!r}."
        ) from e
    if value < 0:
        raise ConfigError(f"{label}: maxSeries must not be negative, got {value}.")
    return value


def parse_query_spec(raw: Any, *, index: int) -> QuerySpec:
    """
    queries[index] 항목 1개를 QuerySpec으로 변환한다.

    Called from:
    - `parse_config`
    """
    label = f"queries[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{label}: expected a mapping, got {type(raw).__name__}.")

    for key in _REQUIRED_KEYS:
        _require_text(raw, key, label=label)

    name = str(raw.get("name") or f"query{index}").strip()
    if not QUERY_NAME_PATTERN.fullmatch(name):
        raise ConfigError(
            f"{label}: name {name!r} may only contain letters, digits, '_', '.', '-'."
        )

    interval = _parse_duration_field(raw["interval"], key="interval", label=label)
    if interval <= timedelta(0):
        raise ConfigError(f"{label}: interval must be positive, got {raw['interval']!r}.")

    raw_offset = raw.get("offset")
    if raw_offset is None or str(raw_offset).strip() == "":
        raw_offset = DEFAULT_OFFSET
    offset = _parse_duration_field(raw_offset, key="offset", label=label)

    assume_role_arn = raw.get("assumeRoleArn")
    return QuerySpec(
        name=name,
        region=_require_text(raw, "region", label=label),
        query=_require_text(raw, "query", label=label),
        workgroup=_require_text(raw, "workgroup", label=label),
        interval=interval,
        offset=offset,
        assume_role_arn=str(assume_role_arn).strip() if assume_role_arn else None,
        max_series=_parse_max_series(raw.get("maxSeries"), label=label),
    )


def parse_config(payload: Any) -> BackfillConfig:
    if not isinstance(payload, dict):
        raise ConfigError("Config root must be a mapping with a 'queries' list.")

    raw_queries = payload.get("queries")
    if not isinstance(raw_queries, list) or not raw_queries:
        raise ConfigError("Config must define at least one entry under 'queries'.")

    queries = [parse_query_spec(raw, index=idx) for idx, raw in enumerate(raw_queries)]
    seen: set[str] = set()
    for spec in queries:
        if spec.name in seen:
            raise ConfigError(f"Duplicate query name: {spec.name!r}.")
        seen.add(spec.name)
    return BackfillConfig(queries=queries)


def load_config(path: str | Path) -> BackfillConfig:
    """
    YAML 설정 파일을 읽어 BackfillConfig를 반환한다.

    Called from:
    - `scripts.pipeline_worker.main` 시작 시 1회
    """
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            payload = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {config_path}: {e}") from e
    return parse_config(payload)
