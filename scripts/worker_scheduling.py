"""
Aligned scheduling logic.

Why this module exists:
- pipeline_worker.py에서 query별 다음 실행 시각 계산을 분리해
  오케스트레이션 코드의 인지 부하를 줄인다.
- 이 함수들은 순수 계산 함수로 외부 의존이 없다.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from utils.config import QuerySpec
from utils.time_alignment import timer_delay


def next_run_at(now: datetime, spec: QuerySpec) -> datetime:
    """
    spec의 interval/offset 기준 다음 실행 시각.
    24시간 clamp가 적용된 timer_delay를 그대로 따른다.
    """
    return now + timer_delay(now, spec.interval, spec.offset)


def initialize_schedule(now: datetime, specs: list[QuerySpec]) -> dict[str, datetime]:
    """
    각 query 정의의 첫 실행 시각을 계산한다.

    Called from:
    - run_worker() 시작 시
    """
    return {spec.name: next_run_at(now, spec) for spec in specs}


def resolve_due_queries(
    *,
    now: datetime,
    specs: list[QuerySpec],
    next_run_by_name: dict[str, datetime],
) -> tuple[list[QuerySpec], timedelta | None]:
    """
    지금 실행해야 할 query 목록과 가장 가까운 다음 실행까지의 대기 시간을 계산한다.

    Called from:
    - run_worker() loop 시작부

    Note:
    - due query가 있으면 대기 시간은 None이다.
    - 실행 후 다음 시각 갱신은 `reschedule`이 cycle 종료 시점 시계로 한다.
      (cycle이 겹치지 않도록 cycle이 끝난 뒤에 다음 대기를 계산)
    """
    due: list[QuerySpec] = []
    for spec in specs:
        scheduled = next_run_by_name.get(spec.name)
        if scheduled is None:
            scheduled = next_run_at(now, spec)
            next_run_by_name[spec.name] = scheduled
        if scheduled <= now:
            due.append(spec)

    if due:
        return due, None
    earliest = min(next_run_by_name[spec.name] for spec in specs)
    return [], earliest - now


def reschedule(
    now: datetime, spec: QuerySpec, next_run_by_name: dict[str, datetime]
) -> datetime:
    """
    cycle 종료 후 spec의 다음 실행 시각을 다시 계산해 기록한다.
    """
    scheduled = next_run_at(now, spec)
    next_run_by_name[spec.name] = scheduled
    return scheduled
