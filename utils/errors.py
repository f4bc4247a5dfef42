"""
Backfill error taxonomy.

Why this module exists:
- cycle을 중단시키는 실패를 단계별 타입으로 구분해
  orchestrator가 "cycle만 실패" / "프로세스 종료"를 일관되게 판단하게 한다.
- 메시지에 stage/경로/query id를 포함해 재실행 없이 원인 파악이 가능하게 한다.
"""

from __future__ import annotations


class BackfillError(Exception):
    """모든 backfill 실패의 공통 base."""

    stage = "backfill"


class ConfigError(BackfillError):
    """설정 파일/duration 형식 오류. 시작 시점에서만 발생한다."""

    stage = "config"


class SubmissionError(BackfillError):
    stage = "submit"

    def __init__(self, spec_name: str, reason: str):
        self.spec_name = spec_name
        self.reason = reason
        super().__init__(f"[{spec_name}] query submission rejected: {reason}")


class QueryFailedError(BackfillError):
    """원격 query가 FAILED/CANCELLED 종료 상태에 도달했다."""

    stage = "poll"

    def __init__(self, query_execution_id: str, state: str, reason: str | None):
        self.query_execution_id = query_execution_id
        self.state = state
        self.reason = reason
        super().__init__(
            f"query {query_execution_id} finished with state={state}"
            + (f" reason={reason}" if reason else "")
        )


class PollError(BackfillError):
    """PollPolicy의 연속 실패 상한을 넘겼다."""

    stage = "poll"

    def __init__(self, query_execution_id: str, attempts: int, last_error: str):
        self.query_execution_id = query_execution_id
        self.attempts = attempts
        super().__init__(
            f"query {query_execution_id} status check failed {attempts} times in a row: "
            f"{last_error}"
        )


class CycleCancelled(BackfillError):
    stage = "cancel"


class RowParseError(BackfillError):
    """reserved column(timestamp/value) 파싱 실패 또는 누락."""

    stage = "parse"

    def __init__(self, column: str, raw_value: str | None, detail: str = ""):
        self.column = column
        self.raw_value = raw_value
        if raw_value is None:
            message = f"reserved column {column!r} is missing or NULL"
        else:
            message = f"cannot parse column {column!r} value {raw_value!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ChannelClosed(BackfillError):
    stage = "stream"


class BlockImportError(BackfillError):
    stage = "import"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}, path = {path}")
