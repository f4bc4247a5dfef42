"""
Athena query submission / polling / paging.

Why this module exists:
- 원격 query 실행(submit -> 상태 polling -> 결과 page 조회)을 boto3 호출 단위로 감싸
  orchestrator와 streamer가 Athena 응답 형식을 몰라도 되게 한다.
- polling 중 일시적 오류는 정해진 주기로 재시도하고,
  재시도 상한은 PollPolicy로 명시한다(기본값은 무제한).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

import boto3
import botocore.session
from botocore.config import Config as BotoConfig
from botocore.credentials import AssumeRoleCredentialFetcher, RefreshableCredentials
from botocore.exceptions import BotoCoreError, ClientError

from utils.config import QuerySpec
from utils.errors import CycleCancelled, PollError, QueryFailedError, SubmissionError
from utils.logger import get_logger
from utils.pipeline_contracts import (
    RESULT_PAGE_SIZE,
    ExecutionHandle,
    QueryState,
    ResultPage,
    parse_query_state,
)

logger = get_logger(__name__)

ROLE_SESSION_NAME = "athena-backfill"


@dataclass(frozen=True)
class PollPolicy:
    """
    상태 polling 정책.

    - interval_seconds: 고정 polling 주기 (backoff 증가 없음)
    - max_consecutive_errors: 상태 조회 연속 실패 허용 횟수. None이면 무제한.
    """

    interval_seconds: float = 1.0
    max_consecutive_errors: int | None = None


def _describe_client_error(error: Exception) -> str:
    if isinstance(error, ClientError):
        detail = error.response.get("Error", {})
        code = detail.get("Code", "")
        message = detail.get("Message", "")
        return f"{code}: {message}" if code else str(error)
    return str(error)


def build_role_credentials(
    base_session, spec: QuerySpec
) -> RefreshableCredentials:
    """
    assumeRoleArn용 자동 갱신 자격증명을 만든다.

    Why:
    - STS 임시 자격증명은 기본 1시간 뒤 만료된다. polling/paging이 그보다 길어질 수 있으므로
      만료 전에 assume_role을 다시 호출하는 RefreshableCredentials로 감싼다.
    - 첫 발급은 여기서 즉시 한다. role 설정 오류는 submit 단계 실패로 드러난다.

    Raises:
    - SubmissionError: source 자격증명이 없거나 assume_role이 거절된 경우
    """
    source_credentials = base_session.get_credentials()
    if source_credentials is None:
        raise SubmissionError(
            spec.name,
            f"assume role {spec.assume_role_arn} failed: no source credentials",
        )

    fetcher = AssumeRoleCredentialFetcher(
        client_creator=base_session.client,
        source_credentials=source_credentials,
        role_arn=spec.assume_role_arn,
        extra_args={"RoleSessionName": ROLE_SESSION_NAME},
    )
    try:
        metadata = fetcher.fetch_credentials()
    except (ClientError, BotoCoreError) as e:
        raise SubmissionError(
            spec.name,
            f"assume role {spec.assume_role_arn} failed: {_describe_client_error(e)}",
        ) from e
    return RefreshableCredentials.create_from_metadata(
        metadata=metadata,
        refresh_using=fetcher.fetch_credentials,
        method="assume-role",
    )


def build_athena_client(spec: QuerySpec, base_session=None):
    """
    QuerySpec의 region/role 설정으로 Athena client를 만든다.

    Called from:
    - `AthenaQueryClient.from_spec` (cycle마다 1회)

    Why:
    - assumeRoleArn이 있으면 자동 갱신되는 STS 자격증명으로 session을 만들고,
      없으면 기본 credential chain을 그대로 쓴다.
    """
    boto_config = BotoConfig(retries={"max_attempts": 5, "mode": "standard"})
    base = base_session or boto3.Session(region_name=spec.region)
    if not spec.assume_role_arn:
        return base.client("athena", region_name=spec.region, config=boto_config)

    role_session = botocore.session.Session()
    role_session._credentials = build_role_credentials(base, spec)
    session = boto3.Session(botocore_session=role_session, region_name=spec.region)
    return session.client("athena", region_name=spec.region, config=boto_config)


def to_result_page(response: dict[str, Any]) -> ResultPage:
    """
    get_query_results 응답을 ResultPage로 변환한다.
    VarCharValue가 없는 Datum(NULL)은 None으로 둔다.
    """
    result_set = response.get("ResultSet", {})
    column_info = result_set.get("ResultSetMetadata", {}).get("ColumnInfo", [])
    column_names = [column["Name"] for column in column_info]
    rows = [
        [datum.get("VarCharValue") for datum in row.get("Data", [])]
        for row in result_set.get("Rows", [])
    ]
    return ResultPage(
        column_names=column_names,
        rows=rows,
        next_token=response.get("NextToken") or None,
    )


class AthenaQueryClient:
    """
    Athena query 1건의 submit/poll/page 조회 계층.

    Usage:
        client = AthenaQueryClient.from_spec(spec)
        handle = client.submit(spec, stop_event)
        client.await_completion(handle, stop_event)
        for page in client.iter_result_pages(handle):
            ...
    """

    def __init__(self, athena_client, poll_policy: PollPolicy | None = None):
        self._client = athena_client
        self._poll_policy = poll_policy or PollPolicy()

    @classmethod
    def from_spec(
        cls, spec: QuerySpec, poll_policy: PollPolicy | None = None
    ) -> "AthenaQueryClient":
        return cls(build_athena_client(spec), poll_policy=poll_policy)

    def submit(
        self, spec: QuerySpec, stop_event: threading.Event | None = None
    ) -> ExecutionHandle:
        """
        query를 제출하고 실행 handle을 반환한다.

        Raises:
        - CycleCancelled: 제출 전에 stop_event가 set된 경우
        - SubmissionError: Athena가 요청을 거절한 경우(query/workgroup/권한)
        """
        if stop_event is not None and stop_event.is_set():
            raise CycleCancelled(f"[{spec.name}] cancelled before submission")

        try:
            response = self._client.start_query_execution(
                QueryString=spec.query,
                WorkGroup=spec.workgroup,
            )
        except (ClientError, BotoCoreError) as e:
            raise SubmissionError(spec.name, _describe_client_error(e)) from e

        handle = ExecutionHandle(
            query_execution_id=response["QueryExecutionId"],
            spec_name=spec.name,
            submitted_at=datetime.now(timezone.utc),
        )
        logger.info(
            "[%s] query submitted id=%s workgroup=%s",
            spec.name,
            handle.query_execution_id,
            spec.workgroup,
        )
        return handle

    def _stop_remote(self, handle: ExecutionHandle) -> None:
        try:
            self._client.stop_query_execution(
                QueryExecutionId=handle.query_execution_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "[%s] stop_query_execution failed id=%s: %s",
                handle.spec_name,
                handle.query_execution_id,
                _describe_client_error(e),
            )

    def await_completion(
        self, handle: ExecutionHandle, stop_event: threading.Event | None = None
    ) -> None:
        """
        query가 종료 상태가 될 때까지 고정 주기로 polling한다.

        Called from:
        - `scripts.pipeline_worker.run_cycle`

        Rules:
        - 상태 조회 자체의 실패는 같은 주기로 재시도한다 (상한은 PollPolicy).
        - QUEUED/RUNNING은 계속 대기, SUCCEEDED는 반환.
        - FAILED/CANCELLED(그 외 상태 포함)는 QueryFailedError. 결과 page는 읽지 않는다.
        - deadline은 두지 않는다. 멈춘 원격 query는 cycle을 계속 붙잡는다.
        """
        waiter = stop_event or threading.Event()
        interval = max(0.0, self._poll_policy.interval_seconds)
        consecutive_errors = 0

        while True:
            if waiter.is_set():
                self._stop_remote(handle)
                raise CycleCancelled(
                    f"[{handle.spec_name}] cancelled while polling "
                    f"id={handle.query_execution_id}"
                )

            try:
                response = self._client.get_query_execution(
                    QueryExecutionId=handle.query_execution_id
                )
            except (ClientError, BotoCoreError) as e:
                consecutive_errors += 1
                limit = self._poll_policy.max_consecutive_errors
                logger.warning(
                    "[%s] status check failed id=%s attempt=%s: %s",
                    handle.spec_name,
                    handle.query_execution_id,
                    consecutive_errors,
                    _describe_client_error(e),
                )
                if limit is not None and consecutive_errors >= limit:
                    raise PollError(
                        handle.query_execution_id,
                        consecutive_errors,
                        _describe_client_error(e),
                    ) from e
                waiter.wait(interval)
                continue

            consecutive_errors = 0
            status = response.get("QueryExecution", {}).get("Status", {})
            raw_state = status.get("State")
            state = parse_query_state(raw_state)
            if state is not None and state.is_pending:
                waiter.wait(interval)
                continue
            if state == QueryState.SUCCEEDED:
                logger.info(
                    "[%s] query succeeded id=%s",
                    handle.spec_name,
                    handle.query_execution_id,
                )
                return

            raise QueryFailedError(
                handle.query_execution_id,
                str(raw_state),
                status.get("StateChangeReason"),
            )

    def iter_result_pages(self, handle: ExecutionHandle) -> Iterator[ResultPage]:
        """
        완료된 query 결과를 page 단위(최대 1000 row)로 순서대로 내보낸다.
        NextToken이 없으면 종료한다.
        """
        next_token: str | None = None
        while True:
            request: dict[str, Any] = {
                "QueryExecutionId": handle.query_execution_id,
                "MaxResults": RESULT_PAGE_SIZE,
            }
            if next_token:
                request["NextToken"] = next_token
            page = to_result_page(self._client.get_query_results(**request))
            yield page
            if page.is_last:
                return
            next_token = page.next_token
