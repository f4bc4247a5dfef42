"""
Result streaming (producer side).

Why this module exists:
- 완료된 query 결과를 page 단위로 읽어 parse한 뒤 bounded channel로 흘려
  결과 크기와 무관하게 메모리 사용량을 channel 용량으로 제한한다.
- 결과 조회/파싱(streamer thread)과 block 생성(main cycle path)이 동시에 진행되고,
  속도 조절은 channel backpressure 하나로만 한다.
"""

from __future__ import annotations

import queue
import threading
from typing import Iterator

from utils.errors import ChannelClosed
from utils.logger import get_logger
from utils.pipeline_contracts import ExecutionHandle, TimeSeriesRecord
from workers.row_parser import parse_page

logger = get_logger(__name__)

_END = object()
_PUT_RETRY_SECONDS = 0.1


class RecordChannel:
    """
    record batch용 bounded channel.

    - put(batch): 가득 차면 consumer가 비울 때까지 block한다.
    - close(): end-of-stream. 정확히 1회만 허용.
    - fail(exc): 비정상 종료. consumer 쪽 iteration이 exc를 다시 raise한다.
    - abort(): consumer가 더 읽지 않을 때 producer의 block된 put을 풀어준다.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("Channel capacity must be positive.")
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = False
        self._aborted = threading.Event()
        self._error: BaseException | None = None
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _blocking_put(self, item) -> None:
        while True:
            if self._aborted.is_set():
                raise ChannelClosed("channel aborted by consumer")
            try:
                self._queue.put(item, timeout=_PUT_RETRY_SECONDS)
                return
            except queue.Full:
                continue

    def put(self, batch: list[TimeSeriesRecord]) -> None:
        if self._closed:
            raise ChannelClosed("put on closed channel")
        self._blocking_put(batch)

    def _finish(self, error: BaseException | None) -> None:
        with self._lock:
            if self._closed:
                raise ChannelClosed("channel already closed")
            self._closed = True
            self._error = error
        self._blocking_put(_END)

    def close(self) -> None:
        self._finish(None)

    def fail(self, error: BaseException) -> None:
        self._finish(error)

    def abort(self) -> None:
        self._aborted.set()

    def __iter__(self) -> Iterator[list[TimeSeriesRecord]]:
        while True:
            item = self._queue.get()
            if item is _END:
                if self._error is not None:
                    raise self._error
                return
            yield item


def stream_results(query_client, handle: ExecutionHandle, channel: RecordChannel) -> int:
    """
    결과 page를 순서대로 parse해 channel에 넣고, 마지막에 channel을 닫는다.

    Called from:
    - `StreamerThread.run`

    Rules:
    - 첫 page만 header row를 건너뛴다.
    - page 순서, page 내부 row 순서를 그대로 유지한다(재정렬/중복 제거 없음).
    - 결과가 0 row여도 channel은 정상 close한다.
    - parse/조회 오류는 channel.fail로 consumer에 전달하고 그대로 raise한다.
    """
    total = 0
    page_count = 0
    try:
        for page in query_client.iter_result_pages(handle):
            batch = parse_page(page, is_first_page=page_count == 0)
            page_count += 1
            channel.put(batch)
            total += len(batch)
    except ChannelClosed:
        # consumer가 먼저 포기한 경우. 닫을 대상이 없다.
        raise
    except Exception as e:
        logger.error(
            "[%s] result streaming failed id=%s page=%s: %s",
            handle.spec_name,
            handle.query_execution_id,
            page_count,
            e,
        )
        channel.fail(e)
        raise

    channel.close()
    logger.info(
        "[%s] result streaming finished id=%s pages=%s records=%s",
        handle.spec_name,
        handle.query_execution_id,
        page_count,
        total,
    )
    return total


class StreamerThread(threading.Thread):
    """
    cycle마다 1개 생성되는 producer thread.
    """

    def __init__(self, query_client, handle: ExecutionHandle, channel: RecordChannel):
        super().__init__(name=f"streamer-{handle.spec_name}", daemon=True)
        self._query_client = query_client
        self._handle = handle
        self._channel = channel
        self.records = 0
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            self.records = stream_results(self._query_client, self._handle, self._channel)
        except Exception as e:
            # thread 경계. 판단은 join한 orchestrator가 한다.
            self.error = e
