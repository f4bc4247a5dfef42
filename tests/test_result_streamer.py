import threading

import pytest

from utils.errors import ChannelClosed, RowParseError
from utils.pipeline_contracts import ResultPage
from workers.result_streamer import RecordChannel, StreamerThread, stream_results


class FakeQueryClient:
    def __init__(self, pages, error_after=None):
        self._pages = pages
        self._error_after = error_after

    def iter_result_pages(self, handle):
        for idx, page in enumerate(self._pages):
            if self._error_after is not None and idx == self._error_after:
                raise RuntimeError("get_query_results failed")
            yield page


class FakeHandle:
    query_execution_id = "qe-1"
    spec_name = "cpu"


COLUMNS = ["timestamp", "value", "job"]


def _two_pages():
    return [
        ResultPage(
            column_names=COLUMNS,
            rows=[COLUMNS, ["1", "1.0", "a"], ["2", "2.0", "a"], ["3", "3.0", "b"]],
            next_token="t1",
        ),
        ResultPage(column_names=COLUMNS, rows=[["4", "4.0", "b"], ["5", "5.0", "c"]]),
    ]


def _drain(channel):
    return [record for batch in channel for record in batch]


def test_stream_results_emits_records_in_order_then_closes():
    channel = RecordChannel(capacity=8)

    total = stream_results(FakeQueryClient(_two_pages()), FakeHandle(), channel)

    assert total == 5
    assert channel.closed is True
    records = _drain(channel)
    assert [r.timestamp for r in records] == [1, 2, 3, 4, 5]
    assert [r.labels["job"] for r in records] == ["a", "a", "b", "b", "c"]


def test_stream_results_closes_channel_for_header_only_result():
    channel = RecordChannel(capacity=2)
    page = ResultPage(column_names=COLUMNS, rows=[COLUMNS])

    total = stream_results(FakeQueryClient([page]), FakeHandle(), channel)

    assert total == 0
    assert _drain(channel) == []


def test_stream_results_forwards_parse_error_to_consumer():
    channel = RecordChannel(capacity=4)
    bad_page = ResultPage(column_names=COLUMNS, rows=[COLUMNS, ["oops", "1.0", "a"]])

    with pytest.raises(RowParseError):
        stream_results(FakeQueryClient([bad_page]), FakeHandle(), channel)

    with pytest.raises(RowParseError):
        _drain(channel)


def test_streamer_thread_records_fetch_error_and_consumer_sees_it():
    channel = RecordChannel(capacity=4)
    thread = StreamerThread(FakeQueryClient(_two_pages(), error_after=1), FakeHandle(), channel)
    thread.start()

    with pytest.raises(RuntimeError, match="get_query_results failed"):
        _drain(channel)
    thread.join(timeout=5)

    assert isinstance(thread.error, RuntimeError)


def test_channel_backpressure_blocks_until_consumer_reads():
    channel = RecordChannel(capacity=1)
    pages = [
        ResultPage(column_names=COLUMNS, rows=[COLUMNS, ["1", "1.0", "a"]], next_token="t"),
        ResultPage(column_names=COLUMNS, rows=[["2", "2.0", "a"]], next_token="t"),
        ResultPage(column_names=COLUMNS, rows=[["3", "3.0", "a"]]),
    ]
    thread = StreamerThread(FakeQueryClient(pages), FakeHandle(), channel)
    thread.start()

    records = _drain(channel)
    thread.join(timeout=5)

    assert [r.timestamp for r in records] == [1, 2, 3]
    assert thread.records == 3
    assert thread.error is None


def test_channel_abort_releases_blocked_producer():
    channel = RecordChannel(capacity=1)
    channel.put([])
    released = threading.Event()
    errors = []

    def _producer():
        try:
            channel.put([])
        except ChannelClosed as e:
            errors.append(e)
        released.set()

    worker = threading.Thread(target=_producer)
    worker.start()
    channel.abort()

    assert released.wait(timeout=5)
    worker.join(timeout=5)
    assert len(errors) == 1


def test_channel_rejects_second_close_and_put_after_close():
    channel = RecordChannel(capacity=2)
    channel.close()

    with pytest.raises(ChannelClosed):
        channel.close()
    with pytest.raises(ChannelClosed):
        channel.put([])


def test_channel_requires_positive_capacity():
    with pytest.raises(ValueError):
        RecordChannel(capacity=0)
