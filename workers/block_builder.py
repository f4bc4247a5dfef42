"""
Block builder (consumer side).

Why this module exists:
- streamer가 채우는 RecordChannel을 main cycle path에서 끝까지 비우고,
  임시 경로에 Prometheus block 디렉터리 구조(<ULID>/meta.json + chunks/)를 만든다.
- 튜닝 상수(block 길이, appender당 sample 상한, spill 임계치, 병렬도)는
  모듈 전역 변수가 아니라 BlockBuilderOptions로만 주입한다.

Layout (block_path):
- wal/          수신 batch를 flush_threshold마다 parquet segment로 spill
- chunks_head/  head 영역 (builder 전용, import 대상 아님)
- <ULID>/       block_duration 정렬 window마다 sub-block 1개
"""

from __future__ import annotations

import json
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import pandas as pd

from utils.file_io import atomic_write_json
from utils.logger import get_logger
from utils.pipeline_contracts import TimeSeriesRecord
from workers.result_streamer import RecordChannel

logger = get_logger(__name__)

WAL_DIR_NAME = "wal"
CHUNKS_HEAD_DIR_NAME = "chunks_head"
META_FILE_NAME = "meta.json"
BLOCK_META_VERSION = 1
_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_SEGMENT_COLUMNS = ["series", "timestamp", "value"]
VALID_TIMESTAMP_UNITS = {"ms", "s"}


@dataclass(frozen=True)
class BlockBuilderOptions:
    """
    block builder 튜닝 값.

    - block_duration: sub-block 1개가 덮는 시간 폭 (epoch 정렬)
    - max_samples_per_appender: chunk 파일 1개당 sample 상한
    - flush_threshold: 메모리 buffer가 이 개수에 닿으면 wal segment로 spill
    - channel_capacity: RecordChannel 용량 (batch 단위)
    - concurrency: sub-block 병렬 writer 수
    - expected_records: 예상 record 수 (진행 로그 간격)
    - timestamp_unit: timestamp column 단위 ("ms" 또는 "s")
    """

    block_duration: timedelta = timedelta(hours=2)
    max_samples_per_appender: int = 100_000_000
    flush_threshold: int = 1_000
    channel_capacity: int = 128
    concurrency: int = 32
    expected_records: int = 20_000
    timestamp_unit: str = "ms"

    def __post_init__(self):
        if self.block_duration <= timedelta(0):
            raise ValueError("block_duration must be positive.")
        for name in (
            "max_samples_per_appender",
            "flush_threshold",
            "channel_capacity",
            "concurrency",
            "expected_records",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive.")
        if self.timestamp_unit not in VALID_TIMESTAMP_UNITS:
            raise ValueError(
                f"timestamp_unit must be one of {sorted(VALID_TIMESTAMP_UNITS)}."
            )

    @property
    def block_duration_ms(self) -> int:
        return int(self.block_duration / timedelta(milliseconds=1))


@dataclass(frozen=True)
class BuildSummary:
    block_path: str
    records: int
    series_counts: dict[str, int] = field(default_factory=dict)

    @property
    def block_ids(self) -> list[str]:
        return sorted(self.series_counts)


def new_block_ulid(timestamp_ms: int | None = None) -> str:
    """
    Prometheus block 디렉터리 이름으로 쓰는 ULID(26자 Crockford base32)를 만든다.
    상위 48bit는 ms timestamp, 하위 80bit는 난수.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    value = ((timestamp_ms & ((1 << 48) - 1)) << 80) | int.from_bytes(
        os.urandom(10), "big"
    )
    chars = []
    for _ in range(26):
        chars.append(_CROCKFORD[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def series_key(labels: dict[str, str]) -> str:
    return json.dumps(labels, sort_keys=True, separators=(",", ":"))


class BlockBuilder:
    def __init__(
        self,
        options: BlockBuilderOptions,
        channel: RecordChannel,
        block_path: str | Path,
    ):
        self._options = options
        self._channel = channel
        self._block_path = Path(block_path)
        self._wal_dir = self._block_path / WAL_DIR_NAME
        self._buffer: list[tuple[str, int, float]] = []
        self._segments: list[Path] = []
        self._records = 0

    @property
    def block_path(self) -> Path:
        return self._block_path

    def _to_ms(self, timestamp: int) -> int:
        if self._options.timestamp_unit == "s":
            return timestamp * 1000
        return timestamp

    def _append(self, batch: list[TimeSeriesRecord]) -> None:
        for record in batch:
            self._buffer.append(
                (series_key(record.labels), self._to_ms(record.timestamp), record.value)
            )
        previous = self._records
        self._records += len(batch)
        hint = self._options.expected_records
        if self._records // hint > previous // hint:
            logger.info(
                "[Block Builder] received %s records (expected~%s) path=%s",
                self._records,
                hint,
                self._block_path,
            )
        if len(self._buffer) >= self._options.flush_threshold:
            self._spill()

    def _spill(self) -> None:
        """
        메모리 buffer를 wal segment(parquet)로 내려쓰고 비운다.
        """
        if not self._buffer:
            return
        segment_path = self._wal_dir / f"{len(self._segments) + 1:08d}.parquet"
        frame = pd.DataFrame(self._buffer, columns=_SEGMENT_COLUMNS)
        frame.to_parquet(segment_path, index=False)
        self._segments.append(segment_path)
        logger.debug(
            "[Block Builder] spilled %s samples to %s", len(self._buffer), segment_path
        )
        self._buffer = []

    def _load_samples(self) -> pd.DataFrame:
        frames = [pd.read_parquet(path) for path in self._segments]
        if not frames:
            return pd.DataFrame(columns=_SEGMENT_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    def _write_sub_block(self, frame: pd.DataFrame) -> tuple[str, int]:
        """
        window 1개의 sample로 sub-block 디렉터리를 만든다.

        Called from:
        - `run` (ThreadPoolExecutor, 최대 options.concurrency 병렬)
        """
        min_time = int(frame["timestamp"].min())
        max_time = int(frame["timestamp"].max()) + 1
        ulid = new_block_ulid(min_time if min_time >= 0 else None)
        block_dir = self._block_path / ulid
        chunks_dir = block_dir / "chunks"
        chunks_dir.mkdir(parents=True, exist_ok=False)

        ordered = frame.sort_values(by=["series", "timestamp"], kind="stable")
        ordered = ordered.reset_index(drop=True)
        per_chunk = self._options.max_samples_per_appender
        num_chunks = 0
        for start in range(0, len(ordered), per_chunk):
            num_chunks += 1
            ordered.iloc[start:start + per_chunk].to_parquet(
                chunks_dir / f"{num_chunks:06d}.parquet", index=False
            )

        num_series = int(ordered["series"].nunique())
        # meta.json은 마지막에 쓴다. meta가 있는 디렉터리만 완성된 block으로 본다.
        atomic_write_json(
            block_dir / META_FILE_NAME,
            {
                "ulid": ulid,
                "minTime": min_time,
                "maxTime": max_time,
                "stats": {
                    "numSamples": int(len(ordered)),
                    "numSeries": num_series,
                    "numChunks": num_chunks,
                },
                "compaction": {"level": 1, "sources": [ulid]},
                "version": BLOCK_META_VERSION,
            },
            indent=2,
        )
        return ulid, num_series

    def run(self) -> BuildSummary:
        """
        channel이 닫힐 때까지 record를 받고 block을 완성한다.

        Called from:
        - `scripts.pipeline_worker.run_cycle` (main cycle path)

        Raises:
        - streamer가 channel.fail로 넘긴 예외, 또는 디스크 쓰기 오류.
          어느 경우든 producer의 block된 put을 풀기 위해 channel.abort()를 호출한다.
        """
        self._block_path.mkdir(parents=True, exist_ok=False)
        self._wal_dir.mkdir()
        (self._block_path / CHUNKS_HEAD_DIR_NAME).mkdir()

        try:
            for batch in self._channel:
                self._append(batch)
            self._spill()
        except Exception:
            self._channel.abort()
            raise

        samples = self._load_samples()
        if samples.empty:
            logger.info("[Block Builder] empty stream, no sub-block written path=%s", self._block_path)
            return BuildSummary(block_path=str(self._block_path), records=0)

        window_ms = self._options.block_duration_ms
        windows = samples["timestamp"] // window_ms
        groups = [frame for _, frame in samples.groupby(windows, sort=True)]
        workers = min(self._options.concurrency, len(groups))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="block-writer"
        ) as executor:
            results = list(executor.map(self._write_sub_block, groups))

        series_counts = dict(results)
        logger.info(
            "[Block Builder] built %s sub-block(s) records=%s path=%s",
            len(series_counts),
            self._records,
            self._block_path,
        )
        return BuildSummary(
            block_path=str(self._block_path),
            records=self._records,
            series_counts=series_counts,
        )
