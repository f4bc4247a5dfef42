"""
Backfill run history store.

Why this exists:
- 로그만으로는 "어느 cycle이 merge/skip/failed 됐는지"를 운영자가 빠르게 보기 어렵다.
- cycle 결과를 query 이름별로 최근 N개만 JSON 파일에 남긴다.
- 읽기 실패 시 빈 이력으로 시작해 워커가 멈추지 않도록 한다.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

from utils.file_io import atomic_write_json
from utils.logger import get_logger
from utils.pipeline_contracts import CycleOutcome, format_utc_datetime

logger = get_logger(__name__)

DEFAULT_WINDOW_SIZE = 240


class RunHistoryStore:
    def __init__(self, path: str | Path, window_size: int = DEFAULT_WINDOW_SIZE):
        """
        run history 저장소를 초기화한다.

        Called from:
        - `scripts.pipeline_worker.run_worker` 시작 시 1회
        """
        self._path = Path(path)
        self._window_size = max(1, window_size)
        self._entries = self._load_entries()

    def _load_entries(self) -> list[dict]:
        if not self._path.exists():
            return []

        try:
            with open(self._path, "r") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load run history file: {e}")
            return []

        entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            logger.error("Invalid run history format: entries is not a list.")
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def _persist(self) -> None:
        # atomic write로 운영자가 읽는 도중 반쯤 써진 JSON 노출을 막는다.
        payload = {
            "version": 1,
            "updated_at": format_utc_datetime(datetime.now(timezone.utc)),
            "entries": self._entries,
        }
        atomic_write_json(self._path, payload, indent=2)

    def entries(self, spec_name: str | None = None) -> list[dict]:
        if spec_name is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.get("spec_name") == spec_name]

    def last(self, spec_name: str) -> dict | None:
        matched = self.entries(spec_name)
        return matched[-1] if matched else None

    def append(self, outcome: CycleOutcome) -> None:
        """
        cycle 결과 1건을 추가하고 window를 넘는 오래된 항목을 버린다.

        Called from:
        - `scripts.pipeline_worker.run_worker` cycle 종료 시
        """
        self._entries.append(dict(outcome.to_payload()))
        if len(self._entries) > self._window_size:
            self._entries = self._entries[-self._window_size:]
        self._persist()
