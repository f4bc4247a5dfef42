"""
Block import (merge or discard).

Why this module exists:
- 새로 만든 임시 block을 읽기 전용으로 열어 sub-block별 series 수를 확인하고,
  max series guard를 넘으면 destination을 건드리지 않고 버린다.
- merge는 rename 기반이라 중간 실패 시 일부만 옮겨질 수 있다.
  이동 목록을 manifest로 먼저 고정해 두고, 재시작 시 manifest를 idempotent하게
  재실행해 "반쯤 merge된 block"이 남지 않게 한다.
- destination에는 추가만 한다. 기존 엔트리를 덮어쓰거나 지우지 않는다.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from utils.config import QuerySpec
from utils.errors import BlockImportError
from utils.file_io import atomic_write_json, fsync_dir, remove_tree
from utils.logger import get_logger
from utils.pipeline_contracts import ImportDecision, ImportResult, format_utc_datetime
from workers.block_builder import CHUNKS_HEAD_DIR_NAME, META_FILE_NAME, WAL_DIR_NAME

logger = get_logger(__name__)

MANIFEST_FILE_NAME = ".import-manifest.json"
MANIFEST_VERSION = 1
EXCLUDED_CHILDREN = {WAL_DIR_NAME, CHUNKS_HEAD_DIR_NAME, MANIFEST_FILE_NAME}


def read_block_series_counts(block_path: str | Path) -> dict[str, int]:
    """
    block 디렉터리의 sub-block별 stats.numSeries를 읽는다 (읽기 전용).

    Called from:
    - `evaluate`

    Rules:
    - meta.json이 있는 하위 디렉터리만 sub-block으로 본다.
    - meta.json이 깨졌거나 numSeries가 없으면 BlockImportError.
    """
    root = Path(block_path)
    if not root.is_dir():
        raise BlockImportError(str(root), "block directory does not exist")

    counts: dict[str, int] = {}
    for child in sorted(root.iterdir()):
        meta_path = child / META_FILE_NAME
        if not child.is_dir() or not meta_path.is_file():
            continue
        try:
            with open(meta_path, "r") as f:
                meta = json.load(f)
            counts[child.name] = int(meta["stats"]["numSeries"])
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise BlockImportError(str(meta_path), f"unreadable block meta: {e}") from e
    return counts


def decide_import(series_counts: dict[str, int], max_series: int) -> ImportDecision:
    """
    max_series > 0 이고 어느 sub-block이든 초과하면 SKIP.
    """
    if max_series > 0 and any(count > max_series for count in series_counts.values()):
        return ImportDecision.SKIP
    return ImportDecision.MERGE


def evaluate(block_path: str | Path, spec: QuerySpec) -> ImportDecision:
    return decide_import(read_block_series_counts(block_path), spec.max_series)


def discard_block(block_path: str | Path) -> None:
    """
    임시 block을 통째로 지운다. destination은 건드리지 않는다.
    """
    remove_tree(block_path)


def _mergeable_children(block_path: Path) -> list[str]:
    return sorted(
        child.name
        for child in block_path.iterdir()
        if child.name not in EXCLUDED_CHILDREN
    )


def _write_manifest(block_path: Path, dst_path: Path, moves: list[str]) -> None:
    atomic_write_json(
        block_path / MANIFEST_FILE_NAME,
        {
            "version": MANIFEST_VERSION,
            "created_at": format_utc_datetime(datetime.now(timezone.utc)),
            "block_path": str(block_path),
            "dst_path": str(dst_path),
            "moves": moves,
        },
        indent=2,
    )


def _replay_moves(block_path: Path, dst_path: Path, moves: list[str]) -> list[str]:
    """
    manifest의 이동 목록을 실행한다. 이미 옮겨진 항목은 건너뛴다.

    Called from:
    - `merge_block`
    - `recover_pending_imports`
    """
    moved: list[str] = []
    for name in moves:
        source = block_path / name
        target = dst_path / name
        if source.exists():
            if target.exists():
                raise BlockImportError(
                    str(target), f"destination already has an entry named {name!r}"
                )
            try:
                os.rename(source, target)
            except OSError as e:
                raise BlockImportError(
                    str(source), f"failed to move {name!r} into {dst_path}: {e}"
                ) from e
            moved.append(name)
        elif not target.exists():
            raise BlockImportError(
                str(source), f"manifest entry {name!r} is in neither source nor destination"
            )
    fsync_dir(dst_path)
    return moved


def merge_block(block_path: str | Path, dst_path: str | Path) -> list[str]:
    """
    임시 block의 하위 엔트리(wal/chunks_head 제외)를 destination으로 옮긴다.

    Called from:
    - `import_block`

    Steps:
    1) destination 존재 확인 (없으면 BlockImportError)
    2) 이름 충돌 확인 (destination 덮어쓰기 금지)
    3) 이동 목록 manifest 기록
    4) rename 실행
    5) 임시 block(wal/chunks_head 포함) 삭제
    """
    source_root = Path(block_path)
    destination = Path(dst_path)
    if not destination.is_dir():
        raise BlockImportError(str(destination), "destination store does not exist")
    if not source_root.is_dir():
        raise BlockImportError(str(source_root), "block directory does not exist")

    moves = _mergeable_children(source_root)
    conflicts = [name for name in moves if (destination / name).exists()]
    if conflicts:
        raise BlockImportError(
            str(destination), f"destination already has entries {conflicts}"
        )

    _write_manifest(source_root, destination, moves)
    moved = _replay_moves(source_root, destination, moves)
    try:
        remove_tree(source_root)
    except OSError as e:
        raise BlockImportError(str(source_root), f"cleanup after merge failed: {e}") from e
    return moved


def _temporary_block_candidates(tmp_prefix: str) -> list[Path]:
    """
    임시 block 경로는 `tmp_prefix + cycle stamp` 형태다.
    prefix가 디렉터리(끝이 '/')면 그 안의 항목, 아니면 같은 prefix로 시작하는 형제.
    """
    if tmp_prefix.endswith(os.sep):
        parent = Path(tmp_prefix)
        pattern = "*"
    else:
        prefix_path = Path(tmp_prefix)
        parent = prefix_path.parent
        pattern = f"{prefix_path.name}*"
    if not parent.is_dir():
        return []
    return sorted(path for path in parent.glob(pattern) if path.is_dir())


def recover_pending_imports(tmp_prefix: str, dst_path: str | Path) -> list[str]:
    """
    중단된 merge(manifest가 남은 임시 block)를 끝까지 재실행한다.

    Called from:
    - `scripts.pipeline_worker.run_worker` 시작 시 1회
    """
    destination = Path(dst_path)
    recovered: list[str] = []
    for candidate in _temporary_block_candidates(tmp_prefix):
        manifest_path = candidate / MANIFEST_FILE_NAME
        if not manifest_path.is_file():
            continue
        try:
            with open(manifest_path, "r") as f:
                manifest = json.load(f)
            moves = [str(name) for name in manifest["moves"]]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise BlockImportError(str(manifest_path), f"unreadable import manifest: {e}") from e

        if not destination.is_dir():
            raise BlockImportError(str(destination), "destination store does not exist")
        moved = _replay_moves(candidate, destination, moves)
        remove_tree(candidate)
        logger.warning(
            "[Import Recovery] finished interrupted merge path=%s moved=%s",
            candidate,
            moved,
        )
        recovered.append(str(candidate))
    return recovered


def import_block(
    block_path: str | Path, spec: QuerySpec, dst_path: str | Path
) -> ImportResult:
    """
    evaluate -> merge 또는 discard. 어느 쪽이든 임시 block은 사라진다.

    Called from:
    - `scripts.pipeline_worker.run_cycle`
    """
    series_counts = read_block_series_counts(block_path)
    decision = evaluate(block_path, spec)
    if decision == ImportDecision.SKIP:
        discard_block(block_path)
        logger.info(
            "[%s] exceed max series limit, path = %s (max_series=%s, observed=%s)",
            spec.name,
            block_path,
            spec.max_series,
            max(series_counts.values(), default=0),
        )
        return ImportResult(
            decision=decision, block_path=str(block_path), series_counts=series_counts
        )

    moved = merge_block(block_path, dst_path)
    logger.info(
        "[%s] block merged into %s moved=%s",
        spec.name,
        dst_path,
        moved,
    )
    return ImportResult(
        decision=decision,
        block_path=str(block_path),
        series_counts=series_counts,
        moved=moved,
    )
