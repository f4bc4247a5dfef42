import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any


def fsync_dir(path: str | Path) -> None:
    """
    디렉터리 엔트리 변경(rename/create)을 디스크에 고정한다.
    POSIX 외 환경에서는 디렉터리를 열 수 없으므로 건너뛴다.
    """
    if os.name != "posix":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_json(
    path: str | Path, payload: Any, indent: int | None = None
) -> None:
    """
    JSON을 저장하다가 죽어도 파일이 깨지지 않게 만든다.
    block meta.json, import manifest, run history에서 json.dump() 대신 사용한다.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=str(file_path.parent), prefix=f".{file_path.name}.", text=True
    )
    try:
        with os.fdopen(fd, "w") as temp_file:
            json.dump(payload, temp_file, indent=indent)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, file_path)
        os.chmod(file_path, 0o644)
        fsync_dir(file_path.parent)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def remove_tree(path: str | Path) -> bool:
    """
    경로가 있으면 통째로 지운다. 실제로 지웠으면 True.
    """
    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True
