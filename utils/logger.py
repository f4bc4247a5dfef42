import logging
import os
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_configured = False


def _resolve_level(raw: str | None) -> int:
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: str | None = None) -> None:
    """
    root logger에 stdout handler를 1회만 붙인다.

    Called from:
    - `get_logger` (최초 호출 시)
    - `scripts.pipeline_worker.main` (LOG_LEVEL override)
    """
    global _configured
    root = logging.getLogger()
    root.setLevel(_resolve_level(level or os.getenv("LOG_LEVEL")))
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    # boto 계열은 DEBUG에서 요청 본문까지 찍으므로 WARNING으로 고정한다.
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        setup_logging()
    return logging.getLogger(name)
