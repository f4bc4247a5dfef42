import re
from datetime import datetime, timedelta, timezone

_DURATION_PATTERN = re.compile(r"^(?P<sign>[-+]?)(?P<body>(?:\d+(?:\.\d*)?|\.\d+)[a-zµμ]+)+$")
_DURATION_TERM_PATTERN = re.compile(r"(?P<value>\d+(?:\.\d*)?|\.\d+)(?P<unit>[a-zµμ]+)")
_UNIT_MICROSECONDS = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "μs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60 * 1_000_000,
    "h": 3600 * 1_000_000,
}
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MAX_TIMER_DELAY = timedelta(hours=24)
CYCLE_STAMP_FORMAT = "%Y%m%d_%H%M%S"


def parse_duration(text: str) -> timedelta:
    """
    Go duration 문자열("1h30m", "-5m", "1.5h", "300ms", "0")을 timedelta로 변환한다.
    Example: "1h30m" -> timedelta(hours=1, minutes=30).
    """
    if not isinstance(text, str):
        raise ValueError(f"Duration must be a string, got {type(text).__name__}.")
    raw = text.strip()
    if raw in {"0", "+0", "-0"}:
        return timedelta(0)

    match = _DURATION_PATTERN.match(raw)
    if not match:
        raise ValueError(
            f"Unsupported duration format: {text!r}. Expected like '1h', '30m', '-5m'."
        )

    sign = -1 if match.group("sign") == "-" else 1
    body = raw[len(match.group("sign")):]
    total_microseconds = 0.0
    for term in _DURATION_TERM_PATTERN.finditer(body):
        unit = term.group("unit")
        if unit not in _UNIT_MICROSECONDS:
            raise ValueError(f"Unknown unit {unit!r} in duration {text!r}.")
        total_microseconds += float(term.group("value")) * _UNIT_MICROSECONDS[unit]
    return timedelta(microseconds=sign * int(round(total_microseconds)))


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_interval(now: datetime, interval: timedelta) -> datetime:
    """
    now를 epoch 기준 interval 경계로 내림한다.
    Example: now=10:37, interval=1h -> 10:00.
    """
    if interval <= timedelta(0):
        raise ValueError("Interval must be positive.")
    elapsed = _to_utc(now) - _EPOCH
    return _EPOCH + (elapsed // interval) * interval


def next_aligned_wakeup(
    now: datetime, interval: timedelta, offset: timedelta
) -> datetime:
    """
    다음 cycle 시작 시각(truncate(now) + interval + offset)을 반환한다.
    이미 지난 시각(now 포함)이면 interval만큼 한 번 더 민다.
    Example: now=10:37, interval=1h, offset=5m -> 11:05.
    """
    now_utc = _to_utc(now)
    wakeup = truncate_to_interval(now_utc, interval) + interval + offset
    if wakeup <= now_utc:
        wakeup += interval
    return wakeup


def timer_delay(now: datetime, interval: timedelta, offset: timedelta) -> timedelta:
    """
    다음 cycle까지 대기 시간을 반환한다.

    24시간을 넘는 대기는 하루를 한 번만 빼서 clamp한다.
    (offset 오설정/clock skew 방어용, 다일 주기 일반 규칙이 아님)
    """
    delay = next_aligned_wakeup(now, interval, offset) - _to_utc(now)
    if delay > MAX_TIMER_DELAY:
        delay -= MAX_TIMER_DELAY
    return delay


def format_cycle_stamp(now: datetime, interval: timedelta) -> str:
    """cycle의 truncate 시각을 임시 block 경로용 문자열로 만든다."""
    return truncate_to_interval(now, interval).strftime(CYCLE_STAMP_FORMAT)


def to_epoch_ms(dt: datetime) -> int:
    return int((_to_utc(dt) - _EPOCH) // timedelta(milliseconds=1))
