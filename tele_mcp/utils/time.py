import time


def utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def seconds_since(started: float) -> int:
    """Whole seconds elapsed since a ``time.monotonic()`` reading."""
    return max(int(time.monotonic() - started), 0)
