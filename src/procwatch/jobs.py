"""Small importable jobs for smoke tests and the CLI."""

import time
from typing import Any


def ping(value: Any = None) -> dict[str, bool]:
    """Health check job; ignores its argument."""
    return {"ok": True}


def sleep(seconds: float | None = None) -> float:
    """Block for ``seconds`` (default 10) and return how long it slept."""
    duration = 10.0 if seconds is None else float(seconds)
    start = time.monotonic()
    time.sleep(duration)
    return time.monotonic() - start
