"""Child-side entry point: decode a job payload and run it."""

import os
from collections.abc import Iterable, MutableMapping
from typing import Any

import structlog

from procwatch.logging import get_logger
from procwatch.serializer import deserialize


def parse_assignments(assignments: Iterable[str]) -> dict[str, str]:
    """
    Parse ``NAME=VALUE`` arguments.

    Raises:
        ValueError: If an argument has no ``=`` or an empty name.
    """
    parsed: dict[str, str] = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got {assignment!r}")
        parsed[name] = value
    return parsed


def execute(
    payload: str,
    token: str,
    assignments: Iterable[str] = (),
    environ: MutableMapping[str, str] | None = None,
    logger: Any = None,
) -> Any:
    """
    Run a serialized job in the current process.

    Args:
        payload: Output of ``procwatch.serializer.serialize``.
        token: Correlation token bound into every log event of the job.
        assignments: ``NAME=VALUE`` pairs applied to the environment first.
        environ: Environment to update; ``os.environ`` by default.
        logger: structlog logger; a module logger by default.

    Returns:
        Whatever the job's callable returned.

    Raises:
        SerializationError: If the payload cannot be decoded.
        Exception: Anything the job itself raises, after logging it.
    """
    environ = os.environ if environ is None else environ
    logger = logger or get_logger(__name__)

    environ.update(parse_assignments(assignments))
    structlog.contextvars.bind_contextvars(token=token)
    try:
        job = deserialize(payload)
        name = getattr(job.callback, "__qualname__", repr(job.callback))
        logger.info("job_started", callback=name, pid=os.getpid())
        try:
            result = job.callback(job.value)
        except Exception:
            logger.exception("job_failed", callback=name)
            raise
        logger.info("job_finished", callback=name, result=repr(result)[:200])
        return result
    finally:
        structlog.contextvars.unbind_contextvars("token")
