"""Encode jobs into payloads that survive a trip through a command line."""

import base64
import binascii
import pickle
from collections.abc import Callable
from typing import Any

from procwatch.errors import SerializationError
from procwatch.models import Job

# Protocol 4 payloads always start with "gAS", never with an option dash.
PICKLE_PROTOCOL = 4


def serialize(callback: Callable[..., Any], value: Any = None) -> str:
    """
    Serialize a callable reference and its argument.

    The callable is pickled by reference (module plus qualified name), so it
    must be importable in the child: module-level functions, classes, and
    instances of importable classes qualify; lambdas and closures do not.

    Args:
        callback: The callable to run in the child process.
        value: The single argument it will be called with.

    Returns:
        A URL-safe base64 string with no characters that need shell quoting.

    Raises:
        SerializationError: If the callable or value cannot be pickled.
    """
    if not callable(callback):
        raise SerializationError(f"Job callback is not callable: {callback!r}")
    try:
        data = pickle.dumps((callback, value), protocol=PICKLE_PROTOCOL)
    except (pickle.PicklingError, AttributeError, TypeError, RecursionError) as exc:
        raise SerializationError(f"Cannot serialize job {callback!r}: {exc}") from exc
    return base64.urlsafe_b64encode(data).decode("ascii")


def serialize_job(job: Job) -> str:
    """Serialize a ``Job``."""
    return serialize(job.callback, job.value)


def deserialize(payload: str) -> Job:
    """
    Rebuild a job from ``serialize`` output.

    Raises:
        SerializationError: If the payload is not valid base64, not a pickled
            job, or references a callable that cannot be imported here.
    """
    try:
        data = base64.urlsafe_b64decode(payload.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise SerializationError(f"Payload is not base64: {exc}") from exc
    try:
        callback, value = pickle.loads(data)
    # a corrupt pickle stream can fail with almost any exception type
    except Exception as exc:
        raise SerializationError(f"Cannot deserialize job: {exc}") from exc
    if not callable(callback):
        raise SerializationError(f"Deserialized callback is not callable: {callback!r}")
    return Job(callback=callback, value=value)
