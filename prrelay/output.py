"""Streaming NDJSON (newline-delimited JSON) output.

Each record is written as one line of compact JSON followed by a newline,
so arbitrarily large datasets can be streamed without holding records in
memory.
"""

from __future__ import annotations

import abc
import dataclasses
import datetime as _dt
import json
import threading
from typing import Any, TextIO

__all__ = ["OutputError", "OutputWriter", "NDJSONWriter", "open_file_writer"]

_FILE_BUFFER_SIZE = 64 * 1024

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class OutputError(Exception):
    """Raised when output cannot be created or a record cannot be written."""


class OutputWriter(abc.ABC):
    """Destination for pull request records, independent of the output format."""

    @abc.abstractmethod
    def write(self, record: Any) -> None:
        """Write a single record to the output."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the underlying resources."""


def _format_datetime(value: _dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or _dt.timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < _dt.timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    if isinstance(value, _dt.datetime):
        return _format_datetime(value)
    if isinstance(value, _dt.date):
        return value.isoformat()
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _encode(record: Any) -> str:
    text = json.dumps(
        record,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_default,
    )
    for char, escaped in _HTML_ESCAPES.items():
        text = text.replace(char, escaped)
    return text


class NDJSONWriter(OutputWriter):
    """Thread-safe NDJSON writer over a text stream.

    A writer built directly on a stream does not close it; writers returned
    by :func:`open_file_writer` own their file and close it on :meth:`close`.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._count = 0
        self._owns_stream = False
        self._closed = False

    def write(self, record: Any) -> None:
        """Encode *record* as JSON and write it as one line."""
        with self._lock:
            try:
                line = _encode(record)
            except (TypeError, ValueError) as exc:
                raise OutputError(f"failed to write record: {exc}") from exc
            try:
                self._stream.write(line + "\n")
            except (OSError, ValueError) as exc:
                raise OutputError(f"failed to write record: {exc}") from exc
            self._count += 1

    @property
    def count(self) -> int:
        """Number of records written successfully."""
        with self._lock:
            return self._count

    def close(self) -> None:
        """Flush and close an owned file; a no-op for borrowed streams."""
        with self._lock:
            if not self._owns_stream or self._closed:
                return
            self._closed = True
            try:
                self._stream.flush()
            except OSError as exc:
                self._stream.close()
                raise OutputError(f"failed to flush buffer: {exc}") from exc
            try:
                self._stream.close()
            except OSError as exc:
                raise OutputError(f"failed to close output file: {exc}") from exc

    def __enter__(self) -> NDJSONWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_file_writer(filename) -> NDJSONWriter:
    """Create (or truncate) *filename* and return a buffered writer that owns it."""
    try:
        handle = open(
            filename, "w", encoding="utf-8", newline="", buffering=_FILE_BUFFER_SIZE
        )
    except OSError as exc:
        raise OutputError(f"failed to create output file: {exc}") from exc
    writer = NDJSONWriter(handle)
    writer._owns_stream = True
    return writer