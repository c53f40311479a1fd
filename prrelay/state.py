"""Atomic persistence of fetch progress for incremental fetching.

State files are compact JSON, carry a schema version and a SHA-256
checksum of their content, and are written with a write-to-temp-and-rename
pattern so a crash never leaves a half-written state file behind.
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import os
import re
import threading
from pathlib import Path
from typing import Any

__all__ = [
    "CURRENT_VERSION",
    "ZERO_TIME",
    "FetchState",
    "StateError",
    "get_state_file_path",
    "save_state",
    "load_state",
    "delete_state",
]

CURRENT_VERSION = 1
"""Current state schema version; bump on breaking changes to FetchState."""

ZERO_TIME = _dt.datetime(1, 1, 1, tzinfo=_dt.timezone.utc)
"""Timestamp used for dates that were never set."""

_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)

_save_lock = threading.Lock()


class StateError(Exception):
    """Raised when state cannot be saved, loaded or deleted."""


def _format_time(value: _dt.datetime) -> str:
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


def _parse_time(value: Any, name: str) -> _dt.datetime:
    if value is None:
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a timestamp string")
    match = _TIME_RE.match(value)
    if match is None:
        raise ValueError(f"field {name!r} is not an RFC 3339 timestamp: {value!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = _dt.timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        delta = _dt.timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = _dt.timezone(sign * delta) if delta else _dt.timezone.utc
    return _dt.datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _int_field(data: dict, name: str) -> int:
    value = data.get(name, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name!r} must be an integer")
    return value


def _str_field(data: dict, name: str) -> str:
    value = data.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _dumps(data: dict) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


@dataclasses.dataclass
class FetchState:
    """Persistent progress of a repository fetch."""

    version: int = 0
    checksum: str = ""
    repository: str = ""
    last_fetch_id: str = ""
    last_pr_number: int = 0
    last_pr_date: _dt.datetime = ZERO_TIME
    last_fetch_time: _dt.datetime = ZERO_TIME
    total_fetched: int = 0

    def to_dict(self) -> dict:
        """Return the JSON-ready mapping in the on-disk field order."""
        return {
            "version": self.version,
            "checksum": self.checksum,
            "repository": self.repository,
            "last_fetch_id": self.last_fetch_id,
            "last_pr_number": self.last_pr_number,
            "last_pr_date": _format_time(self.last_pr_date),
            "last_fetch_time": _format_time(self.last_fetch_time),
            "total_fetched": self.total_fetched,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FetchState:
        """Build a state from a decoded JSON mapping; missing fields take defaults."""
        if not isinstance(data, dict):
            raise ValueError("state must be a JSON object")
        return cls(
            version=_int_field(data, "version"),
            checksum=_str_field(data, "checksum"),
            repository=_str_field(data, "repository"),
            last_fetch_id=_str_field(data, "last_fetch_id"),
            last_pr_number=_int_field(data, "last_pr_number"),
            last_pr_date=_parse_time(data.get("last_pr_date"), "last_pr_date"),
            last_fetch_time=_parse_time(data.get("last_fetch_time"), "last_fetch_time"),
            total_fetched=_int_field(data, "total_fetched"),
        )


def _calculate_checksum(state: FetchState) -> str:
    data = dataclasses.replace(state, checksum="").to_dict()
    return hashlib.sha256(_dumps(data).encode("utf-8")).hexdigest()


def get_state_file_path(repository: str) -> Path:
    """Return ``~/.sirseer/state/<org>-<repo>.state`` for an ``org/repo`` name."""
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        home = Path(".")
    safe_name = repository.replace("/", "-")
    return home / ".sirseer" / "state" / f"{safe_name}.state"


def save_state(state: FetchState, state_file) -> None:
    """Atomically write *state*, setting its version and checksum first."""
    state.version = CURRENT_VERSION
    state.checksum = _calculate_checksum(state)

    target = Path(state_file)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateError(f"failed to create state directory: {exc}") from exc

    payload = _dumps(state.to_dict()).encode("utf-8")
    temp = target.with_name(target.name + ".tmp")

    with _save_lock:
        try:
            fd = os.open(temp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        except OSError as exc:
            raise StateError(f"failed to write temporary state file: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StateError(f"failed to write temporary state file: {exc}") from exc
        try:
            os.replace(temp, target)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StateError(f"failed to rename temp file: {exc}") from exc


def load_state(state_file) -> FetchState:
    """Read *state_file*, verifying its version and checksum."""
    path = Path(state_file)
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise StateError(
            f"no previous fetch state found at {path}. Use --all flag for initial fetch"
        ) from exc
    except OSError as exc:
        raise StateError(f"failed to read state file {path}: {exc}") from exc

    try:
        state = FetchState.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise StateError(f"state file is corrupted (invalid JSON): {exc}") from exc

    if state.version != CURRENT_VERSION:
        raise StateError(
            f"state file version ({state.version}) is incompatible with "
            f"current version ({CURRENT_VERSION})"
        )

    if state.checksum != _calculate_checksum(state):
        raise StateError("state file is corrupted (checksum mismatch)")

    return state


def delete_state(state_file) -> None:
    """Remove *state_file*; a missing file is not an error."""
    try:
        Path(state_file).unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        raise StateError(f"failed to delete state file: {exc}") from exc