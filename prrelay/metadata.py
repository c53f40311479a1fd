"""Statistics and audit records for fetch operations.

A :class:`Tracker` collects API call counts, pull request number ranges and
date ranges while a fetch runs, then produces a :class:`FetchMetadata`
record.  Records are saved as indented JSON files next to the state files so
that external tools can analyse fetch history and performance.
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import json
import os
from pathlib import Path
from typing import Any, Optional, TextIO

from .state import ZERO_TIME, _format_time, _int_field, _parse_time, _str_field

__all__ = [
    "METHOD_VERSION",
    "RELAY_VERSION",
    "MetadataError",
    "PRStats",
    "FetchParams",
    "FetchResults",
    "FetchRef",
    "FetchMetadata",
    "Tracker",
    "save_metadata",
    "load_latest_metadata",
    "write_metadata",
]

METHOD_VERSION = "graphql-all-in-one-v1"
"""Version of the query method recorded in every metadata record."""

RELAY_VERSION = "dev"
"""Version of the relay itself, replaced by release builds."""

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)


class MetadataError(Exception):
    """Raised when metadata cannot be saved, read or written."""


def _aware(value: _dt.datetime) -> _dt.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=_dt.timezone.utc)


def _unix(value: _dt.datetime) -> int:
    return (_aware(value) - _EPOCH) // _dt.timedelta(seconds=1)


def _trim_fraction(whole: int, fraction: int, digits: int) -> str:
    text = f"{fraction:0{digits}d}".rstrip("0")
    return f"{whole}.{text}" if text else str(whole)


def _format_duration(delta: _dt.timedelta) -> str:
    """Render a duration like ``5m30s``, ``1.5s`` or ``250ms``."""
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros == 0:
        return "0s"
    if micros < 1_000:
        return f"{sign}{micros}\u00b5s"
    if micros < 1_000_000:
        return f"{sign}{_trim_fraction(micros // 1_000, micros % 1_000, 3)}ms"
    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    seconds = _trim_fraction(rest // 1_000_000, rest % 1_000_000, 6) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return f"{sign}{seconds}"


def _bool_field(data: dict, name: str) -> bool:
    value = data.get(name, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"field {name!r} must be a boolean")
    return value


def _object_field(data: dict, name: str) -> dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"field {name!r} must be an object")
    return value


@dataclasses.dataclass
class PRStats:
    """Running number and date ranges of the pull requests seen so far."""

    total_prs: int = 0
    first_pr: int = 0
    last_pr: int = 0
    oldest_pr: _dt.datetime = ZERO_TIME
    newest_pr: _dt.datetime = ZERO_TIME


@dataclasses.dataclass
class FetchParams:
    """Input parameters of a fetch operation."""

    organization: str = ""
    repository: str = ""
    since: Optional[_dt.datetime] = None
    until: Optional[_dt.datetime] = None
    fetch_all: bool = False
    batch_size: int = 0

    def to_dict(self) -> dict:
        """Return the JSON-ready mapping; unset time windows are omitted."""
        data: dict[str, Any] = {
            "organization": self.organization,
            "repository": self.repository,
        }
        if self.since is not None:
            data["since"] = _format_time(self.since)
        if self.until is not None:
            data["until"] = _format_time(self.until)
        data["fetch_all"] = self.fetch_all
        data["batch_size"] = self.batch_size
        return data

    @classmethod
    def from_dict(cls, data: dict) -> FetchParams:
        """Build parameters from a decoded JSON mapping."""
        since = data.get("since")
        until = data.get("until")
        return cls(
            organization=_str_field(data, "organization"),
            repository=_str_field(data, "repository"),
            since=None if since is None else _parse_time(since, "since"),
            until=None if until is None else _parse_time(until, "until"),
            fetch_all=_bool_field(data, "fetch_all"),
            batch_size=_int_field(data, "batch_size"),
        )


@dataclasses.dataclass
class FetchResults:
    """Counts, ranges and timings of a completed fetch."""

    total_prs: int = 0
    first_pr: int = 0
    last_pr: int = 0
    oldest_pr: _dt.datetime = ZERO_TIME
    newest_pr: _dt.datetime = ZERO_TIME
    duration: str = ""
    api_call_count: int = 0
    started_at: _dt.datetime = ZERO_TIME
    completed_at: _dt.datetime = ZERO_TIME

    def to_dict(self) -> dict:
        """Return the JSON-ready mapping."""
        return {
            "total_prs": self.total_prs,
            "first_pr_number": self.first_pr,
            "last_pr_number": self.last_pr,
            "oldest_pr_date": _format_time(self.oldest_pr),
            "newest_pr_date": _format_time(self.newest_pr),
            "fetch_duration": self.duration,
            "api_calls_made": self.api_call_count,
            "started_at": _format_time(self.started_at),
            "completed_at": _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FetchResults:
        """Build results from a decoded JSON mapping."""
        return cls(
            total_prs=_int_field(data, "total_prs"),
            first_pr=_int_field(data, "first_pr_number"),
            last_pr=_int_field(data, "last_pr_number"),
            oldest_pr=_parse_time(data.get("oldest_pr_date"), "oldest_pr_date"),
            newest_pr=_parse_time(data.get("newest_pr_date"), "newest_pr_date"),
            duration=_str_field(data, "fetch_duration"),
            api_call_count=_int_field(data, "api_calls_made"),
            started_at=_parse_time(data.get("started_at"), "started_at"),
            completed_at=_parse_time(data.get("completed_at"), "completed_at"),
        )


@dataclasses.dataclass
class FetchRef:
    """Reference to an earlier fetch, linking incremental runs together."""

    fetch_id: str = ""
    completed_at: _dt.datetime = ZERO_TIME

    def to_dict(self) -> dict:
        """Return the JSON-ready mapping."""
        return {"fetch_id": self.fetch_id, "completed_at": _format_time(self.completed_at)}

    @classmethod
    def from_dict(cls, data: dict) -> FetchRef:
        """Build a reference from a decoded JSON mapping."""
        return cls(
            fetch_id=_str_field(data, "fetch_id"),
            completed_at=_parse_time(data.get("completed_at"), "completed_at"),
        )


@dataclasses.dataclass
class FetchMetadata:
    """Complete audit record of a single fetch operation."""

    relay_version: str = ""
    method_version: str = ""
    fetch_id: str = ""
    parameters: FetchParams = dataclasses.field(default_factory=FetchParams)
    results: FetchResults = dataclasses.field(default_factory=FetchResults)
    incremental: bool = False
    previous_fetch: Optional[FetchRef] = None

    def to_dict(self) -> dict:
        """Return the JSON-ready mapping; a missing previous fetch is omitted."""
        data: dict[str, Any] = {
            "relay_version": self.relay_version,
            "method_version": self.method_version,
            "fetch_id": self.fetch_id,
            "parameters": self.parameters.to_dict(),
            "results": self.results.to_dict(),
            "incremental": self.incremental,
        }
        if self.previous_fetch is not None:
            data["previous_fetch"] = self.previous_fetch.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> FetchMetadata:
        """Build a record from a decoded JSON mapping."""
        if not isinstance(data, dict):
            raise ValueError("metadata must be a JSON object")
        previous = data.get("previous_fetch")
        return cls(
            relay_version=_str_field(data, "relay_version"),
            method_version=_str_field(data, "method_version"),
            fetch_id=_str_field(data, "fetch_id"),
            parameters=FetchParams.from_dict(_object_field(data, "parameters")),
            results=FetchResults.from_dict(_object_field(data, "results")),
            incremental=_bool_field(data, "incremental"),
            previous_fetch=(
                None if previous is None else FetchRef.from_dict(_object_field(data, "previous_fetch"))
            ),
        )


class Tracker:
    """Collects statistics during one fetch operation."""

    def __init__(self) -> None:
        self.start_time = _dt.datetime.now(_dt.timezone.utc)
        self.api_call_count = 0
        self.pr_stats = PRStats()

    def increment_api_call(self) -> None:
        """Record one API request."""
        self.api_call_count += 1

    def update_pr_stats(self, pr_number: int, created_at: _dt.datetime, updated_at: _dt.datetime) -> None:
        """Fold one pull request into the running number and date ranges."""
        stats = self.pr_stats
        created_at = _aware(created_at)
        updated_at = _aware(updated_at)
        stats.total_prs += 1

        if stats.first_pr == 0 or pr_number < stats.first_pr:
            stats.first_pr = pr_number
        if pr_number > stats.last_pr:
            stats.last_pr = pr_number

        if stats.oldest_pr == ZERO_TIME or created_at < stats.oldest_pr:
            stats.oldest_pr = created_at
        if updated_at > stats.newest_pr:
            stats.newest_pr = updated_at

    def generate_metadata(
        self,
        relay_version: str,
        params: FetchParams,
        incremental: bool,
        previous_fetch: Optional[FetchRef],
    ) -> FetchMetadata:
        """Produce the metadata record for the fetch tracked so far."""
        completed_at = _dt.datetime.now(_dt.timezone.utc)
        started_at = _aware(self.start_time)
        fetch_type = "incremental" if incremental else "full"
        stats = self.pr_stats
        return FetchMetadata(
            relay_version=relay_version,
            method_version=METHOD_VERSION,
            fetch_id=f"{fetch_type}-{_unix(started_at)}",
            parameters=params,
            results=FetchResults(
                total_prs=stats.total_prs,
                first_pr=stats.first_pr,
                last_pr=stats.last_pr,
                oldest_pr=stats.oldest_pr,
                newest_pr=stats.newest_pr,
                duration=_format_duration(completed_at - started_at),
                api_call_count=self.api_call_count,
                started_at=started_at,
                completed_at=completed_at,
            ),
            incremental=incremental,
            previous_fetch=previous_fetch,
        )


def _render(metadata: FetchMetadata) -> str:
    return json.dumps(metadata.to_dict(), indent=2, ensure_ascii=False) + "\n"


def save_metadata(metadata: FetchMetadata, state_dir) -> Path:
    """Atomically write ``fetch-metadata-<unix start>.json`` into *state_dir*."""
    directory = Path(state_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MetadataError(f"failed to create state directory: {exc}") from exc

    target = directory / f"fetch-metadata-{_unix(metadata.results.started_at)}.json"
    temp = target.with_name(target.name + ".tmp")
    try:
        text = _render(metadata)
    except (TypeError, ValueError) as exc:
        raise MetadataError(f"failed to write metadata: {exc}") from exc
    try:
        temp.write_text(text, encoding="utf-8")
    except OSError as exc:
        temp.unlink(missing_ok=True)
        raise MetadataError(f"failed to write metadata: {exc}") from exc
    try:
        os.replace(temp, target)
    except OSError as exc:
        raise MetadataError(f"failed to save metadata file: {exc}") from exc
    return target


def load_latest_metadata(state_dir, repo: str) -> Optional[FetchMetadata]:
    """Load the most recently modified metadata file if it belongs to *repo*."""
    latest: Optional[Path] = None
    latest_mtime = 0
    for path in sorted(Path(state_dir).glob("fetch-metadata-*.json")):
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            continue
        if mtime > latest_mtime:
            latest_mtime = mtime
            latest = path

    if latest is None:
        return None

    try:
        raw = latest.read_text(encoding="utf-8")
    except OSError as exc:
        raise MetadataError(f"failed to open metadata file: {exc}") from exc
    try:
        metadata = FetchMetadata.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise MetadataError(f"failed to parse metadata: {exc}") from exc

    params = metadata.parameters
    if f"{params.organization}/{params.repository}" != repo:
        return None
    return metadata


def write_metadata(metadata: FetchMetadata, stream: TextIO) -> None:
    """Write *metadata* as indented JSON to a text stream."""
    try:
        stream.write(_render(metadata))
    except (OSError, TypeError, ValueError) as exc:
        raise MetadataError(f"failed to write metadata: {exc}") from exc