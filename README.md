# prrelay

`prrelay` provides building blocks for exporting pull request data to disk and for resuming an export later. It has three modules:

- **`prrelay.output`** writes records as NDJSON, one compact JSON object per line. `NDJSONWriter` is thread-safe and counts the records it has written.
- **`prrelay.state`** saves and loads per-repository fetch state. Each file is written atomically through a temporary file and a rename. It carries a SHA-256 checksum and a schema version (`CURRENT_VERSION`), so a damaged or outdated file is detected when it is loaded.
- **`prrelay.metadata`** collects statistics while a fetch runs. It saves them as indented JSON records that can be audited later.

The package needs only the standard library.

## Installation

```
pip install .
```

## Writing NDJSON

```python
from prrelay.output import open_file_writer

with open_file_writer("prs.ndjson") as writer:
    writer.write({"number": 1, "title": "Fix build"})
    writer.write({"number": 2, "title": "Add docs"})
    print(writer.count)  # 2
```

`open_file_writer` creates or truncates the file and returns a buffered writer that owns it. Closing that writer flushes the buffer and closes the file.

`NDJSONWriter(stream)` writes to any text stream you pass in. Closing a writer built this way does not close the stream.

The writer encodes the following values as JSON:

- dataclasses;
- datetimes, as RFC 3339 strings, with naive datetimes taken as UTC;
- dates.

`OutputError` is raised in these cases:

- a record cannot be encoded;
- the output cannot be written;
- the file cannot be created.

`OutputWriter` is the abstract base class, with `write` and `close`.

## Fetch state

```python
from datetime import datetime, timezone
from prrelay.state import FetchState, get_state_file_path, save_state, load_state

path = get_state_file_path("kubernetes/kubernetes")  # ~/.sirseer/state/kubernetes-kubernetes.state
save_state(
    FetchState(
        repository="kubernetes/kubernetes",
        last_pr_number=12345,
        last_pr_date=datetime.now(timezone.utc),
    ),
    path,
)
state = load_state(path)
```

`save_state` sets the state's `version` and `checksum` before it writes the file. The file is created with mode `0600`. `load_state` raises `StateError` in these cases:

- the file is missing;
- the file is not valid JSON;
- the file has a different schema version;
- the checksum does not match.

`delete_state` removes a state file. It does nothing if the file is already gone. `FetchState.to_dict()` and `FetchState.from_dict()` convert the state to and from its on-disk JSON mapping.

## Fetch metadata

```python
from datetime import datetime, timezone
from prrelay.metadata import (
    RELAY_VERSION, Tracker, FetchParams, save_metadata, load_latest_metadata, write_metadata,
)

tracker = Tracker()
tracker.increment_api_call()
tracker.update_pr_stats(
    100,
    datetime(2023, 1, 1, tzinfo=timezone.utc),
    datetime(2023, 1, 2, tzinfo=timezone.utc),
)
meta = tracker.generate_metadata(
    RELAY_VERSION,
    FetchParams(organization="org", repository="repo", fetch_all=True, batch_size=50),
    False,
    None,
)
path = save_metadata(meta, "state-dir")  # state-dir/fetch-metadata-<unix start>.json
latest = load_latest_metadata("state-dir", "org/repo")
```

Each record has the following contents:

- the relay version;
- the query method version (`METHOD_VERSION`);
- a fetch id, `full-<unix start>` or `incremental-<unix start>`;
- the `FetchParams`;
- the `FetchResults`, which hold the counts, the PR number range, the date range, the duration, the API call count and the start and completion times;
- an optional `FetchRef` to a previous fetch.

Unset `since` or `until` windows are left out of the JSON. So is a missing previous fetch.

`load_latest_metadata` picks the most recently modified `fetch-metadata-*.json` file. It returns `None` in two cases:

- no such file exists;
- the newest file belongs to a different repository.

It raises `MetadataError` if the file cannot be read or parsed. `write_metadata(meta, stream)` writes the same indented JSON to any text stream.

## What this package does not do

The package has no command-line program. It has no client for a pull request API, so it does not fetch pull requests itself. It provides the output, state and metadata pieces that such a fetcher would use.