import datetime as dt
import json
import os
import threading
from pathlib import Path

import pytest

from prrelay.state import (
    CURRENT_VERSION,
    FetchState,
    StateError,
    delete_state,
    get_state_file_path,
    load_state,
    save_state,
)

UTC = dt.timezone.utc


@pytest.mark.parametrize(
    "repository, suffix",
    [
        ("kubernetes/kubernetes", ".sirseer/state/kubernetes-kubernetes.state"),
        ("org/sub/repo", ".sirseer/state/org-sub-repo.state"),
        ("simple", ".sirseer/state/simple.state"),
    ],
)
def test_get_state_file_path_suffix(repository, suffix):
    path = get_state_file_path(repository)
    assert str(path).endswith(os.path.join(*suffix.split("/")))


def test_get_state_file_path_under_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    assert get_state_file_path("org/repo") == tmp_path / ".sirseer" / "state" / "org-repo.state"


def test_save_and_load_state(tmp_path):
    state = FetchState(
        repository="test/repo",
        last_fetch_id="test-fetch-123",
        last_pr_number=999,
        last_pr_date=dt.datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC),
        last_fetch_time=dt.datetime(2024, 1, 15, 11, 0, 0, tzinfo=UTC),
        total_fetched=150,
    )
    state_file = tmp_path / "test.state"
    save_state(state, state_file)
    assert state_file.exists()

    loaded = load_state(state_file)
    assert loaded.repository == "test/repo"
    assert loaded.last_fetch_id == "test-fetch-123"
    assert loaded.last_pr_number == 999
    assert loaded.last_pr_date == dt.datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)
    assert loaded.last_fetch_time == dt.datetime(2024, 1, 15, 11, 0, 0, tzinfo=UTC)
    assert loaded.total_fetched == 150
    assert loaded.version == CURRENT_VERSION
    assert len(loaded.checksum) == 64
    assert loaded == state


def test_save_sets_version_and_checksum(tmp_path):
    state = FetchState(repository="test/repo", version=0)
    save_state(state, tmp_path / "a.state")
    assert state.version == CURRENT_VERSION
    on_disk = json.loads((tmp_path / "a.state").read_text(encoding="utf-8"))
    assert on_disk["checksum"] == state.checksum
    assert on_disk["version"] == 1


def test_save_creates_directories_and_leaves_no_temp(tmp_path):
    state_file = tmp_path / "nested" / "dir" / "repo.state"
    save_state(FetchState(repository="a/b"), state_file)
    assert state_file.exists()
    assert not Path(str(state_file) + ".tmp").exists()


def test_on_disk_format_is_compact(tmp_path):
    state_file = tmp_path / "fmt.state"
    save_state(
        FetchState(
            repository="test/repo",
            last_pr_number=100,
            last_pr_date=dt.datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC),
        ),
        state_file,
    )
    text = state_file.read_text(encoding="utf-8")
    assert text.startswith('{"version":1,"checksum":"')
    assert '"last_pr_number":100' in text
    assert '"last_pr_date":"2024-01-15T10:00:00Z"' in text
    assert '"last_fetch_time":"0001-01-01T00:00:00Z"' in text


def test_load_state_file_not_exist(tmp_path):
    with pytest.raises(StateError, match="no previous fetch state found"):
        load_state(tmp_path / "nonexistent.state")


def test_load_state_corrupted_json(tmp_path):
    state_file = tmp_path / "corrupted.state"
    state_file.write_text("{ invalid json", encoding="utf-8")
    with pytest.raises(StateError, match=r"corrupted \(invalid JSON\)"):
        load_state(state_file)


def test_load_state_wrong_field_type(tmp_path):
    state_file = tmp_path / "types.state"
    state_file.write_text('{"version":1,"last_pr_number":"many"}', encoding="utf-8")
    with pytest.raises(StateError, match=r"corrupted \(invalid JSON\)"):
        load_state(state_file)


def test_load_state_checksum_mismatch(tmp_path):
    state_file = tmp_path / "tampered.state"
    save_state(FetchState(repository="test/repo", last_pr_number=100), state_file)
    data = state_file.read_text(encoding="utf-8")
    tampered = data.replace('"last_pr_number":100', '"last_pr_number":200', 1)
    assert tampered != data
    state_file.write_text(tampered, encoding="utf-8")
    with pytest.raises(StateError, match="checksum mismatch"):
        load_state(state_file)


def test_load_state_version_mismatch(tmp_path):
    state_file = tmp_path / "oldversion.state"
    old_state = {
        "version": 0,
        "checksum": "",
        "repository": "test/repo",
        "last_pr_number": 100,
        "last_pr_date": "2024-01-01T00:00:00Z",
        "last_fetch_time": "2024-01-02T00:00:00.123456789+02:00",
        "total_fetched": 50,
    }
    state_file.write_text(json.dumps(old_state, indent=2), encoding="utf-8")
    with pytest.raises(StateError, match="incompatible with current version"):
        load_state(state_file)


def test_atomic_write_leaves_original_intact(tmp_path):
    state_file = tmp_path / "atomic.state"
    save_state(FetchState(repository="test/repo", last_pr_number=100), state_file)
    initial = state_file.read_bytes()

    temp = Path(str(state_file) + ".tmp")
    temp.write_text("partial write", encoding="utf-8")
    assert state_file.read_bytes() == initial
    assert load_state(state_file).last_pr_number == 100

    save_state(FetchState(repository="test/repo", last_pr_number=101), state_file)
    assert load_state(state_file).last_pr_number == 101
    assert not temp.exists()


def test_delete_state(tmp_path):
    state_file = tmp_path / "delete.state"
    save_state(FetchState(repository="test/repo", last_pr_number=100), state_file)
    delete_state(state_file)
    assert not state_file.exists()
    delete_state(state_file)
    assert not state_file.exists()


def test_concurrent_access(tmp_path):
    state_file = tmp_path / "concurrent.state"

    def worker(i):
        try:
            save_state(
                FetchState(repository="test/repo", last_pr_number=i, last_fetch_id=f"fetch-{i}"),
                state_file,
            )
        except StateError:
            pass

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = load_state(state_file)
    assert final.repository == "test/repo"
    assert final.version == CURRENT_VERSION
    assert final.last_fetch_id == f"fetch-{final.last_pr_number}"


def test_dict_round_trip_with_fractions_and_offsets():
    state = FetchState(
        version=1,
        checksum="abc",
        repository="org/repo",
        last_fetch_id="full-1",
        last_pr_number=42,
        last_pr_date=dt.datetime(2023, 5, 6, 7, 8, 9, 120000, tzinfo=UTC),
        last_fetch_time=dt.datetime(
            2023, 5, 6, 9, 0, 0, tzinfo=dt.timezone(dt.timedelta(hours=-5, minutes=-30))
        ),
        total_fetched=3,
    )
    data = state.to_dict()
    assert data["last_pr_date"] == "2023-05-06T07:08:09.12Z"
    assert data["last_fetch_time"] == "2023-05-06T09:00:00-05:30"
    assert list(data) == [
        "version",
        "checksum",
        "repository",
        "last_fetch_id",
        "last_pr_number",
        "last_pr_date",
        "last_fetch_time",
        "total_fetched",
    ]
    assert FetchState.from_dict(data) == state


def test_from_dict_defaults_for_missing_fields():
    state = FetchState.from_dict({"repository": "x/y"})
    assert state.repository == "x/y"
    assert state.version == 0
    assert state.last_pr_number == 0
    assert state.last_pr_date == dt.datetime(1, 1, 1, tzinfo=UTC)