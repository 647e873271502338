import io
import os
import random
import sys
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, IO, Iterable, List, Optional, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import backup_manager
from backup_manager import (
    BackupConfig,
    ConfigurationError,
    CycleResult,
    build_onedrive,
    merge_config,
    parse_args,
    parse_timestamp,
    run_cycle,
    select_backups_to_delete,
)
from onedrive import (
    FolderListing,
    RemoteEntry,
    RemoteError,
    RetryPolicy,
    UploadSession,
)

from tests.fakes import (
    DRIVE_URL,
    UPLOAD_URL,
    FakeResponse,
    FakeSession,
    graph_responder,
    upload_routes,
)


CREDENTIALS_ENV = {
    "CLIENT_ID": "client",
    "CLIENT_SECRET": "secret",
    "TENANT_ID": "tenant",
    "DRIVE_ID": "drive-1",
}


def entry(name: str, last_modified: str, entry_id: Optional[str] = None) -> RemoteEntry:
    return RemoteEntry(name=name, id=entry_id or name, last_modified=last_modified)


def stamp(day: int, hour: int = 0) -> str:
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_config(tmp_path: Path, **overrides: Any) -> BackupConfig:
    source = tmp_path / "data"
    source.mkdir(exist_ok=True)
    (source / "world.txt").write_text("hello world")
    values: Dict[str, Any] = dict(
        client_id="client",
        client_secret="secret",
        tenant_id="tenant",
        drive_id="drive-1",
        source_dir=source,
        staging_dir=tmp_path / "staging",
        destination_folder="backups",
        max_backups=5,
        loop=False,
        resume_uploads=True,
    )
    values.update(overrides)
    return BackupConfig(**values)


class FakeDirectory:
    def __init__(
        self,
        entries: Iterable[RemoteEntry],
        events: List[Tuple[str, ...]],
        *,
        failing_ids: Iterable[str] = (),
        list_error: Optional[Exception] = None,
    ) -> None:
        self.entries = list(entries)
        self.events = events
        self.failing_ids = set(failing_ids)
        self.list_error = list_error

    def list(self, folder: str) -> List[RemoteEntry]:
        self.events.append(("list", folder))
        if self.list_error is not None:
            raise self.list_error
        return list(self.entries)

    def probe(self, folder: str) -> FolderListing:
        self.events.append(("probe", folder))
        return FolderListing.found(self.entries)

    def delete(self, entry_id: str) -> None:
        self.events.append(("delete", entry_id))
        if entry_id in self.failing_ids:
            raise RemoteError(500, "boom")


class FakeUploader:
    def __init__(
        self,
        events: List[Tuple[str, ...]],
        *,
        failures: int = 0,
        pending: Optional[UploadSession] = None,
    ) -> None:
        self.events = events
        self.failures = failures
        self.pending = pending
        self.payloads: List[bytes] = []

    def pending_upload(self) -> Optional[UploadSession]:
        return self.pending

    def upload(self, stream: IO[bytes], total_size: int, folder: str, name: str) -> UploadSession:
        self.events.append(("upload", folder, name))
        self.payloads.append(stream.read())
        assert len(self.payloads[-1]) == total_size
        if self.failures:
            self.failures -= 1
            raise RemoteError(503, "unavailable")
        return UploadSession(UPLOAD_URL, total_size, total_size, name, folder)


def test_select_deletes_two_oldest_of_seven() -> None:
    entries = [entry(f"t{day}", stamp(day)) for day in (4, 1, 7, 3, 6, 2, 5)]

    victims = select_backups_to_delete(entries, 5)

    assert [victim.name for victim in victims] == ["t1", "t2"]


def test_select_keeps_everything_within_cap() -> None:
    entries = [entry(f"t{day}", stamp(day)) for day in range(1, 6)]

    assert select_backups_to_delete(entries, 5) == []
    assert select_backups_to_delete(entries, 9) == []
    assert select_backups_to_delete([], 5) == []


def test_select_survivors_are_the_newest() -> None:
    rng = random.Random(1234)
    for total in range(0, 9):
        for cap in range(0, 9):
            entries = [entry(f"e{day}", stamp(day + 1)) for day in range(total)]
            rng.shuffle(entries)

            victims = select_backups_to_delete(entries, cap)

            assert len(victims) == max(0, total - cap)
            survivors = sorted(
                (e for e in entries if e not in victims), key=lambda e: e.last_modified
            )
            newest = sorted(entries, key=lambda e: e.last_modified)[len(victims):]
            assert survivors == newest


def test_select_breaks_ties_by_listing_order() -> None:
    same = stamp(3)
    entries = [
        entry("b", same),
        entry("newest", stamp(9)),
        entry("a", same),
        entry("c", same),
    ]

    victims = select_backups_to_delete(entries, 2)

    assert [victim.name for victim in victims] == ["b", "a"]


def test_select_treats_unparseable_timestamps_as_oldest() -> None:
    entries = [
        entry("old", stamp(1)),
        entry("garbage", "yesterday-ish"),
        entry("naive", "2024-01-09T00:00:00"),
        entry("new", stamp(2)),
    ]

    victims = select_backups_to_delete(entries, 2)

    assert [victim.name for victim in victims] == ["garbage", "naive"]


def test_select_rejects_negative_cap() -> None:
    with pytest.raises(ValueError):
        select_backups_to_delete([], -1)


def test_parse_timestamp_accepts_rfc3339_variants() -> None:
    utc = timezone.utc
    assert parse_timestamp("2024-03-01T10:20:30Z") == datetime(2024, 3, 1, 10, 20, 30, tzinfo=utc)
    assert parse_timestamp("2024-03-01T10:20:30.1234567Z") == datetime(
        2024, 3, 1, 10, 20, 30, 123456, tzinfo=utc
    )
    assert parse_timestamp("2024-03-01T12:20:30+02:00") == datetime(
        2024, 3, 1, 10, 20, 30, tzinfo=utc
    )
    assert parse_timestamp("2024-13-01T00:00:00Z") == backup_manager.ZERO_TIME
    assert parse_timestamp("") == backup_manager.ZERO_TIME


def test_run_cycle_prunes_before_uploading_then_clears_staging(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    entries = [entry(f"t{day}", stamp(day), entry_id=f"id{day}") for day in range(1, 8)]
    directory = FakeDirectory(entries, events)
    uploader = FakeUploader(events)
    config = build_config(tmp_path)

    result = run_cycle(
        config, directory, uploader, timestamp=datetime(2024, 2, 1, 3, 4, 5)  # type: ignore[arg-type]
    )

    assert result.ok
    assert result.uploaded
    assert result.archive_name == "backup-20240201-030405.zip"
    assert result.pruned == ["t1", "t2"]
    assert events == [
        ("list", "backups"),
        ("delete", "id1"),
        ("delete", "id2"),
        ("upload", "backups", "backup-20240201-030405.zip"),
    ]
    assert list(config.staging_dir.iterdir()) == []
    with zipfile.ZipFile(io.BytesIO(uploader.payloads[0])) as zf:
        assert zf.read("world.txt") == b"hello world"


def test_run_cycle_continues_pruning_after_failed_delete(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    entries = [entry(f"t{day}", stamp(day), entry_id=f"id{day}") for day in range(1, 8)]
    directory = FakeDirectory(entries, events, failing_ids={"id1"})
    uploader = FakeUploader(events)

    result = run_cycle(build_config(tmp_path), directory, uploader)  # type: ignore[arg-type]

    assert result.ok
    assert result.prune_failures == ["t1"]
    assert result.pruned == ["t2"]
    assert [event[0] for event in events] == ["list", "delete", "delete", "upload"]


def test_run_cycle_listing_failure_skips_upload(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    directory = FakeDirectory([], events, list_error=RemoteError(500, "down"))
    uploader = FakeUploader(events)
    config = build_config(tmp_path)

    result = run_cycle(config, directory, uploader)  # type: ignore[arg-type]

    assert not result.ok
    assert not result.uploaded
    assert events == [("list", "backups")]
    assert list(config.staging_dir.iterdir()) == []


def test_run_cycle_archive_failure_still_clears_staging(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    config = build_config(tmp_path, source_dir=tmp_path / "missing")
    config.staging_dir.mkdir()
    stale = config.staging_dir / "backup-20230101-000000.zip"
    stale.write_bytes(b"left over")

    result = run_cycle(config, FakeDirectory([], events), FakeUploader(events))  # type: ignore[arg-type]

    assert not result.ok
    assert events == []
    assert not stale.exists()


def test_run_cycle_single_shot_fails_after_one_upload_attempt(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    uploader = FakeUploader(events, failures=1)
    config = build_config(tmp_path, loop=False)

    result = run_cycle(config, FakeDirectory([], events), uploader)  # type: ignore[arg-type]

    assert not result.ok
    assert "unavailable" in (result.error or "")
    assert [event[0] for event in events] == ["list", "upload"]
    assert list(config.staging_dir.iterdir()) == []


def test_run_cycle_continuous_mode_retries_upload_step(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    sleeps: List[float] = []
    uploader = FakeUploader(events, failures=2)
    config = build_config(tmp_path, loop=True)

    result = run_cycle(
        config,
        FakeDirectory([], events),  # type: ignore[arg-type]
        uploader,  # type: ignore[arg-type]
        upload_retry=RetryPolicy(delay=10, sleep=sleeps.append),
    )

    assert result.ok
    assert [event[0] for event in events] == ["list", "upload", "upload", "upload"]
    assert sleeps == [10, 10]
    assert uploader.payloads[0] == uploader.payloads[2]


def test_run_cycle_dry_run_changes_nothing(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    entries = [entry(f"t{day}", stamp(day)) for day in range(1, 8)]
    config = build_config(tmp_path, dry_run=True)

    result = run_cycle(config, FakeDirectory(entries, events), FakeUploader(events))  # type: ignore[arg-type]

    assert result.ok
    assert events == [("probe", "backups")]
    assert not config.staging_dir.exists()


def test_run_cycle_reuses_archive_of_interrupted_upload(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    config = build_config(tmp_path)
    config.staging_dir.mkdir()
    staged = config.staging_dir / "backup-20240101-000000.zip"
    staged.write_bytes(b"interrupted archive")
    pending = UploadSession(UPLOAD_URL, staged.stat().st_size, 10, staged.name, "backups")
    uploader = FakeUploader(events, pending=pending)

    result = run_cycle(config, FakeDirectory([], events), uploader)  # type: ignore[arg-type]

    assert result.ok
    assert result.archive_name == staged.name
    assert uploader.payloads == [b"interrupted archive"]
    assert list(config.staging_dir.iterdir()) == []


def test_run_cycle_archives_files_with_pre_1980_mtime(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    config = build_config(tmp_path, loop=True)
    epoch_file = config.source_dir / "epoch.txt"
    epoch_file.write_text("built reproducibly")
    os.utime(epoch_file, (0, 0))
    uploader = FakeUploader(events)

    result = run_cycle(config, FakeDirectory([], events), uploader)  # type: ignore[arg-type]

    assert result.ok
    with zipfile.ZipFile(io.BytesIO(uploader.payloads[0])) as zf:
        assert zf.read("epoch.txt") == b"built reproducibly"
        assert zf.getinfo("epoch.txt").date_time[0] == 1980


def test_run_cycle_reports_unexpected_errors_instead_of_raising(tmp_path: Path) -> None:
    events: List[Tuple[str, ...]] = []
    directory = FakeDirectory([], events, list_error=RuntimeError("listing exploded"))
    config = build_config(tmp_path, loop=True)

    result = run_cycle(config, directory, FakeUploader(events))  # type: ignore[arg-type]

    assert not result.ok
    assert "listing exploded" in (result.error or "")
    assert events == [("list", "backups")]
    assert list(config.staging_dir.iterdir()) == []


def test_run_cycle_end_to_end_against_fake_graph(tmp_path: Path) -> None:
    config = build_config(tmp_path, max_backups=2)
    listing = {
        "value": [
            {"name": "backup-3.zip", "id": "c", "lastModifiedDateTime": stamp(3)},
            {"name": "backup-1.zip", "id": "a", "lastModifiedDateTime": stamp(1)},
            {"name": "backup-2.zip", "id": "b", "lastModifiedDateTime": stamp(2)},
        ]
    }
    routes = {
        ("GET", "root:/backups:/children"): [FakeResponse(200, listing)],
        ("DELETE", "items/a"): [FakeResponse(204)],
        **upload_routes([FakeResponse(201, {"id": "new"})]),
    }
    session = FakeSession(graph_responder(routes))
    directory, uploader = build_onedrive(config, session=session)  # type: ignore[arg-type]

    result = run_cycle(config, directory, uploader, timestamp=datetime(2024, 2, 2))

    assert result.ok
    assert result.pruned == ["backup-1.zip"]
    assert [(method, url.split("?")[0]) for method, url, _ in session.calls[1:4]] == [
        ("GET", f"{DRIVE_URL}/root:/backups:/children"),
        ("DELETE", f"{DRIVE_URL}/items/a"),
        ("POST", f"{DRIVE_URL}/root:/backups/backup-20240202-000000.zip:/createUploadSession"),
    ]
    (put,) = session.calls_to("PUT", UPLOAD_URL)
    size = len(put[2]["data"])
    assert put[2]["headers"]["Content-Range"] == f"bytes 0-{size - 1}/{size}"
    assert not (config.staging_dir / backup_manager.UPLOAD_STATE_FILENAME).exists()


def test_merge_config_uses_environment_defaults() -> None:
    config = merge_config(parse_args([]), None, dict(CREDENTIALS_ENV))

    assert config.destination_folder == "backups"
    assert config.max_backups == 5
    assert config.interval_minutes == 1440
    assert config.chunk_size == 10 * 1024 * 1024
    assert config.range_attempts is None
    assert config.loop is True
    assert config.resume_uploads is True
    assert config.source_dir == Path("/app/data").resolve()


def test_merge_config_falls_back_on_invalid_environment_values() -> None:
    env = dict(
        CREDENTIALS_ENV,
        MAX_BACKUPS="zero",
        BACKUP_INTERVAL_MINUTES="-5",
        BACKUP_LOOP="sometimes",
        ONEDRIVE_DESTINATION_FOLDER="/nas/daily/",
    )

    config = merge_config(parse_args([]), None, env)

    assert config.max_backups == 5
    assert config.interval_minutes == 1440
    assert config.loop is True
    assert config.destination_folder == "nas/daily"


def test_merge_config_precedence_cli_then_file_then_environment(tmp_path: Path) -> None:
    config_file = tmp_path / "backup.ini"
    config_file.write_text(
        "[backup]\nmax_backups = 7\ninterval_minutes = 60\ndestination_folder = from-file\nloop = false\n"
    )
    env = dict(CREDENTIALS_ENV, MAX_BACKUPS="3", BACKUP_INTERVAL_MINUTES="30")
    args = parse_args(["--max-backups", "9", "--range-attempts", "4"])

    config = merge_config(args, backup_manager.read_config_file(config_file), env)

    assert config.max_backups == 9
    assert config.interval_minutes == 60
    assert config.destination_folder == "from-file"
    assert config.loop is False
    assert config.range_attempts == 4


def test_merge_config_rounds_chunk_size_down_to_upload_alignment() -> None:
    alignment = 320 * 1024

    from_cli = merge_config(parse_args(["--chunk-size", "1"]), None, dict(CREDENTIALS_ENV))
    from_env = merge_config(parse_args([]), None, dict(CREDENTIALS_ENV, UPLOAD_CHUNK_MIB="4"))
    aligned = merge_config(parse_args(["--chunk-size", "15"]), None, dict(CREDENTIALS_ENV))

    assert from_cli.chunk_size == 3 * alignment
    assert from_env.chunk_size == 12 * alignment
    assert aligned.chunk_size == 15 * 1024 * 1024


def test_merge_config_reads_fractional_request_timeout_from_environment() -> None:
    config = merge_config(parse_args([]), None, dict(CREDENTIALS_ENV, REQUEST_TIMEOUT="30.5"))
    fallback = merge_config(parse_args([]), None, dict(CREDENTIALS_ENV, REQUEST_TIMEOUT="soon"))
    negative = merge_config(parse_args([]), None, dict(CREDENTIALS_ENV, REQUEST_TIMEOUT="-1"))

    assert config.request_timeout == 30.5
    assert fallback.request_timeout == 120.0
    assert negative.request_timeout == 120.0


def test_merge_config_requires_credentials() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        merge_config(parse_args([]), None, {"CLIENT_ID": "client"})
    assert "drive_id" in str(excinfo.value)


def test_merge_config_rejects_invalid_explicit_values() -> None:
    with pytest.raises(ConfigurationError):
        merge_config(parse_args(["--max-backups", "0"]), None, dict(CREDENTIALS_ENV))
    with pytest.raises(ConfigurationError):
        merge_config(parse_args([]), {"interval_minutes": "soon"}, dict(CREDENTIALS_ENV))


def test_main_single_shot_exit_codes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = tmp_path / "data"
    source.mkdir()
    env = dict(CREDENTIALS_ENV, BACKUP_SOURCE_DIR=str(source), BACKUP_STAGING_DIR=str(tmp_path / "s"))
    outcomes = [CycleResult(archive_name="a.zip", uploaded=True), CycleResult(error="upload failed")]

    monkeypatch.setattr(backup_manager, "run_cycle", lambda *args, **kwargs: outcomes.pop(0))

    assert backup_manager.main(["--once"], env) == 0
    assert backup_manager.main(["--once"], env) == 1
    assert backup_manager.main(["--once"], {}) == 2


def test_main_loop_sleeps_interval_between_cycles(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = tmp_path / "data"
    source.mkdir()
    env = dict(CREDENTIALS_ENV, BACKUP_SOURCE_DIR=str(source), BACKUP_INTERVAL_MINUTES="90")
    cycles: List[int] = []
    sleeps: List[float] = []

    class StopLoop(Exception):
        pass

    def fake_cycle(*args: Any, **kwargs: Any) -> CycleResult:
        cycles.append(1)
        return CycleResult(error="keeps failing")

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise StopLoop()

    monkeypatch.setattr(backup_manager, "run_cycle", fake_cycle)
    monkeypatch.setattr(backup_manager.time, "sleep", fake_sleep)

    with pytest.raises(StopLoop):
        backup_manager.main(["--loop"], env)
    assert len(cycles) == 2
    assert sleeps == [90 * 60, 90 * 60]
