#!/usr/bin/env python3
"""
OneDrive backup manager.

Archives a local directory, prunes the oldest backups in a OneDrive folder so
that at most a fixed number remain, uploads the new archive with a resumable
upload session and clears the local staging directory. Runs once or forever
at a fixed interval.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import requests

from archive import LocalIOError, UPLOAD_STATE_SUFFIX, clear_staging, create_archive, find_staged_archive
from onedrive import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_TIMEOUT,
    RANGE_RETRY_DELAY,
    UPLOAD_CHUNK_ALIGNMENT,
    GraphClient,
    OneDriveError,
    RemoteDirectory,
    RemoteEntry,
    ResumableUploader,
    RetryPolicy,
    TokenProvider,
    UploadStateStore,
    normalize_remote_path,
)


CONFIG_SECTION = "backup"
NOISY_LOGGERS = ("urllib3", "requests")

DEFAULT_SOURCE_DIR = "/app/data"
DEFAULT_STAGING_DIR = "/app/backups"
DEFAULT_DESTINATION = "backups"
DEFAULT_MAX_BACKUPS = 5
DEFAULT_INTERVAL_MINUTES = 24 * 60
DEFAULT_CHUNK_MIB = DEFAULT_CHUNK_SIZE // (1024 * 1024)
UPLOAD_RETRY_DELAY = 10.0
UPLOAD_STATE_FILENAME = f"pending{UPLOAD_STATE_SUFFIX}"

ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)
RFC3339_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class BackupConfig:
    client_id: str
    client_secret: str
    tenant_id: str
    drive_id: str
    source_dir: Path = Path(DEFAULT_SOURCE_DIR)
    staging_dir: Path = Path(DEFAULT_STAGING_DIR)
    destination_folder: str = DEFAULT_DESTINATION
    max_backups: int = DEFAULT_MAX_BACKUPS
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    loop: bool = True
    request_timeout: float = DEFAULT_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    range_attempts: Optional[int] = None
    resume_uploads: bool = True
    dry_run: bool = False


@dataclass
class CycleResult:
    archive_name: Optional[str] = None
    pruned: List[str] = field(default_factory=list)
    prune_failures: List[str] = field(default_factory=list)
    uploaded: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive a directory and keep a bounded set of backups in OneDrive."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument("--client-id", help="Azure AD application (client) id.")
    parser.add_argument("--client-secret", help="Azure AD application secret.")
    parser.add_argument("--tenant-id", help="Azure AD tenant id.")
    parser.add_argument("--drive-id", help="Identifier of the target OneDrive drive.")
    parser.add_argument(
        "--source-dir",
        type=Path,
        help=f"Directory to archive (default: {DEFAULT_SOURCE_DIR}).",
    )
    parser.add_argument(
        "--staging-dir",
        type=Path,
        help=f"Directory where archives are staged before upload (default: {DEFAULT_STAGING_DIR}).",
    )
    parser.add_argument(
        "--destination",
        dest="destination_folder",
        help=f"OneDrive folder receiving the backups (default: {DEFAULT_DESTINATION}).",
    )
    parser.add_argument(
        "--max-backups",
        type=int,
        help=f"Number of remote backups to keep (default: {DEFAULT_MAX_BACKUPS}).",
    )
    parser.add_argument(
        "--interval",
        dest="interval_minutes",
        type=int,
        help=f"Minutes between backup cycles in loop mode (default: {DEFAULT_INTERVAL_MINUTES}).",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        help=f"Seconds before a single HTTP request times out (default: {DEFAULT_TIMEOUT:g}).",
    )
    parser.add_argument(
        "--chunk-size",
        dest="chunk_size_mib",
        type=int,
        help=f"Upload range size in MiB (default: {DEFAULT_CHUNK_MIB}).",
    )
    parser.add_argument(
        "--range-attempts",
        type=int,
        help="Attempts per upload range before giving up; 0 retries forever (default: 0).",
    )
    parser.add_argument(
        "--no-resume",
        dest="resume_uploads",
        action="store_false",
        help="Do not persist upload sessions for resuming after a restart.",
    )
    parser.set_defaults(resume_uploads=None)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned actions without archiving, uploading or deleting anything.",
    )
    parser.add_argument(
        "--loop",
        dest="loop",
        action="store_true",
        help="Run continuously, starting a new cycle every interval (default).",
    )
    parser.add_argument(
        "--once",
        dest="loop",
        action="store_false",
        help="Run a single backup cycle and exit non-zero if it fails.",
    )
    parser.set_defaults(loop=None)
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def parse_float(value: str, name: str) -> float:
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be a number.") from error


def env_int(environ: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logging.warning("Ignoring non-numeric %s=%r; using %d.", name, raw, default)
        return default
    if value < minimum:
        logging.warning("Ignoring out-of-range %s=%r; using %d.", name, raw, default)
        return default
    return value


def env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logging.warning("Ignoring non-numeric %s=%r; using %g.", name, raw, default)
        return default
    if not value > 0:
        logging.warning("Ignoring out-of-range %s=%r; using %g.", name, raw, default)
        return default
    return value


def align_chunk_size(chunk_mib: int) -> int:
    """Round a range size in MiB down to a whole number of upload alignment units."""
    requested = chunk_mib * 1024 * 1024
    aligned = requested - requested % UPLOAD_CHUNK_ALIGNMENT
    if aligned != requested:
        logging.info(
            "Rounding upload chunk size of %d MiB down to %d bytes (a multiple of %d).",
            chunk_mib,
            aligned,
            UPLOAD_CHUNK_ALIGNMENT,
        )
    return aligned


def env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse_bool(raw)
    except ConfigurationError:
        logging.warning("Ignoring invalid %s=%r; using %s.", name, raw, default)
        return default


def _resolve_int(
    cli_value: Optional[int],
    file_cfg: Dict[str, str],
    key: str,
    environ: Mapping[str, str],
    env_name: str,
    default: int,
    *,
    minimum: int = 1,
) -> int:
    if cli_value is not None:
        value = cli_value
    elif key in file_cfg:
        value = parse_int(file_cfg[key], key)
    else:
        return env_int(environ, env_name, default, minimum=minimum)

    if value < minimum:
        expected = "a positive integer" if minimum == 1 else f"an integer >= {minimum}"
        raise ConfigurationError(f"{key} must be {expected}.")
    return value


def _resolve_str(
    cli_value: Optional[str],
    file_cfg: Dict[str, str],
    key: str,
    environ: Mapping[str, str],
    env_name: str,
    default: Optional[str] = None,
) -> Optional[str]:
    for candidate in (cli_value, file_cfg.get(key), environ.get(env_name)):
        if candidate is not None and candidate.strip():
            return candidate.strip()
    return default


def merge_config(
    args: argparse.Namespace,
    file_config: Optional[Dict[str, str]],
    environ: Optional[Mapping[str, str]] = None,
) -> BackupConfig:
    """Combine CLI flags, the config file and the environment, in that order."""
    file_cfg = file_config or {}
    env = os.environ if environ is None else environ

    credentials = {
        "client_id": _resolve_str(args.client_id, file_cfg, "client_id", env, "CLIENT_ID"),
        "client_secret": _resolve_str(
            args.client_secret, file_cfg, "client_secret", env, "CLIENT_SECRET"
        ),
        "tenant_id": _resolve_str(args.tenant_id, file_cfg, "tenant_id", env, "TENANT_ID"),
        "drive_id": _resolve_str(args.drive_id, file_cfg, "drive_id", env, "DRIVE_ID"),
    }
    missing = [name for name, value in credentials.items() if not value]
    if missing:
        raise ConfigurationError(
            "Missing OneDrive credentials: " + ", ".join(sorted(missing)) + "."
        )

    source_dir = _resolve_str(
        str(args.source_dir) if args.source_dir else None,
        file_cfg,
        "source_dir",
        env,
        "BACKUP_SOURCE_DIR",
        DEFAULT_SOURCE_DIR,
    )
    staging_dir = _resolve_str(
        str(args.staging_dir) if args.staging_dir else None,
        file_cfg,
        "staging_dir",
        env,
        "BACKUP_STAGING_DIR",
        DEFAULT_STAGING_DIR,
    )
    destination = _resolve_str(
        args.destination_folder,
        file_cfg,
        "destination_folder",
        env,
        "ONEDRIVE_DESTINATION_FOLDER",
        DEFAULT_DESTINATION,
    )
    if not normalize_remote_path(destination or ""):
        raise ConfigurationError("destination_folder must name a folder below the drive root.")

    max_backups = _resolve_int(
        args.max_backups, file_cfg, "max_backups", env, "MAX_BACKUPS", DEFAULT_MAX_BACKUPS
    )
    interval_minutes = _resolve_int(
        args.interval_minutes,
        file_cfg,
        "interval_minutes",
        env,
        "BACKUP_INTERVAL_MINUTES",
        DEFAULT_INTERVAL_MINUTES,
    )
    chunk_mib = _resolve_int(
        args.chunk_size_mib, file_cfg, "chunk_size_mib", env, "UPLOAD_CHUNK_MIB", DEFAULT_CHUNK_MIB
    )
    range_attempts = _resolve_int(
        args.range_attempts,
        file_cfg,
        "range_attempts",
        env,
        "UPLOAD_RANGE_ATTEMPTS",
        0,
        minimum=0,
    )

    if args.request_timeout is not None:
        request_timeout = args.request_timeout
    elif "request_timeout" in file_cfg:
        request_timeout = parse_float(file_cfg["request_timeout"], "request_timeout")
    else:
        request_timeout = env_float(env, "REQUEST_TIMEOUT", DEFAULT_TIMEOUT)
    if request_timeout <= 0:
        raise ConfigurationError("request_timeout must be positive.")

    if args.loop is not None:
        loop = args.loop
    elif "loop" in file_cfg:
        loop = parse_bool(file_cfg["loop"])
    else:
        loop = env_bool(env, "BACKUP_LOOP", True)

    if args.resume_uploads is not None:
        resume_uploads = args.resume_uploads
    elif "resume_uploads" in file_cfg:
        resume_uploads = parse_bool(file_cfg["resume_uploads"])
    else:
        resume_uploads = env_bool(env, "RESUME_UPLOADS", True)

    return BackupConfig(
        client_id=credentials["client_id"],
        client_secret=credentials["client_secret"],
        tenant_id=credentials["tenant_id"],
        drive_id=credentials["drive_id"],
        source_dir=Path(source_dir).expanduser().resolve(),
        staging_dir=Path(staging_dir).expanduser().resolve(),
        destination_folder=normalize_remote_path(destination),
        max_backups=max_backups,
        interval_minutes=interval_minutes,
        loop=loop,
        request_timeout=request_timeout,
        chunk_size=align_chunk_size(chunk_mib),
        range_attempts=range_attempts or None,
        resume_uploads=resume_uploads,
        dry_run=args.dry_run,
    )


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def format_duration(seconds: int) -> str:
    units = [
        (7 * 24 * 60 * 60, "week"),
        (24 * 60 * 60, "day"),
        (60 * 60, "hour"),
        (60, "minute"),
        (1, "second"),
    ]
    for unit_seconds, label in units:
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            value = seconds // unit_seconds
            name = label if value == 1 else f"{label}s"
            return f"{value} {name}"
    return f"{seconds} seconds"


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; anything unparseable is the zero time."""
    match = RFC3339_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        return ZERO_TIME
    date_part, time_part, fraction, offset = match.groups()
    micros = (fraction or "0")[:6].ljust(6, "0")
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        return datetime.strptime(
            f"{date_part}T{time_part}.{micros}{offset}", "%Y-%m-%dT%H:%M:%S.%f%z"
        )
    except ValueError:
        return ZERO_TIME


def select_backups_to_delete(
    entries: Sequence[RemoteEntry], max_backups: int
) -> List[RemoteEntry]:
    """Return the oldest entries beyond ``max_backups``, oldest first.

    Entries whose timestamp cannot be parsed count as the oldest. Equal
    timestamps keep their listing order.
    """
    if max_backups < 0:
        raise ValueError("max_backups must not be negative.")

    excess = len(entries) - max_backups
    if excess <= 0:
        return []

    keyed: List[Tuple[datetime, RemoteEntry]] = []
    for entry in entries:
        timestamp = parse_timestamp(entry.last_modified)
        if timestamp == ZERO_TIME:
            logging.debug(
                "Backup %s has an unreadable timestamp %r; treating it as oldest.",
                entry.name,
                entry.last_modified,
            )
        keyed.append((timestamp, entry))

    keyed.sort(key=lambda item: item[0])
    return [entry for _, entry in keyed[:excess]]


def build_onedrive(
    config: BackupConfig, session: Optional[requests.Session] = None
) -> Tuple[RemoteDirectory, ResumableUploader]:
    session = session or requests.Session()
    tokens = TokenProvider(
        config.client_id,
        config.client_secret,
        config.tenant_id,
        session=session,
        timeout=config.request_timeout,
    )
    client = GraphClient(
        tokens, config.drive_id, session=session, timeout=config.request_timeout
    )
    state = None
    if config.resume_uploads:
        state = UploadStateStore(config.staging_dir / UPLOAD_STATE_FILENAME)
    uploader = ResumableUploader(
        client,
        chunk_size=config.chunk_size,
        retry=RetryPolicy(delay=RANGE_RETRY_DELAY, max_attempts=config.range_attempts),
        state=state,
    )
    return RemoteDirectory(client), uploader


def stage_archive(
    config: BackupConfig, uploader: ResumableUploader, timestamp: Optional[datetime] = None
) -> Path:
    pending = uploader.pending_upload()
    if pending is not None and pending.folder == config.destination_folder:
        staged = find_staged_archive(config.staging_dir, pending.name)
        if staged is not None and staged.stat().st_size == pending.total_size:
            logging.info("Resuming interrupted backup %s", staged.name)
            return staged
    return create_archive(config.source_dir, config.staging_dir, timestamp)


def prune_remote_backups(
    directory: RemoteDirectory, folder: str, max_backups: int, *, dry_run: bool
) -> Tuple[List[str], List[str]]:
    """Delete the oldest remote backups beyond the cap.

    Returns the names deleted and the names whose deletion failed. A failed
    deletion is logged and the pass moves on to the next candidate.
    """
    if dry_run:
        listing = directory.probe(folder)
        entries = list(listing.entries)
    else:
        entries = directory.list(folder)

    victims = select_backups_to_delete(entries, max_backups)
    if not victims:
        logging.info(
            "%d backup(s) in %s; retention cap of %d not exceeded.",
            len(entries),
            folder,
            max_backups,
        )
        return [], []

    action = "Would delete" if dry_run else "Deleting"
    pruned: List[str] = []
    failures: List[str] = []
    for entry in victims:
        logging.info(
            "%s old backup %s/%s (last modified %s)",
            action,
            folder,
            entry.name,
            entry.last_modified or "unknown",
        )
        if dry_run:
            continue
        try:
            directory.delete(entry.id)
        except OneDriveError as error:
            logging.error("Failed to delete old backup %s: %s", entry.name, error)
            failures.append(entry.name)
            continue
        pruned.append(entry.name)
    return pruned, failures


def upload_archive(
    uploader: ResumableUploader, archive_path: Path, folder: str, retry: RetryPolicy
) -> None:
    def attempt() -> None:
        try:
            total_size = archive_path.stat().st_size
            stream = archive_path.open("rb")
        except OSError as error:
            raise LocalIOError(f"Could not open {archive_path}: {error}") from error
        with stream:
            uploader.upload(stream, total_size, folder, archive_path.name)

    retry.call(attempt, retry_on=OneDriveError, description=f"Upload of {archive_path.name}")


def run_cycle(
    config: BackupConfig,
    directory: RemoteDirectory,
    uploader: ResumableUploader,
    *,
    upload_retry: Optional[RetryPolicy] = None,
    timestamp: Optional[datetime] = None,
) -> CycleResult:
    """Archive, prune, upload and clean up, each step after the previous one."""
    if upload_retry is None:
        upload_retry = RetryPolicy(
            delay=UPLOAD_RETRY_DELAY, max_attempts=None if config.loop else 1
        )
    result = CycleResult()
    folder = config.destination_folder

    if config.dry_run:
        try:
            result.pruned, _ = prune_remote_backups(
                directory, folder, config.max_backups, dry_run=True
            )
        except OneDriveError as error:
            result.error = f"Listing {folder} failed: {error}"
            logging.error("%s", result.error)
            return result
        logging.info("Would archive %s and upload it to %s", config.source_dir, folder)
        return result

    try:
        archive_path = stage_archive(config, uploader, timestamp)
        result.archive_name = archive_path.name

        result.pruned, result.prune_failures = prune_remote_backups(
            directory, folder, config.max_backups, dry_run=False
        )

        upload_archive(uploader, archive_path, folder, upload_retry)
        result.uploaded = True
    except LocalIOError as error:
        result.error = str(error)
        logging.error("Backup cycle failed: %s", error)
    except OneDriveError as error:
        result.error = str(error)
        logging.error("Backup cycle failed: %s", error)
    except Exception as error:  # keep generic so continuous mode survives the cycle
        result.error = str(error) or type(error).__name__
        logging.exception("Backup cycle failed unexpectedly: %s", error)
    finally:
        try:
            removed = clear_staging(config.staging_dir)
        except LocalIOError as error:
            logging.error("Failed to clear staging directory: %s", error)
            if result.error is None:
                result.error = str(error)
        else:
            if removed:
                logging.debug("Removed %d staged file(s)", len(removed))

    if result.ok:
        if result.pruned:
            logging.info(
                "Completed backup cycle: uploaded %s; pruned %d remote backup(s).",
                result.archive_name,
                len(result.pruned),
            )
        else:
            logging.info(
                "Completed backup cycle: uploaded %s; no remote pruning required.",
                result.archive_name,
            )
    return result


def main(
    argv: Optional[Iterable[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config, environ)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    if not config.source_dir.is_dir():
        logging.error("Source directory %s does not exist.", config.source_dir)
        return 2

    directory, uploader = build_onedrive(config)
    logging.info(
        "Backing up %s to OneDrive folder %s, keeping %d backup(s).",
        config.source_dir,
        config.destination_folder,
        config.max_backups,
    )

    while True:
        result = run_cycle(config, directory, uploader)
        if not config.loop:
            return 0 if result.ok else 1
        interval = config.interval_minutes * 60
        logging.info("Next backup cycle in %s.", format_duration(interval))
        time.sleep(interval)


if __name__ == "__main__":
    sys.exit(main())
