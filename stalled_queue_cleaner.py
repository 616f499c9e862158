#!/usr/bin/env python3
"""
Stalled Queue Cleaner
Tracks download progress in the Radarr/Sonarr queue and removes downloads that stop progressing.
"""

__version__ = "1.0.0"

import argparse
import logging
import math
import os
import sqlite3
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator

import requests

# ============================================================================
# CONFIGURATION - Defaults, each one overridable on the command line
# ============================================================================

# Connection Settings
ARR_URL = os.environ.get("ARR_URL", "")
ARR_API_KEY = os.environ.get("ARR_API_KEY", "")
ARR_TYPE = os.environ.get("ARR_TYPE", "")  # "radarr" or "sonarr"
REQUEST_TIMEOUT = os.environ.get("REQUEST_TIMEOUT", "30")  # Seconds per HTTP request

# Store Settings
# The store file is <DB_DIR>/<DB_NAME>.db and is kept between runs.
DB_NAME = os.environ.get("DB_NAME", "")
DB_DIR = os.environ.get("DB_DIR", ".")

# Eviction Settings
TIME_THRESHOLD = os.environ.get("TIME_THRESHOLD", "168")  # Hours without progress before removal (one week)
GRACE_PERIOD = os.environ.get("GRACE_PERIOD", "168")  # Hours missing from the queue before the record is dropped

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# ============================================================================
# END CONFIGURATION
# ============================================================================

# Both variants expose the same v3 queue API
QUEUE_API_PATHS = {
    "radarr": "/api/v3/queue",
    "sonarr": "/api/v3/queue",
}

PAGE_SIZE = 50
ACTIVE_STATES = {"downloading", "error", "failed"}

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """A required option is missing or an option has an invalid value."""


class TransportError(Exception):
    """The queue could not be read, so no pass can run against it."""


# ----------------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    url: str
    api_key: str
    queue_kind: str
    store_path: str
    stall_threshold_hours: float = 168
    grace_period_hours: float = 168
    timeout: float = 30

    @property
    def queue_url(self) -> str:
        return self.url.rstrip("/") + QUEUE_API_PATHS[self.queue_kind]


def resolve_store_path(db_name: str, db_dir: str = ".") -> str:
    """Map a store name to its file, so "tracker" and "tracker.db" are the same store."""
    if db_name.endswith(".db"):
        db_name = db_name[:-3]
    return os.path.join(db_dir, f"{db_name}.db")


def _parse_number(name: str, value, problems: list) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        problems.append(f"{name} must be a number (got {value!r})")
        return None
    if not math.isfinite(number):
        problems.append(f"{name} must be a finite number (got {value!r})")
        return None
    if number < 0:
        problems.append(f"{name} must not be negative (got {value!r})")
        return None
    return number


def build_settings(
    url: str,
    api_key: str,
    queue_kind: str,
    db_name: str,
    db_dir: str = ".",
    time_threshold="168",
    grace_period="168",
    timeout="30",
) -> Settings:
    """Validate raw option values and build the settings for a pass."""
    url = (url or "").strip()
    api_key = (api_key or "").strip()
    queue_kind = (queue_kind or "").strip().lower()
    db_name = (db_name or "").strip()

    problems = []
    missing = [
        flag for flag, value in (
            ("--url", url),
            ("--api-key", api_key),
            ("--type", queue_kind),
            ("--db-name", db_name),
        )
        if not value
    ]
    if missing:
        problems.append(f"{', '.join(missing)} required")

    if queue_kind and queue_kind not in QUEUE_API_PATHS:
        problems.append(f"invalid type {queue_kind!r}, must be one of: {', '.join(sorted(QUEUE_API_PATHS))}")

    stall_threshold = _parse_number("--time-threshold", time_threshold, problems)
    grace_period_hours = _parse_number("--grace-period", grace_period, problems)
    request_timeout = _parse_number("--timeout", timeout, problems)
    if request_timeout == 0:
        problems.append("--timeout must be greater than 0")

    if problems:
        raise ConfigurationError("; ".join(problems))

    return Settings(
        url=url,
        api_key=api_key,
        queue_kind=queue_kind,
        store_path=resolve_store_path(db_name, db_dir or "."),
        stall_threshold_hours=stall_threshold,
        grace_period_hours=grace_period_hours,
        timeout=request_timeout,
    )


# ----------------------------------------------------------------------------
# Size formatting
# ----------------------------------------------------------------------------

def format_size(num_bytes: int) -> str:
    """Convert a byte count to a human readable string."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 ** 2:
        return f"{num_bytes / 1024:.2f} KB"
    if num_bytes < 1024 ** 3:
        return f"{num_bytes / 1024 ** 2:.2f} MB"
    return f"{num_bytes / 1024 ** 3:.2f} GB"


def _format_delta(delta: int) -> str:
    if delta < 0:
        return f"-{format_size(-delta)}"
    return format_size(delta)


# ----------------------------------------------------------------------------
# Remote queue
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class QueueEntry:
    id: str
    total_size: int
    size_left: int

    @property
    def progress(self) -> int:
        return self.total_size - self.size_left


def iter_queue_pages(queue_url: str, api_key: str, timeout: float = 30) -> Iterator[list]:
    """
    Yield the records of each queue page in order.

    Stops after an empty page or a page shorter than PAGE_SIZE, whatever
    totals the server reports. Any failure raises TransportError.
    """
    page = 1
    while True:
        logger.info(f"Fetching page {page} of active downloads from {queue_url}")
        try:
            response = requests.get(
                queue_url,
                params={"apikey": api_key, "page": page, "pageSize": PAGE_SIZE},
                timeout=timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise TransportError(f"Unable to fetch queue page {page} from {queue_url}: {e}") from e
        except ValueError as e:
            raise TransportError(f"Queue page {page} from {queue_url} is not valid JSON: {e}") from e

        records = payload.get("records") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            raise TransportError(f"Queue page {page} from {queue_url} has no records list")

        if not records:
            return
        yield records
        if len(records) < PAGE_SIZE:
            return
        page += 1


def is_active(record: dict) -> bool:
    """Downloading or failing entries count; anything still queued does not."""
    return (
        record.get("status") != "queued"
        and record.get("trackedDownloadState") in ACTIVE_STATES
    )


def fetch_active_entries(queue_url: str, api_key: str, timeout: float = 30) -> tuple:
    """Fetch every active queue entry as an immutable snapshot."""
    entries = {}
    for records in iter_queue_pages(queue_url, api_key, timeout):
        for record in records:
            if not is_active(record):
                continue

            download_id = record.get("downloadId")
            if not download_id:
                logger.warning(f"Queue record '{record.get('title', 'unknown')}' has no download ID. Skipping.")
                continue
            download_id = str(download_id)

            # Season packs report one record per episode under the same download
            if download_id in entries:
                continue

            try:
                total_size = int(record.get("size") or 0)
                size_left = int(record.get("sizeleft") or 0)
            except (TypeError, ValueError):
                logger.warning(f"Queue record for download (ID: {download_id}) has invalid sizes. Skipping.")
                continue

            entries[download_id] = QueueEntry(download_id, total_size, size_left)

    logger.info(f"Found {len(entries)} active downloads")
    return tuple(entries.values())


def delete_entry(queue_url: str, api_key: str, download_id: str, timeout: float = 30) -> bool:
    """Remove a download from the queue. Failure is logged, never raised."""
    try:
        response = requests.delete(
            f"{queue_url}/{download_id}",
            params={"apikey": api_key},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Failed to remove download (ID: {download_id}) from downloader: {e}")
        return False

    logger.info(f"Successfully removed download (ID: {download_id}) from downloader")
    return True


# ----------------------------------------------------------------------------
# Progress store
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class TrackedItem:
    id: str
    added_at: int
    progress: int
    last_seen: int
    last_progress: int


class ProgressStore:
    """Per-download progress history, kept in a SQLite file between runs."""

    UPDATABLE_FIELDS = ("progress", "last_seen", "last_progress")

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(path):
            logger.info(f"Initializing the database at {path}")

        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS torrents (
                id TEXT PRIMARY KEY,
                added_at INTEGER NOT NULL,
                progress INTEGER NOT NULL,
                last_seen INTEGER NOT NULL,
                last_progress INTEGER NOT NULL
            )
            """
        )
        self._conn.commit()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM torrents").fetchone()[0]

    def close(self) -> None:
        self._conn.close()

    def get(self, item_id: str) -> TrackedItem | None:
        row = self._conn.execute(
            "SELECT id, added_at, progress, last_seen, last_progress FROM torrents WHERE id = ?",
            (item_id,),
        ).fetchone()
        if row is None:
            return None
        return TrackedItem(**dict(row))

    def insert(self, item: TrackedItem) -> None:
        self._conn.execute(
            """
            INSERT INTO torrents (id, added_at, progress, last_seen, last_progress)
            VALUES (?, ?, ?, ?, ?)
            """,
            (item.id, item.added_at, item.progress, item.last_seen, item.last_progress),
        )
        self._conn.commit()

    def update(self, item_id: str, **fields) -> None:
        unknown = sorted(set(fields) - set(self.UPDATABLE_FIELDS))
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        self._conn.execute(
            f"UPDATE torrents SET {assignments} WHERE id = ?",
            (*fields.values(), item_id),
        )
        self._conn.commit()

    def delete(self, item_id: str) -> None:
        self._conn.execute("DELETE FROM torrents WHERE id = ?", (item_id,))
        self._conn.commit()

    def list_all_ids(self) -> set:
        return {row["id"] for row in self._conn.execute("SELECT id FROM torrents")}


# ----------------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------------

@dataclass
class PassResult:
    added: int = 0
    progressed: int = 0
    unchanged: int = 0
    retained_absent: int = 0
    evicted_absent: int = 0
    evicted_stalled: int = 0
    delete_failures: int = 0

    def summary(self) -> str:
        return (
            f"{self.added} added, {self.progressed} progressed, {self.unchanged} unchanged, "
            f"{self.evicted_stalled} removed as stalled, {self.evicted_absent} removed after grace period, "
            f"{self.retained_absent} missing but within grace period, {self.delete_failures} failed remote deletes"
        )


def hours_since(now: int, then: int) -> float:
    return (now - then) / 3600


def _record_observation(store: ProgressStore, entry: QueueEntry, now: int, result: PassResult) -> None:
    item = store.get(entry.id)
    progress = entry.progress

    if item is None:
        logger.info(
            f"Adding new download (ID: {entry.id}) to the database with downloaded progress: "
            f"{format_size(progress)} of {format_size(entry.total_size)}"
        )
        store.insert(TrackedItem(entry.id, now, progress, now, now))
        result.added += 1

    elif item.progress != progress:
        # Regressions are recorded as-is; the remote can report less after a recheck
        delta = progress - item.progress
        label = "Increased by" if delta > 0 else "Decreased by"
        logger.info(
            f"Updating progress for download (ID: {entry.id}). Previous downloaded: {format_size(item.progress)}, "
            f"Current downloaded: {format_size(progress)}, {label}: {_format_delta(delta)}"
        )
        store.update(entry.id, progress=progress, last_progress=now, last_seen=now)
        result.progressed += 1

    else:
        logger.info(
            f"No progress for download (ID: {entry.id}). Last progress was "
            f"{int(hours_since(now, item.last_progress))} hours ago. "
            f"Current downloaded: {format_size(progress)} of {format_size(entry.total_size)}."
        )
        store.update(entry.id, last_seen=now)
        result.unchanged += 1


def _evict(store: ProgressStore, item_id: str, remove_remote: Callable[[str], bool], result: PassResult) -> None:
    if not remove_remote(item_id):
        result.delete_failures += 1
    store.delete(item_id)


def reconcile(
    store: ProgressStore,
    snapshot: Iterable[QueueEntry],
    now: int,
    stall_threshold_hours: float,
    grace_period_hours: float,
    remove_remote: Callable[[str], bool],
) -> PassResult:
    """
    Apply one queue snapshot to the store.

    Every entry in the snapshot is recorded first. Only then is each stored
    record checked for eviction: records missing from the snapshot are
    dropped once unseen for longer than the grace period, and records still
    in the snapshot are dropped once their progress has been flat for longer
    than the stall threshold. Both evictions also ask the remote to delete
    the download; a failed remote delete does not keep the record.
    """
    result = PassResult()

    for entry in snapshot:
        _record_observation(store, entry, now, result)

    logger.info("Cleaning up old entries in the database")
    present_ids = {entry.id for entry in snapshot}
    grace_seconds = grace_period_hours * 3600
    stall_seconds = stall_threshold_hours * 3600

    for item_id in store.list_all_ids():
        item = store.get(item_id)

        if item_id not in present_ids:
            if now - item.last_seen > grace_seconds:
                logger.info(
                    f"Deleting old download entry with ID: {item_id} from the database after exceeding "
                    f"grace period (Grace period: {grace_period_hours:g} hours, "
                    f"Last seen: {int(hours_since(now, item.last_seen))} hours ago)"
                )
                _evict(store, item_id, remove_remote, result)
                result.evicted_absent += 1
            else:
                last_seen = datetime.fromtimestamp(item.last_seen).strftime("%Y-%m-%d %H:%M")
                logger.debug(f"Download ID: {item_id} has not exceeded grace period. Last seen: {last_seen}.")
                result.retained_absent += 1

        elif now - item.last_progress > stall_seconds:
            logger.info(
                f"Deleting download entry with ID: {item_id} from the database and downloader due to no progress "
                f"beyond threshold (Threshold: {stall_threshold_hours:g} hours, "
                f"Last progress: {int(hours_since(now, item.last_progress))} hours ago)"
            )
            _evict(store, item_id, remove_remote, result)
            result.evicted_stalled += 1

    return result


def run_pass(settings: Settings, now: int | None = None) -> PassResult:
    """Fetch the queue, then reconcile it against the store. One pass per run."""
    snapshot = fetch_active_entries(settings.queue_url, settings.api_key, settings.timeout)
    if now is None:
        now = int(time.time())

    def remove_remote(item_id: str) -> bool:
        return delete_entry(settings.queue_url, settings.api_key, item_id, settings.timeout)

    with ProgressStore(settings.store_path) as store:
        result = reconcile(
            store,
            snapshot,
            now,
            settings.stall_threshold_hours,
            settings.grace_period_hours,
            remove_remote,
        )

    logger.info(f"Pass complete: {result.summary()}")
    return result


# ----------------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------------

def parse_args(argv: list | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Track Radarr/Sonarr queue progress and remove stalled downloads."
    )
    parser.add_argument("--url", default=ARR_URL, help="Base URL of Radarr/Sonarr (or set ARR_URL)")
    parser.add_argument("--api-key", default=ARR_API_KEY, help="API key (or set ARR_API_KEY)")
    parser.add_argument("--type", dest="queue_kind", default=ARR_TYPE, help="radarr or sonarr (or set ARR_TYPE)")
    parser.add_argument("--db-name", default=DB_NAME, help="Name of the progress database (or set DB_NAME)")
    parser.add_argument("--db-dir", default=DB_DIR, help=f"Directory holding the database (default: {DB_DIR})")
    parser.add_argument(
        "--time-threshold",
        default=TIME_THRESHOLD,
        help=f"Hours without progress before a download is removed (default: {TIME_THRESHOLD})",
    )
    parser.add_argument(
        "--grace-period",
        default=GRACE_PERIOD,
        help=f"Hours a download may be missing from the queue before it is forgotten (default: {GRACE_PERIOD})",
    )
    parser.add_argument(
        "--timeout",
        default=REQUEST_TIMEOUT,
        help=f"HTTP request timeout in seconds (default: {REQUEST_TIMEOUT})",
    )
    parser.add_argument("--log-level", default=LOG_LEVEL, help=f"Logging level (default: {LOG_LEVEL})")
    return parser.parse_args(argv)


def main(argv: list | None = None) -> int:
    """Run a single reconciliation pass and return the process exit code."""
    args = parse_args(argv)

    level = getattr(logging, str(args.log_level).upper(), None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    if not isinstance(level, int):
        logger.warning(f"Unknown log level {args.log_level!r}, using INFO")

    try:
        settings = build_settings(
            url=args.url,
            api_key=args.api_key,
            queue_kind=args.queue_kind,
            db_name=args.db_name,
            db_dir=args.db_dir,
            time_threshold=args.time_threshold,
            grace_period=args.grace_period,
            timeout=args.timeout,
        )
    except ConfigurationError as e:
        logger.error(f"Error: {e}")
        return 1

    logger.info("=" * 60)
    logger.info(f"Stalled Queue Cleaner v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Queue: {settings.queue_url} ({settings.queue_kind})")
    logger.info(f"Database: {settings.store_path}")
    logger.info(f"Stall threshold: {settings.stall_threshold_hours:g} hours")
    logger.info(f"Grace period: {settings.grace_period_hours:g} hours")
    logger.info("=" * 60)

    try:
        run_pass(settings)
    except TransportError as e:
        logger.error(f"Error: {e}")
        return 1

    logger.info("Script execution completed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
