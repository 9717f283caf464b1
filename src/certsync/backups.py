"""Date-stamped backups of installed material and their retention."""
from __future__ import annotations

import fnmatch
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

from .errors import SyncError
from .exit_codes import ExitCode

BACKUP_DATE_FORMAT = "%Y%m%d"
_DATE_SUFFIX = re.compile(r"\.\d{8}$")


class BackupError(SyncError):
    """Raised when an existing destination file cannot be backed up."""

    stage = "backup"
    exit_code = ExitCode.BACKUP


@dataclass(frozen=True)
class RetentionPolicy:
    """Backups strictly older than ``days`` are eligible for deletion."""

    days: int = 365

    @property
    def max_age(self) -> timedelta:
        """Return the retention window as a timedelta."""
        return timedelta(days=self.days)

    def expired(self, modified: datetime, now: datetime) -> bool:
        """Return True when a file modified at *modified* should be removed."""
        return now - modified > self.max_age


@dataclass(frozen=True)
class PruneWarning:
    """A backup that could not be removed; never fatal."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class PruneResult:
    """Outcome of a retention sweep."""

    removed: list[Path] = field(default_factory=list)
    warnings: list[PruneWarning] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Return the number of backups removed."""
        return len(self.removed)


def backup_path(path: Path, today: date) -> Path:
    """Return ``<path>.<YYYYMMDD>`` for *today*."""
    return path.with_name(f"{path.name}.{today.strftime(BACKUP_DATE_FORMAT)}")


def backup_pattern(path: Path) -> str:
    """Return the glob matching backups of *path*."""
    return f"{path.name}.*"


def snapshot(paths: Iterable[Path], today: date) -> list[Path]:
    """Copy each existing file in *paths* to its dated backup path.

    Missing files are skipped. The first copy failure raises
    :class:`BackupError`; later paths are not attempted. A backup taken earlier
    the same day is overwritten. Backups take the copy time as their mtime so
    retention never removes a backup that was just taken.
    """
    created: list[Path] = []
    for path in paths:
        if not path.exists():
            continue
        target = backup_path(path, today)
        try:
            shutil.copy(path, target)
        except OSError as exc:
            raise BackupError(f"Failed to back up {path} to {target}: {exc}") from exc
        created.append(target)
    return created


def prune(
    directory: Path,
    pattern: str,
    retention: RetentionPolicy,
    *,
    now: datetime | None = None,
    dry_run: bool = False,
) -> PruneResult:
    """Delete backups in *directory* matching *pattern* that exceed *retention*.

    The scan is not recursive and only considers names ending in an eight
    digit date stamp. Individual failures are collected as warnings. With
    *dry_run* the expired files are reported but left in place.
    """
    now = _aware(now)
    result = PruneResult()
    try:
        entries = sorted(directory.iterdir())
    except FileNotFoundError:
        return result
    except OSError as exc:
        result.warnings.append(PruneWarning(directory, f"cannot list directory: {exc}"))
        return result

    for entry in entries:
        if not fnmatch.fnmatchcase(entry.name, pattern) or not _DATE_SUFFIX.search(entry.name):
            continue
        try:
            if not entry.is_file():
                continue
            modified = datetime.fromtimestamp(entry.stat().st_mtime, tz=UTC)
            if not retention.expired(modified, now):
                continue
            if not dry_run:
                entry.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            result.warnings.append(PruneWarning(entry, str(exc)))
            continue
        result.removed.append(entry)
    return result


def _aware(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(tz=UTC)
    # Naive values are local time.
    return now.astimezone(UTC)


def prune_destinations(
    paths: Iterable[Path],
    retention: RetentionPolicy,
    *,
    now: datetime | None = None,
    dry_run: bool = False,
) -> PruneResult:
    """Apply *retention* to the backups of every destination file in *paths*."""
    combined = PruneResult()
    for path in paths:
        result = prune(path.parent, backup_pattern(path), retention, now=now, dry_run=dry_run)
        combined.removed.extend(result.removed)
        combined.warnings.extend(result.warnings)
    return combined


__all__ = [
    "BACKUP_DATE_FORMAT",
    "BackupError",
    "PruneResult",
    "PruneWarning",
    "RetentionPolicy",
    "backup_path",
    "backup_pattern",
    "prune",
    "prune_destinations",
    "snapshot",
]
