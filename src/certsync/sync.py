"""The certificate sync procedure.

``CertificateSync.run`` walks a fixed sequence of stages::

    FETCHING -> COMPARING -> UP_TO_DATE
                          -> BACKING_UP -> PRUNING -> INSTALLING -> RELOADING -> DONE

Any stage may end the run in ``FAILED``. Staged material is always discarded;
files installed before a failure are left in place.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path

import requests

from .backups import PruneWarning, RetentionPolicy, prune_destinations, snapshot
from .compare import destination_differs, sources_older_than
from .config import AppConfig, ConfigError
from .errors import SyncError
from .exit_codes import ExitCode
from .installer import Destination, Installer, build_destination
from .providers import Reloader, build_reloader
from .sources import LocalSource, SourceProvider, StagingArea, build_source


class SyncState(Enum):
    """States of a sync run."""

    FETCHING = "fetching"
    COMPARING = "comparing"
    UP_TO_DATE = "up-to-date"
    PENDING = "pending"
    BACKING_UP = "backing-up"
    PRUNING = "pruning"
    INSTALLING = "installing"
    RELOADING = "reloading"
    DONE = "done"
    FAILED = "failed"


TERMINAL_SUCCESS = {SyncState.UP_TO_DATE, SyncState.PENDING, SyncState.DONE}

Reporter = Callable[[SyncState, str], None]


@dataclass
class SyncOutcome:
    """Result of one run, including what was touched on disk."""

    state: SyncState = SyncState.FETCHING
    failed_stage: SyncState | None = None
    error: SyncError | None = None
    backups: list[Path] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)
    warnings: list[PruneWarning] = field(default_factory=list)
    installed: list[Path] = field(default_factory=list)
    reloaded: bool = False

    @property
    def ok(self) -> bool:
        """Return True for the successful terminal states."""
        return self.state in TERMINAL_SUCCESS

    @property
    def changed(self) -> bool:
        """Return True when new material was written to disk."""
        return bool(self.installed)

    @property
    def exit_code(self) -> ExitCode:
        """Return the process exit code for this outcome."""
        if self.ok:
            return ExitCode.OK
        if self.error is not None:
            return self.error.exit_code
        return ExitCode.INSTALL

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error.to_dict() if self.error is not None else None,
            "backups": [str(path) for path in self.backups],
            "pruned": [str(path) for path in self.pruned],
            "warnings": [str(warning) for warning in self.warnings],
            "installed": [str(path) for path in self.installed],
            "reloaded": self.reloaded,
            "exit_code": int(self.exit_code),
        }


def _silent(state: SyncState, message: str) -> None:
    return None


class CertificateSync:
    """Fetch, compare, back up, install, prune and reload certificate material."""

    def __init__(
        self,
        source: SourceProvider,
        destination: Destination,
        reloader: Reloader,
        *,
        installer: Installer | None = None,
        retention: RetentionPolicy | None = None,
        staging_root: Path | None = None,
        fast_compare: bool = False,
        reporter: Reporter | None = None,
    ) -> None:
        """Wire the stage implementations together."""
        self.source = source
        self.destination = destination
        self.reloader = reloader
        self.installer = installer or Installer()
        self.retention = retention or RetentionPolicy()
        self.staging_root = staging_root
        self.fast_compare = fast_compare
        self._report = reporter or _silent

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        session: requests.Session | None = None,
        force_compare: bool = False,
        reporter: Reporter | None = None,
    ) -> CertificateSync:
        """Build a sync from the immutable application configuration."""
        missing = config.missing_settings()
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}.")
        return cls(
            source=build_source(config.source, session=session),
            destination=build_destination(config.destination),
            reloader=build_reloader(config.reload),
            retention=RetentionPolicy(days=config.backups.retention_days),
            staging_root=config.staging_dir,
            fast_compare=config.compare == "mtime" and not force_compare,
            reporter=reporter,
        )

    def run(
        self,
        *,
        today: date | None = None,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> SyncOutcome:
        """Execute the procedure once and return its outcome."""
        outcome = SyncOutcome()
        try:
            with StagingArea(self.staging_root) as staging:
                self._enter(
                    outcome,
                    SyncState.FETCHING,
                    f"Fetching material from {self.source.describe()}",
                )
                if self._fast_path_applies():
                    self._enter(
                        outcome,
                        SyncState.UP_TO_DATE,
                        "Sources are older than the destination. No changes made.",
                    )
                    return outcome
                material = self.source.fetch(staging)

                self._enter(outcome, SyncState.COMPARING, "Comparing with installed material")
                if not destination_differs(material, self.destination):
                    self._enter(
                        outcome,
                        SyncState.UP_TO_DATE,
                        "Installed material is already up-to-date.",
                    )
                    return outcome
                if dry_run:
                    self._enter(outcome, SyncState.PENDING, "Installed material differs.")
                    return outcome

                self._enter(outcome, SyncState.BACKING_UP, "Backing up installed material")
                outcome.backups = snapshot(self.destination.paths(), today or date.today())
                for backup in outcome.backups:
                    self._report(SyncState.BACKING_UP, f"Backed up to {backup}")

                self._enter(
                    outcome,
                    SyncState.PRUNING,
                    f"Removing backups older than {self.retention.days} days",
                )
                self._prune(outcome, now)

                self._enter(outcome, SyncState.INSTALLING, "Installing new material")
                outcome.installed = self.installer.write(material, self.destination)
        except SyncError as exc:
            return self._fail(outcome, exc)

        self._enter(outcome, SyncState.RELOADING, f"Reloading: {self.reloader.describe()}")
        try:
            self.reloader.fire()
        except SyncError as exc:
            return self._fail(outcome, exc)
        outcome.reloaded = True
        self._enter(outcome, SyncState.DONE, "Certificate material updated and service reloaded.")
        return outcome

    def _fast_path_applies(self) -> bool:
        if not self.fast_compare or not isinstance(self.source, LocalSource):
            return False
        return sources_older_than(self.source.paths, self.destination)

    def _prune(self, outcome: SyncOutcome, now: datetime | None) -> None:
        result = prune_destinations(self.destination.paths(), self.retention, now=now)
        outcome.pruned = result.removed
        outcome.warnings = result.warnings
        for warning in result.warnings:
            self._report(SyncState.PRUNING, f"Could not remove old backup {warning}")
        self._report(SyncState.PRUNING, f"Removed {len(outcome.pruned)} old backup(s).")

    def _enter(self, outcome: SyncOutcome, state: SyncState, message: str) -> None:
        outcome.state = state
        self._report(state, message)

    def _fail(self, outcome: SyncOutcome, exc: SyncError) -> SyncOutcome:
        outcome.failed_stage = outcome.state
        outcome.error = exc
        outcome.state = SyncState.FAILED
        self._report(SyncState.FAILED, str(exc))
        return outcome


__all__ = ["CertificateSync", "Reporter", "SyncOutcome", "SyncState"]
