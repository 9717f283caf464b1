"""Tests for the end-to-end sync procedure."""
from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest

from certsync.backups import RetentionPolicy
from certsync.config import (
    AppConfig,
    ConfigError,
    LocalSourceConfig,
    RemoteSourceConfig,
    load_config,
)
from certsync.exit_codes import ExitCode
from certsync.installer import SeparateFiles, SingleBundle, atomic_write_bytes
from certsync.providers import ReloadError, ReloadFailure
from certsync.sources import LocalSource, RemoteSource
from certsync.sync import CertificateSync, SyncState

from conftest import FakeResponse, FakeSession

TODAY = date(2026, 10, 18)
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

REMOTE = RemoteSourceConfig(
    server="certwarden.example.com",
    name="unifi.example.com",
    cert_token="cert-secret",
    key_token="key-secret",
)


class FakeReloader:
    """Count reload attempts and optionally fail them."""

    def __init__(self, *, fail: bool = False) -> None:
        """Configure whether :meth:`fire` raises."""
        self.fail = fail
        self.calls = 0

    def describe(self) -> str:
        return "fake reload"

    def fire(self) -> list[object]:
        self.calls += 1
        if self.fail:
            raise ReloadError("unifi-core.service failed", kind=ReloadFailure.ACTION_FAILED)
        return []


def _routes(cert: bytes, key: bytes) -> dict[str, FakeResponse]:
    return {
        REMOTE.cert_url: FakeResponse(content=cert),
        REMOTE.key_url: FakeResponse(content=key),
    }


def _snapshot(directory: Path) -> dict[str, tuple[bytes, float]]:
    return {
        path.name: (path.read_bytes(), path.stat().st_mtime)
        for path in sorted(directory.iterdir())
    }


@pytest.fixture
def destination(tmp_path: Path) -> SeparateFiles:
    """Return a separate-files destination holding version one."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    cert = config_dir / "unifi-core.crt"
    key = config_dir / "unifi-core.key"
    cert.write_bytes(b"CERT-V1")
    key.write_bytes(b"KEY-V1")
    return SeparateFiles(cert=cert, key=key)


def _sync(
    session: FakeSession,
    destination: SeparateFiles | SingleBundle,
    reloader: FakeReloader,
    tmp_path: Path,
    states: list[SyncState] | None = None,
) -> CertificateSync:
    def report(state: SyncState, message: str) -> None:
        if states is not None:
            states.append(state)

    return CertificateSync(
        source=RemoteSource(REMOTE, session=session),  # type: ignore[arg-type]
        destination=destination,
        reloader=reloader,
        staging_root=tmp_path / "staging",
        reporter=report,
    )


def test_rotation_installs_backs_up_and_reloads(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """New material replaces the old, backups are taken and the service reloads once."""
    reloader = FakeReloader()
    states: list[SyncState] = []
    session = fake_session(_routes(b"CERT-V2", b"KEY-V2"))
    sync = _sync(session, destination, reloader, tmp_path, states)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.state is SyncState.DONE
    assert outcome.exit_code == ExitCode.OK
    assert outcome.changed is True
    assert destination.cert.read_bytes() == b"CERT-V2"
    assert destination.key.read_bytes() == b"KEY-V2"
    assert destination.cert.stat().st_mode & 0o777 == 0o600
    assert destination.key.stat().st_mode & 0o777 == 0o600
    config_dir = destination.cert.parent
    assert (config_dir / "unifi-core.crt.20261018").read_bytes() == b"CERT-V1"
    assert (config_dir / "unifi-core.key.20261018").read_bytes() == b"KEY-V1"
    assert reloader.calls == 1
    assert outcome.reloaded is True
    assert states == [
        SyncState.FETCHING,
        SyncState.COMPARING,
        SyncState.BACKING_UP,
        SyncState.BACKING_UP,
        SyncState.BACKING_UP,
        SyncState.PRUNING,
        SyncState.PRUNING,
        SyncState.INSTALLING,
        SyncState.RELOADING,
        SyncState.DONE,
    ]
    assert not list((tmp_path / "staging").iterdir())


def test_repeat_run_is_idempotent(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """A second run with unchanged material touches nothing and skips the reload."""
    session = fake_session(_routes(b"CERT-V2", b"KEY-V2"))
    reloader = FakeReloader()
    _sync(session, destination, reloader, tmp_path).run(today=TODAY, now=NOW)
    before = _snapshot(destination.cert.parent)

    outcome = _sync(session, destination, reloader, tmp_path).run(
        today=TODAY + timedelta(days=1), now=NOW + timedelta(days=1)
    )

    assert outcome.state is SyncState.UP_TO_DATE
    assert outcome.exit_code == ExitCode.OK
    assert outcome.changed is False
    assert reloader.calls == 1
    assert _snapshot(destination.cert.parent) == before


def test_key_only_change_replaces_both_files(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """Certificate and key are always installed together."""
    reloader = FakeReloader()
    sync = _sync(fake_session(_routes(b"CERT-V1", b"KEY-V2")), destination, reloader, tmp_path)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.installed == [destination.cert, destination.key]
    assert destination.key.read_bytes() == b"KEY-V2"
    assert len(outcome.backups) == 2


def test_fetch_failure_leaves_destination_untouched(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """If the key download fails nothing is backed up, installed or reloaded."""
    routes = {REMOTE.cert_url: FakeResponse(content=b"CERT-V2")}
    reloader = FakeReloader()
    before = _snapshot(destination.cert.parent)

    outcome = _sync(fake_session(routes), destination, reloader, tmp_path).run(
        today=TODAY, now=NOW
    )

    assert outcome.state is SyncState.FAILED
    assert outcome.failed_stage is SyncState.FETCHING
    assert outcome.exit_code == ExitCode.FETCH
    assert reloader.calls == 0
    assert _snapshot(destination.cert.parent) == before
    assert not list((tmp_path / "staging").iterdir())


def test_reload_failure_keeps_installed_material(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """A failed reload is reported but the new files stay in place."""
    reloader = FakeReloader(fail=True)
    sync = _sync(fake_session(_routes(b"CERT-V2", b"KEY-V2")), destination, reloader, tmp_path)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.state is SyncState.FAILED
    assert outcome.failed_stage is SyncState.RELOADING
    assert outcome.exit_code == ExitCode.RELOAD
    assert outcome.reloaded is False
    assert destination.cert.read_bytes() == b"CERT-V2"
    assert outcome.to_dict()["error"]["stage"] == "reload"  # type: ignore[index]


def test_backup_failure_aborts_before_install(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without a backup the installed files are not replaced."""

    def fail_copy(src: Path, dst: Path) -> None:
        raise OSError("No space left on device")

    monkeypatch.setattr("certsync.backups.shutil.copy", fail_copy)
    reloader = FakeReloader()
    sync = _sync(fake_session(_routes(b"CERT-V2", b"KEY-V2")), destination, reloader, tmp_path)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.failed_stage is SyncState.BACKING_UP
    assert outcome.exit_code == ExitCode.BACKUP
    assert destination.cert.read_bytes() == b"CERT-V1"
    assert reloader.calls == 0


def test_dry_run_reports_pending(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """Dry runs stop after comparison."""
    reloader = FakeReloader()
    before = _snapshot(destination.cert.parent)
    sync = _sync(fake_session(_routes(b"CERT-V2", b"KEY-V2")), destination, reloader, tmp_path)

    outcome = sync.run(today=TODAY, now=NOW, dry_run=True)

    assert outcome.state is SyncState.PENDING
    assert outcome.exit_code == ExitCode.OK
    assert reloader.calls == 0
    assert _snapshot(destination.cert.parent) == before


def test_old_backups_are_pruned_during_rotation(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """Expired backups disappear; recent ones and today's backup remain."""
    config_dir = destination.cert.parent
    expired = config_dir / "unifi-core.crt.20240101"
    expired.write_bytes(b"ANCIENT")
    stamp = (NOW - timedelta(days=400)).timestamp()
    os.utime(expired, (stamp, stamp))
    recent = config_dir / "unifi-core.crt.20260901"
    recent.write_bytes(b"RECENT")
    stamp = (NOW - timedelta(days=47)).timestamp()
    os.utime(recent, (stamp, stamp))
    session = fake_session(_routes(b"CERT-V2", b"KEY-V2"))
    sync = _sync(session, destination, FakeReloader(), tmp_path)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.pruned == [expired]
    assert not expired.exists()
    assert recent.exists()
    assert (config_dir / "unifi-core.crt.20261018").exists()


def test_first_install_into_empty_destination(
    tmp_path: Path,
    fake_session: Callable[..., FakeSession],
) -> None:
    """With no prior material there is nothing to back up."""
    bundle = SingleBundle(tmp_path / "ssl" / "certificate_bundle.pem")
    reloader = FakeReloader()
    sync = _sync(fake_session(_routes(b"CHAIN\n", b"KEY\n")), bundle, reloader, tmp_path)

    outcome = sync.run(today=TODAY, now=NOW)

    assert outcome.state is SyncState.DONE
    assert outcome.backups == []
    assert bundle.path.read_bytes() == b"CHAIN\nKEY\n"
    assert reloader.calls == 1


def test_local_bundle_fast_path_skips_fetch(
    tmp_path: Path,
    write_file: Callable[[Path, bytes], Path],
) -> None:
    """With mtime comparison enabled, older sources short-circuit the run."""
    cert = write_file(tmp_path / "src" / "certchain.pem", b"CHAIN")
    key = write_file(tmp_path / "src" / "key.pem", b"KEY")
    bundle = SingleBundle(write_file(tmp_path / "ssl" / "bundle.pem", b"STALE"))
    for path, stamp in ((cert, 1000), (key, 1000), (bundle.path, 2000)):
        os.utime(path, (stamp, stamp))
    reloader = FakeReloader()
    source = LocalSource(LocalSourceConfig(cert=cert, key=key))

    fast = CertificateSync(source, bundle, reloader, fast_compare=True)
    assert fast.run(today=TODAY, now=NOW).state is SyncState.UP_TO_DATE
    assert bundle.path.read_bytes() == b"STALE"

    thorough = CertificateSync(source, bundle, reloader, retention=RetentionPolicy(30))
    outcome = thorough.run(today=TODAY, now=NOW)
    assert outcome.state is SyncState.DONE
    assert bundle.path.read_bytes() == b"CHAINKEY"


def _configured(tmp_path: Path, **overrides: object) -> AppConfig:
    return load_config(config_file=tmp_path / "absent.yml", env={}, overrides=overrides)


def test_from_config_requires_complete_settings(tmp_path: Path) -> None:
    """Unconfigured runs fail before any network or disk activity."""
    with pytest.raises(ConfigError, match="source.remote.server"):
        CertificateSync.from_config(_configured(tmp_path))


def test_from_config_force_compare_disables_fast_path(tmp_path: Path) -> None:
    """``force_compare`` always selects byte comparison."""
    config = _configured(
        tmp_path,
        compare="mtime",
        source={"kind": "local", "local": {"cert": "/src/c.pem", "key": "/src/k.pem"}},
        destination={"layout": "bundle", "bundle": str(tmp_path / "bundle.pem")},
        reload={"kind": "command", "commands": ["/bin/true"]},
    )

    assert CertificateSync.from_config(config).fast_compare is True
    assert CertificateSync.from_config(config, force_compare=True).fast_compare is False


def test_backups_of_long_untouched_destination_survive_pruning(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
) -> None:
    """Backups of files older than the retention window are not pruned on creation."""
    stamp = (datetime.now(tz=UTC) - timedelta(days=400)).timestamp()
    for path in destination.paths():
        os.utime(path, (stamp, stamp))
    session = fake_session(_routes(b"CERT-V2", b"KEY-V2"))
    sync = _sync(session, destination, FakeReloader(), tmp_path)

    outcome = sync.run(today=TODAY)

    assert outcome.state is SyncState.DONE
    assert outcome.pruned == []
    config_dir = destination.cert.parent
    assert (config_dir / "unifi-core.crt.20261018").read_bytes() == b"CERT-V1"
    assert (config_dir / "unifi-core.key.20261018").read_bytes() == b"KEY-V1"


def test_naive_now_is_accepted(
    tmp_path: Path,
    fake_session: Callable[..., FakeSession],
) -> None:
    """A timezone-naive ``now`` is treated as local time during pruning."""
    bundle = SingleBundle(tmp_path / "ssl" / "certificate_bundle.pem")
    bundle.path.parent.mkdir()
    bundle.path.write_bytes(b"CHAIN-V1KEY-V1")
    expired = bundle.path.with_name("certificate_bundle.pem.20240101")
    expired.write_bytes(b"OLD")
    naive_now = datetime.now()
    stamp = (naive_now - timedelta(days=400)).timestamp()
    os.utime(expired, (stamp, stamp))
    session = fake_session(_routes(b"CHAIN-V2", b"KEY-V2"))

    outcome = _sync(session, bundle, FakeReloader(), tmp_path).run(today=TODAY, now=naive_now)

    assert outcome.state is SyncState.DONE
    assert outcome.pruned == [expired]


def test_install_failure_skips_reload_and_keeps_written_files(
    tmp_path: Path,
    destination: SeparateFiles,
    fake_session: Callable[..., FakeSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed key write aborts before reload and leaves the new certificate in place."""
    real_write = atomic_write_bytes

    def fail_on_key(path: Path, data: bytes, *, mode: int) -> None:
        if path == destination.key:
            raise OSError("No space left on device")
        real_write(path, data, mode=mode)

    monkeypatch.setattr("certsync.installer.atomic_write_bytes", fail_on_key)
    reloader = FakeReloader()
    session = fake_session(_routes(b"CERT-V2", b"KEY-V2"))

    outcome = _sync(session, destination, reloader, tmp_path).run(today=TODAY, now=NOW)

    assert outcome.state is SyncState.FAILED
    assert outcome.failed_stage is SyncState.INSTALLING
    assert outcome.exit_code == ExitCode.INSTALL
    assert reloader.calls == 0
    assert destination.cert.read_bytes() == b"CERT-V2"
    assert destination.key.read_bytes() == b"KEY-V1"
