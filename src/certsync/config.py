"""Configuration loader for certsync.

Configuration values are merged from multiple sources:

1. Built-in defaults.
2. ``/etc/certsync/config.yml`` (or an override path).
3. Environment variables prefixed with ``CERTSYNC_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CERTSYNC_SOURCE__REMOTE__CERT_TOKEN=abc123
    export CERTSYNC_BACKUPS__RETENTION_DAYS=90

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` built once per process and passed to every component.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load certsync configuration. Install with "
        "`pip install certsync` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CERTSYNC_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CERT_API_PATH = "certwarden/api/v1/download/certificates/{name}"
DEFAULT_KEY_API_PATH = "certwarden/api/v1/download/privatekeys/{name}"
REDACTED = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RemoteSourceConfig:
    """Cert Warden style download endpoint settings."""

    server: str | None = None
    name: str | None = None
    cert_token: str | None = None
    key_token: str | None = None
    cert_path: str = DEFAULT_CERT_API_PATH
    key_path: str = DEFAULT_KEY_API_PATH
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    verify_tls: bool = True

    @property
    def cert_url(self) -> str:
        """Return the certificate download URL."""
        return self._url(self.cert_path)

    @property
    def key_url(self) -> str:
        """Return the private key download URL."""
        return self._url(self.key_path)

    def _url(self, template: str) -> str:
        path = template.format(name=self.name or "").lstrip("/")
        return f"https://{self.server}/{path}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with tokens redacted."""
        return {
            "server": self.server,
            "name": self.name,
            "cert_token": REDACTED if self.cert_token else None,
            "key_token": REDACTED if self.key_token else None,
            "cert_path": self.cert_path,
            "key_path": self.key_path,
            "connect_timeout": self.connect_timeout,
            "read_timeout": self.read_timeout,
            "verify_tls": self.verify_tls,
        }


@dataclass(frozen=True)
class LocalSourceConfig:
    """Filesystem locations of certificate material produced elsewhere."""

    cert: Path | None = None
    key: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cert": str(self.cert) if self.cert is not None else None,
            "key": str(self.key) if self.key is not None else None,
        }


@dataclass(frozen=True)
class SourceConfig:
    """Which source provider to use and its settings."""

    kind: str = "remote"
    remote: RemoteSourceConfig = RemoteSourceConfig()
    local: LocalSourceConfig = LocalSourceConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "remote": self.remote.to_dict(),
            "local": self.local.to_dict(),
        }


@dataclass(frozen=True)
class DestinationConfig:
    """Where installed material lives and in which layout."""

    layout: str = "separate"
    cert: Path | None = None
    key: Path | None = None
    bundle: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "layout": self.layout,
            "cert": str(self.cert) if self.cert is not None else None,
            "key": str(self.key) if self.key is not None else None,
            "bundle": str(self.bundle) if self.bundle is not None else None,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup retention settings."""

    retention_days: int = 365

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"retention_days": self.retention_days}


@dataclass(frozen=True)
class ReloadConfig:
    """How the consuming service is told to pick up new material."""

    kind: str = "systemd"
    unit: str | None = None
    action: str = "restart"
    commands: tuple[tuple[str, ...], ...] = ()
    delay: float = 0.0
    timeout: float = 120.0
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "unit": self.unit,
            "action": self.action,
            "commands": [list(command) for command in self.commands],
            "delay": self.delay,
            "timeout": self.timeout,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for certsync."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    staging_dir: Path | None
    lock_timeout: float
    compare: str
    source: SourceConfig
    destination: DestinationConfig
    backups: BackupConfig
    reload: ReloadConfig

    def missing_settings(self) -> list[str]:
        """Return the settings a sync run needs but that are not configured."""
        missing: list[str] = []
        if self.source.kind == "remote":
            remote = self.source.remote
            for label, value in (
                ("source.remote.server", remote.server),
                ("source.remote.name", remote.name),
                ("source.remote.cert_token", remote.cert_token),
                ("source.remote.key_token", remote.key_token),
            ):
                if not value:
                    missing.append(label)
        else:
            if self.source.local.cert is None:
                missing.append("source.local.cert")
            if self.source.local.key is None:
                missing.append("source.local.key")

        if self.destination.layout == "separate":
            if self.destination.cert is None:
                missing.append("destination.cert")
            if self.destination.key is None:
                missing.append("destination.key")
        elif self.destination.bundle is None:
            missing.append("destination.bundle")

        if self.reload.kind == "systemd" and not self.reload.unit:
            missing.append("reload.unit")
        if self.reload.kind == "command" and not self.reload.commands:
            missing.append("reload.commands")
        return missing

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "staging_dir": str(self.staging_dir) if self.staging_dir is not None else None,
            "lock_timeout": self.lock_timeout,
            "compare": self.compare,
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "backups": self.backups.to_dict(),
            "reload": self.reload.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/certsync/config.yml",
    "logs_dir": "/var/log/certsync",
    "runtime_dir": "/run/certsync",
    "staging_dir": None,  # system temporary directory when absent
    "lock_timeout": 30.0,
    "compare": "bytes",
    "source": {
        "kind": "remote",
        "remote": {
            "server": None,
            "name": None,
            "cert_token": None,
            "key_token": None,
            "cert_path": DEFAULT_CERT_API_PATH,
            "key_path": DEFAULT_KEY_API_PATH,
            "connect_timeout": 10.0,
            "read_timeout": 60.0,
            "verify_tls": True,
        },
        "local": {
            "cert": None,
            "key": None,
        },
    },
    "destination": {
        "layout": "separate",
        "cert": None,
        "key": None,
        "bundle": None,
    },
    "backups": {
        "retention_days": 365,
    },
    "reload": {
        "kind": "systemd",
        "unit": None,
        "action": "restart",
        "commands": [],
        "delay": 0.0,
        "timeout": 120.0,
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SOURCE_KINDS = {"remote", "local"}
ALLOWED_LAYOUTS = {"separate", "bundle"}
ALLOWED_COMPARE_STRATEGIES = {"bytes", "mtime"}
ALLOWED_RELOAD_KINDS = {"systemd", "command"}
ALLOWED_SYSTEMD_ACTIONS = {"restart", "reload", "reload-or-restart", "try-restart"}

_REMOTE_KEYS = {
    "server",
    "name",
    "cert_token",
    "key_token",
    "cert_path",
    "key_path",
    "connect_timeout",
    "read_timeout",
    "verify_tls",
}
_RELOAD_KEYS = {"kind", "unit", "action", "commands", "delay", "timeout", "systemctl_bin"}
# Secrets are passed through untouched; YAML would turn "012345" into an int.
_VERBATIM_ENV_KEYS = {"cert_token", "key_token", "server", "name"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    compare = str(raw.get("compare", "bytes"))
    if compare not in ALLOWED_COMPARE_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_COMPARE_STRATEGIES))
        raise ConfigError(f"Unsupported compare strategy '{compare}'. Allowed: {allowed}.")

    source_map = _as_dict(raw.get("source"), "source")
    _reject_unknown(source_map, {"kind", "remote", "local"}, "source")
    kind = str(source_map.get("kind", "remote"))
    if kind not in ALLOWED_SOURCE_KINDS:
        allowed = ", ".join(sorted(ALLOWED_SOURCE_KINDS))
        raise ConfigError(f"Unsupported source kind '{kind}'. Allowed: {allowed}.")
    remote_map = _as_dict(source_map.get("remote"), "source.remote")
    _reject_unknown(remote_map, _REMOTE_KEYS, "source.remote")
    local_map = _as_dict(source_map.get("local"), "source.local")
    _reject_unknown(local_map, {"cert", "key"}, "source.local")
    if compare == "mtime" and kind != "local":
        raise ConfigError("The 'mtime' compare strategy requires a local source.")

    destination_map = _as_dict(raw.get("destination"), "destination")
    _reject_unknown(destination_map, {"layout", "cert", "key", "bundle"}, "destination")
    layout = str(destination_map.get("layout", "separate"))
    if layout not in ALLOWED_LAYOUTS:
        allowed = ", ".join(sorted(ALLOWED_LAYOUTS))
        raise ConfigError(f"Unsupported destination layout '{layout}'. Allowed: {allowed}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    _reject_unknown(backups_map, {"retention_days"}, "backups")

    reload_map = _as_dict(raw.get("reload"), "reload")
    _reject_unknown(reload_map, _RELOAD_KEYS, "reload")
    reload_kind = str(reload_map.get("kind", "systemd"))
    if reload_kind not in ALLOWED_RELOAD_KINDS:
        allowed = ", ".join(sorted(ALLOWED_RELOAD_KINDS))
        raise ConfigError(f"Unsupported reload kind '{reload_kind}'. Allowed: {allowed}.")
    action = str(reload_map.get("action", "restart"))
    if action not in ALLOWED_SYSTEMD_ACTIONS:
        allowed = ", ".join(sorted(ALLOWED_SYSTEMD_ACTIONS))
        raise ConfigError(f"Unsupported reload action '{action}'. Allowed: {allowed}.")


def _reject_unknown(mapping: Mapping[str, object], allowed: set[str], label: str) -> None:
    unknown = set(mapping.keys()) - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {label} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    staging_dir = _optional_path(raw.get("staging_dir"), "staging_dir")
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    source_mapping = _as_dict(raw.get("source"), "source")
    remote_mapping = _as_dict(source_mapping.get("remote"), "source.remote")
    local_mapping = _as_dict(source_mapping.get("local"), "source.local")
    remote = RemoteSourceConfig(
        server=_optional_str(remote_mapping.get("server")),
        name=_optional_str(remote_mapping.get("name")),
        cert_token=_optional_str(remote_mapping.get("cert_token")),
        key_token=_optional_str(remote_mapping.get("key_token")),
        cert_path=str(remote_mapping.get("cert_path") or DEFAULT_CERT_API_PATH),
        key_path=str(remote_mapping.get("key_path") or DEFAULT_KEY_API_PATH),
        connect_timeout=_expect_positive_float(
            remote_mapping.get("connect_timeout"), "source.remote.connect_timeout", default=10.0
        ),
        read_timeout=_expect_positive_float(
            remote_mapping.get("read_timeout"), "source.remote.read_timeout", default=60.0
        ),
        verify_tls=bool(remote_mapping.get("verify_tls", True)),
    )
    local = LocalSourceConfig(
        cert=_optional_path(local_mapping.get("cert"), "source.local.cert"),
        key=_optional_path(local_mapping.get("key"), "source.local.key"),
    )
    source = SourceConfig(
        kind=str(source_mapping.get("kind", "remote")),
        remote=remote,
        local=local,
    )

    destination_mapping = _as_dict(raw.get("destination"), "destination")
    destination = DestinationConfig(
        layout=str(destination_mapping.get("layout", "separate")),
        cert=_optional_path(destination_mapping.get("cert"), "destination.cert"),
        key=_optional_path(destination_mapping.get("key"), "destination.key"),
        bundle=_optional_path(destination_mapping.get("bundle"), "destination.bundle"),
    )
    if (
        destination.layout == "separate"
        and destination.cert is not None
        and destination.cert == destination.key
    ):
        raise ConfigError("destination.cert and destination.key must be different files.")

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=365
    )
    if retention_days < 0:
        raise ConfigError("backups.retention_days must be non-negative.")

    reload_mapping = _as_dict(raw.get("reload"), "reload")
    reload = ReloadConfig(
        kind=str(reload_mapping.get("kind", "systemd")),
        unit=_optional_str(reload_mapping.get("unit")),
        action=str(reload_mapping.get("action", "restart")),
        commands=_parse_commands(reload_mapping.get("commands")),
        delay=_expect_non_negative_float(reload_mapping.get("delay"), "reload.delay"),
        timeout=_expect_positive_float(
            reload_mapping.get("timeout"), "reload.timeout", default=120.0
        ),
        systemctl_bin=str(reload_mapping.get("systemctl_bin", "systemctl")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        staging_dir=staging_dir,
        lock_timeout=lock_timeout,
        compare=str(raw.get("compare", "bytes")),
        source=source,
        destination=destination,
        backups=BackupConfig(retention_days=retention_days),
        reload=reload,
    )


def _parse_commands(value: object | None) -> tuple[tuple[str, ...], ...]:
    """Accept a list of argv lists or shell-style command strings."""
    if value in (None, ""):
        return ()
    if isinstance(value, str):
        value = [value]
    commands: list[tuple[str, ...]] = []
    for index, entry in enumerate(_as_sequence(value, "reload.commands")):
        label = f"reload.commands[{index}]"
        if isinstance(entry, str):
            argv = tuple(shlex.split(entry))
        else:
            argv = tuple(str(part) for part in _as_sequence(entry, label))
        if not argv:
            raise ConfigError(f"{label} must not be empty.")
        commands.append(argv)
    return tuple(commands)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        raw = value.strip() if path_segments[-1] in _VERBATIM_ENV_KEYS else _coerce_value(value)
        _assign_nested(overrides, path_segments, raw)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object | None, label: str) -> Path | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, (str, Path)):
        raise ConfigError(f"{label} must be a string, Path, or null.")
    return _to_path(value)


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str) -> float:
    if value is None or value == 0:
        return 0.0
    return _expect_positive_float(value, label, default=0.0)


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "DestinationConfig",
    "LocalSourceConfig",
    "ReloadConfig",
    "RemoteSourceConfig",
    "SourceConfig",
    "load_config",
]
