"""Destination layouts and atomic installation of certificate material."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import DestinationConfig
from .errors import SyncError
from .exit_codes import ExitCode
from .sources import Material

INSTALLED_MODE = 0o600


class InstallFailure(Enum):
    """Reasons material could not be installed."""

    WRITE_FAILURE = "write-failure"
    PERMISSION_DENIED = "permission-denied"


class InstallError(SyncError):
    """Raised when material cannot be written into place."""

    stage = "install"
    exit_code = ExitCode.INSTALL

    def __init__(self, message: str, *, kind: InstallFailure, path: Path | None = None) -> None:
        """Capture the failure category and offending path."""
        super().__init__(message)
        self.kind = kind
        self.path = path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        if self.path is not None:
            payload["path"] = str(self.path)
        return payload

    @classmethod
    def from_os_error(cls, exc: OSError, path: Path, action: str) -> InstallError:
        """Classify *exc* raised while performing *action* on *path*."""
        kind = (
            InstallFailure.PERMISSION_DENIED
            if isinstance(exc, PermissionError)
            else InstallFailure.WRITE_FAILURE
        )
        return cls(f"Failed to {action} {path}: {exc}", kind=kind, path=path)


class Destination(Protocol):
    """Shape of the installed files."""

    def paths(self) -> tuple[Path, ...]:
        """Return every file this destination owns."""

    def render(self, material: Material) -> dict[Path, bytes]:
        """Return the exact bytes each destination file must contain."""


@dataclass(frozen=True)
class SeparateFiles:
    """Certificate and key installed as two discrete files."""

    cert: Path
    key: Path

    def paths(self) -> tuple[Path, ...]:
        """Return the certificate and key paths."""
        return (self.cert, self.key)

    def render(self, material: Material) -> dict[Path, bytes]:
        """Map each path to its material."""
        return {self.cert: material.certificate, self.key: material.key}


@dataclass(frozen=True)
class SingleBundle:
    """Chain followed by key, concatenated into one file."""

    path: Path

    def paths(self) -> tuple[Path, ...]:
        """Return the bundle path."""
        return (self.path,)

    def render(self, material: Material) -> dict[Path, bytes]:
        """Concatenate chain then key with no separator."""
        return {self.path: material.bundle}


def build_destination(config: DestinationConfig) -> Destination:
    """Return the destination layout selected by *config*."""
    if config.layout == "bundle":
        if config.bundle is None:
            raise ValueError("Bundle layout requires destination.bundle.")
        return SingleBundle(config.bundle)
    if config.cert is None or config.key is None:
        raise ValueError("Separate layout requires destination.cert and destination.key.")
    if config.cert == config.key:
        raise ValueError("Separate layout needs distinct certificate and key paths.")
    return SeparateFiles(cert=config.cert, key=config.key)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = INSTALLED_MODE) -> None:
    """Write *data* to *path* via a same-directory temporary file and rename.

    Readers observe either the previous file or the complete new one. The
    temporary file carries *mode* before it is renamed into place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


class Installer:
    """Install material into a destination layout."""

    def __init__(self, mode: int = INSTALLED_MODE) -> None:
        """Initialise with the permission bits applied to installed files."""
        self.mode = mode

    def write(self, material: Material, destination: Destination) -> list[Path]:
        """Install *material*; files already written are not rolled back on failure."""
        rendered: Mapping[Path, bytes] = destination.render(material)
        written: list[Path] = []
        for path, data in rendered.items():
            try:
                atomic_write_bytes(path, data, mode=self.mode)
            except OSError as exc:
                raise InstallError.from_os_error(exc, path, "write") from exc
            written.append(path)
        for path in written:
            try:
                os.chmod(path, self.mode)
            except OSError as exc:
                raise InstallError.from_os_error(exc, path, "set permissions on") from exc
        return written


__all__ = [
    "Destination",
    "INSTALLED_MODE",
    "InstallError",
    "InstallFailure",
    "Installer",
    "SeparateFiles",
    "SingleBundle",
    "atomic_write_bytes",
    "build_destination",
]
