"""Source providers that obtain certificate material for a sync run."""
from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Protocol

import requests

from .config import LocalSourceConfig, RemoteSourceConfig, SourceConfig
from .errors import SyncError
from .exit_codes import ExitCode

CERTIFICATE_STAGE_NAME = "certificate.pem"
KEY_STAGE_NAME = "key.pem"


class FetchFailure(Enum):
    """Reasons a source could not provide material."""

    TRANSPORT_FAILURE = "transport-failure"
    REMOTE_REJECTED = "remote-rejected"
    SOURCE_MISSING = "source-missing"
    SOURCE_UNREADABLE = "source-unreadable"
    STAGING_FAILURE = "staging-failure"


class FetchError(SyncError):
    """Raised when certificate material cannot be obtained."""

    stage = "fetch"
    exit_code = ExitCode.FETCH

    def __init__(
        self,
        message: str,
        *,
        kind: FetchFailure,
        code: int | None = None,
        path: Path | None = None,
    ) -> None:
        """Capture the failure category alongside the message."""
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.path = path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        if self.code is not None:
            payload["code"] = self.code
        if self.path is not None:
            payload["path"] = str(self.path)
        return payload


@dataclass(frozen=True)
class Material:
    """Certificate (including any chain) and private key as opaque bytes."""

    certificate: bytes
    key: bytes

    @property
    def bundle(self) -> bytes:
        """Return the chain-then-key concatenation."""
        return self.certificate + self.key


class StagingArea:
    """Private scratch directory for freshly fetched material.

    The directory is created on ``__enter__`` and always removed on
    ``__exit__``, whether the run succeeds or fails.
    """

    def __init__(self, root: Path | None = None) -> None:
        """Remember where to create the directory (system temp when None)."""
        self.root = root
        self.path: Path | None = None

    def __enter__(self) -> StagingArea:
        """Create the staging directory with mode 0700."""
        try:
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
            self.path = Path(
                tempfile.mkdtemp(prefix="certsync-", dir=str(self.root) if self.root else None)
            )
            os.chmod(self.path, 0o700)
        except OSError as exc:
            raise FetchError(
                f"Failed to prepare staging directory: {exc}",
                kind=FetchFailure.STAGING_FAILURE,
                path=self.root,
            ) from exc
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Discard everything that was staged."""
        if self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            self.path = None

    def store(self, name: str, data: bytes) -> Path:
        """Persist *data* under *name* inside the staging directory."""
        if self.path is None:
            raise RuntimeError("Staging area used outside of its context manager.")
        target = self.path / name
        try:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise FetchError(
                f"Failed to stage {name}: {exc}",
                kind=FetchFailure.STAGING_FAILURE,
                path=target,
            ) from exc
        return target


class SourceProvider(Protocol):
    """Anything that can produce certificate material."""

    def describe(self) -> str:
        """Return a short human-readable description of the source."""

    def fetch(self, staging: StagingArea) -> Material:
        """Obtain material, persisting it into *staging*."""


class RemoteSource:
    """Download certificate and key from a Cert Warden style API."""

    api_key_header = "apiKey"

    def __init__(
        self,
        config: RemoteSourceConfig,
        *,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise with endpoint settings and an optional HTTP session."""
        self._config = config
        self._session = session or requests.Session()

    def describe(self) -> str:
        """Return a short human-readable description of the source."""
        return f"remote {self._config.server} ({self._config.name})"

    def fetch(self, staging: StagingArea) -> Material:
        """Download the certificate, then the key; the first failure aborts."""
        certificate = self._download("certificate", self._config.cert_url, self._config.cert_token)
        staging.store(CERTIFICATE_STAGE_NAME, certificate)
        key = self._download("private key", self._config.key_url, self._config.key_token)
        staging.store(KEY_STAGE_NAME, key)
        return Material(certificate=certificate, key=key)

    def _download(self, label: str, url: str, token: str | None) -> bytes:
        headers = {self.api_key_header: token or ""}
        try:
            response = self._session.get(
                url,
                headers=headers,
                allow_redirects=True,
                timeout=(self._config.connect_timeout, self._config.read_timeout),
                verify=self._config.verify_tls,
            )
        except requests.RequestException as exc:
            raise FetchError(
                f"Failed to download {label} from {url}: {exc}",
                kind=FetchFailure.TRANSPORT_FAILURE,
            ) from exc
        if response.status_code != 200:
            raise FetchError(
                f"Failed to download {label} (HTTP status {response.status_code}).",
                kind=FetchFailure.REMOTE_REJECTED,
                code=response.status_code,
            )
        return response.content


class LocalSource:
    """Read certificate chain and key written by another local process."""

    def __init__(self, config: LocalSourceConfig) -> None:
        """Initialise with the configured source paths."""
        if config.cert is None or config.key is None:
            raise ValueError("Local source requires both certificate and key paths.")
        self.cert_path: Path = config.cert
        self.key_path: Path = config.key

    @property
    def paths(self) -> tuple[Path, Path]:
        """Return the certificate and key source paths."""
        return (self.cert_path, self.key_path)

    def describe(self) -> str:
        """Return a short human-readable description of the source."""
        return f"local {self.cert_path}, {self.key_path}"

    def fetch(self, staging: StagingArea) -> Material:
        """Read both files; a missing file aborts before anything is staged."""
        for label, path in (("Certificate chain", self.cert_path), ("Private key", self.key_path)):
            if not path.is_file():
                raise FetchError(
                    f"{label} file not found at {path}.",
                    kind=FetchFailure.SOURCE_MISSING,
                    path=path,
                )
        certificate = self._read(self.cert_path)
        key = self._read(self.key_path)
        staging.store(CERTIFICATE_STAGE_NAME, certificate)
        staging.store(KEY_STAGE_NAME, key)
        return Material(certificate=certificate, key=key)

    def _read(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise FetchError(
                f"File disappeared while reading {path}.",
                kind=FetchFailure.SOURCE_MISSING,
                path=path,
            ) from exc
        except OSError as exc:
            raise FetchError(
                f"Failed to read {path}: {exc}",
                kind=FetchFailure.SOURCE_UNREADABLE,
                path=path,
            ) from exc


def build_source(
    config: SourceConfig,
    *,
    session: requests.Session | None = None,
) -> SourceProvider:
    """Return the provider selected by *config*."""
    if config.kind == "local":
        return LocalSource(config.local)
    return RemoteSource(config.remote, session=session)


__all__ = [
    "FetchError",
    "FetchFailure",
    "LocalSource",
    "Material",
    "RemoteSource",
    "SourceProvider",
    "StagingArea",
    "build_source",
]
