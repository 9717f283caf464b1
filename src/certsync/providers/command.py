"""Reload actions implemented as external commands."""
from __future__ import annotations

import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from ..errors import SyncError
from ..exit_codes import ExitCode


class ReloadFailure(Enum):
    """Reasons a reload action did not complete."""

    ACTION_FAILED = "action-failed"
    ACTION_MISSING = "action-missing"
    ACTION_TIMEOUT = "action-timeout"


class ReloadError(SyncError):
    """Raised when the consuming service could not be reloaded.

    New material is already installed when this is raised.
    """

    stage = "reload"
    exit_code = ExitCode.RELOAD

    def __init__(self, message: str, *, kind: ReloadFailure, code: int | None = None) -> None:
        """Capture the failure category and exit status."""
        super().__init__(message)
        self.kind = kind
        self.code = code

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        if self.code is not None:
            payload["code"] = self.code
        return payload


class Reloader(Protocol):
    """Anything able to make newly installed material take effect."""

    def describe(self) -> str:
        """Return a short human-readable description of the action."""

    def fire(self) -> list[subprocess.CompletedProcess[str]]:
        """Run the action synchronously, raising :class:`ReloadError` on failure."""


def run_action(args: Sequence[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
    """Run *args* and raise :class:`ReloadError` unless it exits 0."""
    try:
        result = subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ReloadError(
            f"{args[0]} not found: {exc}",
            kind=ReloadFailure.ACTION_MISSING,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ReloadError(
            f"{' '.join(args)} timed out after {timeout:g}s",
            kind=ReloadFailure.ACTION_TIMEOUT,
        ) from exc
    if result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise ReloadError(
            f"{' '.join(args)} failed (exit {result.returncode}): {message}",
            kind=ReloadFailure.ACTION_FAILED,
            code=result.returncode,
        )
    return result


@dataclass(slots=True)
class CommandReloader:
    """Run a fixed sequence of commands, pausing between them.

    Typical use is an init script pair such as ``rc.nginx stop`` followed by
    ``rc.nginx start``. The first failing command stops the sequence.
    """

    commands: Sequence[Sequence[str]]
    delay: float = 0.0
    timeout: float = 120.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def describe(self) -> str:
        """Return the commands joined for display."""
        return "; ".join(" ".join(command) for command in self.commands)

    def fire(self) -> list[subprocess.CompletedProcess[str]]:
        """Run every command in order."""
        results: list[subprocess.CompletedProcess[str]] = []
        for index, command in enumerate(self.commands):
            if index and self.delay:
                self.sleep(self.delay)
            results.append(run_action(command, timeout=self.timeout))
        return results


__all__ = ["CommandReloader", "ReloadError", "ReloadFailure", "Reloader", "run_action"]
