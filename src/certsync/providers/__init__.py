"""Reload providers for certsync."""
from __future__ import annotations

from ..config import ReloadConfig
from .command import CommandReloader, ReloadError, ReloadFailure, Reloader, run_action
from .systemd import SystemdReloader


def build_reloader(config: ReloadConfig) -> Reloader:
    """Return the reload action selected by *config*."""
    if config.kind == "command":
        return CommandReloader(
            commands=config.commands,
            delay=config.delay,
            timeout=config.timeout,
        )
    if not config.unit:
        raise ValueError("Systemd reload requires reload.unit.")
    return SystemdReloader(
        unit=config.unit,
        action=config.action,
        systemctl_bin=config.systemctl_bin,
        timeout=config.timeout,
    )


__all__ = [
    "CommandReloader",
    "ReloadError",
    "ReloadFailure",
    "Reloader",
    "SystemdReloader",
    "build_reloader",
    "run_action",
]
