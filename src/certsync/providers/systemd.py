"""Systemd provider restarting the service that consumes installed material."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .command import run_action


@dataclass(slots=True)
class SystemdReloader:
    """Restart (or reload) a systemd unit via ``systemctl``."""

    unit: str
    action: str = "restart"
    systemctl_bin: str = "systemctl"
    timeout: float = 120.0

    def unit_name(self) -> str:
        """Return the unit name, defaulting the ``.service`` suffix."""
        if "." in self.unit:
            return self.unit
        return f"{self.unit}.service"

    def command(self) -> list[str]:
        """Return the argv executed by :meth:`fire`."""
        return [self.systemctl_bin, self.action, self.unit_name()]

    def describe(self) -> str:
        """Return the command joined for display."""
        return " ".join(self.command())

    def fire(self) -> list[subprocess.CompletedProcess[str]]:
        """Run ``systemctl <action> <unit>`` and wait for it to finish."""
        return [run_action(self.command(), timeout=self.timeout)]


__all__ = ["SystemdReloader"]
