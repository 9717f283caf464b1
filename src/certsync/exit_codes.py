"""Enumerations for CLI exit codes, one per failing sync stage."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    FETCH = 3
    BACKUP = 4
    INSTALL = 5
    RELOAD = 6
    LOCKED = 7
