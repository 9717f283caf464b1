"""Change detection between freshly obtained and installed material."""
from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from .installer import Destination, InstallError
from .sources import Material


def differs(staged: bytes, installed: Path) -> bool:
    """Return True when *installed* is missing or its bytes differ from *staged*."""
    try:
        current = installed.read_bytes()
    except FileNotFoundError:
        return True
    except OSError as exc:
        raise InstallError.from_os_error(exc, installed, "read installed file") from exc
    return current != staged


def destination_differs(material: Material, destination: Destination) -> bool:
    """Return True when any destination file needs to change.

    Every file is checked so that a certificate and key are always replaced
    together.
    """
    changed = False
    for path, expected in destination.render(material).items():
        if differs(expected, path):
            changed = True
    return changed


def sources_older_than(sources: Iterable[Path], destination: Destination) -> bool:
    """Return True when every source is older than every destination file.

    This is a fast path for local sources. It misses a change whose source was
    rewritten with an older timestamp (for example restored from a backup), so
    byte comparison remains the default.
    """
    try:
        installed = [path.stat().st_mtime for path in destination.paths()]
        candidates = [path.stat().st_mtime for path in sources]
    except FileNotFoundError:
        return False
    if not installed or not candidates:
        return False
    return max(candidates) < min(installed)


__all__ = ["destination_differs", "differs", "sources_older_than"]
