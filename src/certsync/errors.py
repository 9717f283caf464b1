"""Error taxonomy shared by the sync stages."""
from __future__ import annotations

from .exit_codes import ExitCode


class SyncError(RuntimeError):
    """Base class for fatal errors raised by a sync stage."""

    stage: str = "sync"
    exit_code: ExitCode = ExitCode.INSTALL

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"stage": self.stage, "type": type(self).__name__, "message": str(self)}
