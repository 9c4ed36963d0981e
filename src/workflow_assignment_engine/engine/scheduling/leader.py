"""Single-leader lease for the recurrence scheduler.

The lease is a small JSON file (`owner`, `expires_at`). Reads and writes happen
under an exclusive `flock` on a sibling `.lock` file, so replicas sharing the state
directory agree on one owner. An owner renews by acquiring again before expiry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from ..clock import Clock, SystemClock
from ..jsonfile import file_lock, load_json_object, write_json_atomic

logger = logging.getLogger(__name__)


class FileLeaderLock:
    def __init__(
        self,
        path: Path,
        *,
        owner: str,
        lease_seconds: float,
        clock: Clock | None = None,
    ) -> None:
        self.path = path
        self.owner = owner
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock or SystemClock()

    def _read_unlocked(self) -> tuple[str | None, datetime | None]:
        raw = load_json_object(self.path) or {}
        owner = raw.get("owner")
        expires = raw.get("expires_at")
        try:
            expires_at = datetime.fromisoformat(expires) if isinstance(expires, str) else None
        except ValueError:
            expires_at = None
        return (owner if isinstance(owner, str) else None), expires_at

    def acquire(self) -> bool:
        """Take or renew the lease. Returns False while another owner holds it."""

        now = self._clock.now()
        with file_lock(self.path):
            owner, expires_at = self._read_unlocked()
            if owner and owner != self.owner and expires_at is not None and expires_at > now:
                logger.debug(
                    "Leader lease held elsewhere",
                    extra={"owner": owner, "expires_at": expires_at.isoformat()},
                )
                return False
            write_json_atomic(
                self.path,
                {"owner": self.owner, "expires_at": (now + self._lease).isoformat()},
            )
        if owner != self.owner:
            logger.info("Leader lease acquired", extra={"owner": self.owner})
        return True

    def release(self) -> None:
        with file_lock(self.path):
            owner, _expires_at = self._read_unlocked()
            if owner == self.owner:
                self.path.unlink(missing_ok=True)
                logger.info("Leader lease released", extra={"owner": self.owner})

    def holder(self) -> str | None:
        with file_lock(self.path):
            owner, expires_at = self._read_unlocked()
        if owner and expires_at is not None and expires_at > self._clock.now():
            return owner
        return None
