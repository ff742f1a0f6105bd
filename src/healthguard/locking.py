"""Exclusive lease lock shared by threads in-process and by independent processes."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from healthguard.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5


class LeaseLock:
    """
    Single-slot lock: a non-blocking thread lock plus a lease file.

    The lease file is created with O_CREAT|O_EXCL and records owner, pid,
    host and expiry. A lease whose expiry has passed, or which cannot be
    parsed, is reclaimed so a crashed holder cannot block forever.
    """

    def __init__(
        self,
        path: str | Path,
        ttl_seconds: float = 3600.0,
        owner: str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self.poll_interval = poll_interval
        self._thread_lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        """True while this instance holds the lease."""
        return self._held

    def acquire(self, timeout: float = 0.0) -> bool:
        """Try to take the lease; waits up to timeout seconds. Never blocks unbounded."""
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            if self._thread_lock.acquire(blocking=False):
                if self._claim_lease():
                    self._held = True
                    return True
                self._thread_lock.release()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(self.poll_interval, remaining))

    def release(self) -> None:
        if not self._held:
            return
        try:
            lease = self._read_lease()
            if lease is None or lease.get("owner") == self.owner:
                self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove lease %s: %s", self.path, e)
        finally:
            self._held = False
            self._thread_lock.release()

    def refresh(self) -> None:
        """Push the expiry forward while a long operation is still running."""
        if not self._held:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._lease_payload()), encoding="utf-8")
        os.replace(tmp, self.path)

    def holder(self) -> dict | None:
        """Current lease contents (owner, pid, expiry) if held by anyone and not expired."""
        lease = self._read_lease()
        if lease is None or self._expired(lease):
            return None
        return lease

    @contextmanager
    def hold(self, timeout: float = 0.0, what: str = "operation"):
        """Context manager; raises ConcurrencyConflict if the lease cannot be taken."""
        if not self.acquire(timeout=timeout):
            holder = self.holder() or {}
            raise ConcurrencyConflict(
                f"{what} already in progress (held by {holder.get('owner', 'unknown')})",
                holder=holder,
            )
        try:
            yield self
        finally:
            self.release()

    def _lease_payload(self) -> dict:
        now = time.time()
        return {
            "owner": self.owner,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": now,
            "expires_at": now + self.ttl_seconds,
        }

    def _claim_lease(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                lease = self._read_lease()
                if lease is not None and not self._expired(lease):
                    return False
                logger.warning(
                    "Reclaiming stale lease",
                    extra={"lease_path": str(self.path), "previous_owner": (lease or {}).get("owner")},
                )
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._lease_payload(), f)
            return True
        return False

    def _read_lease(self) -> dict | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _expired(lease: dict) -> bool:
        try:
            return float(lease["expires_at"]) < time.time()
        except (KeyError, TypeError, ValueError):
            return True
