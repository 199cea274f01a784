"""
auth/audit.py -- Append-only audit log with a gap-free ordinal allocator.

Every consequential act (register, login, logout, credential rotation, admin
writes, bulk operations, authorization denials) becomes one AuditEntry.

Ordinals:
  One sequence per audit_log table, starting at 1. The store picks
  max(ordinal) + 1 inside the insert transaction, so the sequence stays
  contiguous across restarts and across processes sharing the database
  (the CLI, extra workers). If another writer commits the same ordinal
  first, the insert fails on the primary key and is retried with a fresh
  max. A failed insert leaves no hole. Appends in this process serialize
  through one lock.

Failure contract:
  append() never raises. A persistence failure is logged to medportal.audit
  with the entry's action and subject (never the payload) and the caller's
  own operation proceeds on its own contract.

Optional mirror:
  If AUDIT_SINK names a file, each committed entry is also written there as
  one JSON object per line. The database row is authoritative; a mirror
  write failure is logged and ignored.

Layer rule: no imports from api/ or clinic/.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from auth.models import AuditEntry
from auth.store import AuthStore

logger = logging.getLogger("medportal.audit")

# Attempts to claim an ordinal when other writers keep winning the race.
_CLAIM_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    """Allocates ordinals and persists entries through AuthStore."""

    def __init__(
        self,
        store: AuthStore,
        sink_path: str = "",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._sink: Optional[Path] = Path(sink_path) if sink_path else None

    def append(self, entry: AuditEntry) -> Optional[int]:
        """Persist entry and return its ordinal, or None if it could not be stored."""
        with self._lock:
            entry.ordinal = None
            entry.timestamp = self._clock()
            try:
                entry.ordinal = self._claim(entry)
            except Exception:
                logger.exception(
                    "Audit append failed: action=%s subject=%s",
                    entry.action,
                    entry.subject_id,
                )
                return None
            self._mirror(entry)
            return entry.ordinal

    def _claim(self, entry: AuditEntry) -> int:
        for _ in range(_CLAIM_ATTEMPTS - 1):
            try:
                return self._store.insert_audit(entry)
            except IntegrityError:
                logger.info("Audit ordinal claimed by another writer, retrying: action=%s", entry.action)
        return self._store.insert_audit(entry)

    def _mirror(self, entry: AuditEntry) -> None:
        if self._sink is None:
            return
        line = json.dumps(
            {
                "ordinal": entry.ordinal,
                "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
                "action": entry.action,
                "actorId": entry.actor_id,
                "subjectId": entry.subject_id,
                "payload": entry.payload,
                "sourceIp": entry.source.ip,
                "userAgent": entry.source.user_agent,
            },
            default=str,
            sort_keys=True,
        )
        try:
            with self._sink.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            logger.exception("Audit sink write failed: %s", self._sink)

    # Read side (admin tooling)

    def query(self, **filters) -> tuple[list[AuditEntry], int]:
        return self._store.list_audit(**filters)

    def counts_by_action(self) -> dict[str, int]:
        return self._store.count_audit_by_action()
