"""Append-only audit ledger.

Entries are never mutated or removed. Ordering is by ``seq``, the append
sequence, never by wall clock; ``timestamp`` is recorded for display only.
Writers append through the caller's transaction, so an entry lands if and
only if the state change it describes lands.
"""
from __future__ import annotations

import logging
import os
from typing import Any

from karma.db import AUDIT_LOG, BaseStore, Transaction, decode_collection
from karma.models import AuditLogEntry, EntityType

log = logging.getLogger(__name__)


def default_actor() -> str:
    return os.environ.get("KARMA_ACTOR", "founder")


class AuditLedger:
    def __init__(self, store: BaseStore):
        self._store = store

    def record(
        self,
        tx: Transaction,
        action: str,
        entity_type: EntityType,
        entity_id: str,
        *,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        entries: list[AuditLogEntry] = tx.load(AUDIT_LOG)
        seq = entries[-1].seq + 1 if entries else 1
        entry = AuditLogEntry(
            seq=seq,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor or default_actor(),
            details=details or {},
        )
        entries.append(entry)
        tx.save(AUDIT_LOG)
        log.debug("audit #%d %s %s/%s", seq, action, entity_type, entity_id)
        return entry

    # -- read-only query surface ------------------------------------------

    def _entries(self) -> list[AuditLogEntry]:
        return decode_collection(AUDIT_LOG, self._store.get(AUDIT_LOG))

    def list_by_entity(self, entity_type: EntityType | str, entity_id: str) -> list[AuditLogEntry]:
        """Entries for one entity, newest append first."""
        matches = [
            e for e in self._entries()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(matches, key=lambda e: e.seq, reverse=True)

    def list_recent(self, n: int = 50) -> list[AuditLogEntry]:
        """The *n* most recently appended entries, newest first."""
        if n <= 0:
            return []
        return sorted(self._entries(), key=lambda e: e.seq, reverse=True)[:n]

    def count(self) -> int:
        return len(self._entries())
