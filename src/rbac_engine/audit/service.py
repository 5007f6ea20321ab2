"""Audit recorder — append, query, and verify the hash-chained mutation log."""

import hashlib
import hmac as hmac_mod
import json
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError as SchemaValidationError

from rbac_engine.audit.models import AuditEvent, AuditLogEntry
from rbac_engine.audit.schemas import AuditChainVerification, AuditFilter
from rbac_engine.common.config import RBACSettings
from rbac_engine.common.exceptions import AuditWriteError, PersistenceError, ValidationError
from rbac_engine.common.models import generate_id, utcnow
from rbac_engine.store.persistence import AUDIT_LOG, PersistenceAdapter

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Append-only, hash-chained log of committed mutations.

    Entries become visible only after the audit collection has been
    persisted. The store stages an entry with :meth:`stage`, persists it
    together with the mutated collections and then calls :meth:`commit`
    while holding the shared writer lock.
    """

    def __init__(
        self,
        settings: RBACSettings,
        persistence: PersistenceAdapter,
        lock: Optional["threading.RLock"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.persistence = persistence
        self.lock = lock or threading.RLock()
        self.clock = clock
        self._entries: tuple[AuditLogEntry, ...] = ()

    # ── Write ──

    def load(self) -> None:
        """Replace the in-memory log with the persisted one."""
        records = self.persistence.load(AUDIT_LOG)
        entries = tuple(AuditLogEntry.model_validate(r) for r in records)
        with self.lock:
            self._entries = entries

    def stage(
        self, event: AuditEvent, entries: tuple[AuditLogEntry, ...] | None = None,
    ) -> tuple[AuditLogEntry, tuple[AuditLogEntry, ...]]:
        """Build the next chained entry without making it visible.

        Returns the new entry and the log as it will be once committed.
        """
        base = self._entries if entries is None else entries
        prev_hash = base[-1].event_hash if base else None
        fields = event.model_dump()
        fields.update(id=generate_id("audit_"), timestamp=self.clock(), prev_hash=prev_hash)
        unsigned = {**fields, "event_hash": "", "signature": ""}
        event_hash = self._compute_event_hash(AuditLogEntry.model_validate(unsigned))
        entry = AuditLogEntry.model_validate(
            {**fields, "event_hash": event_hash, "signature": self._sign(event_hash)}
        )
        return entry, base + (entry,)

    def commit(self, entries: tuple[AuditLogEntry, ...]) -> None:
        """Publish a staged log. Caller holds the writer lock and has persisted it."""
        self._entries = entries

    def append(self, event: AuditEvent | dict[str, Any]) -> AuditLogEntry:
        """Append an event that is not tied to a store mutation (e.g. an export)."""
        if isinstance(event, dict):
            try:
                event = AuditEvent.model_validate(event)
            except SchemaValidationError as exc:
                raise ValidationError(f"Invalid audit event: {exc}") from exc
        with self.lock:
            entry, entries = self.stage(event)
            try:
                self.persistence.save(AUDIT_LOG, self.dump(entries))
            except PersistenceError as exc:
                raise AuditWriteError(str(exc)) from exc
            except Exception as exc:
                logger.exception("Audit append failed")
                raise AuditWriteError(f"Audit log write failed: {exc}") from exc
            self.commit(entries)
        return entry

    # ── Read ──

    @property
    def entries(self) -> tuple[AuditLogEntry, ...]:
        return self._entries

    def get_entry(self, entry_id: str) -> AuditLogEntry | None:
        return next((e for e in self._entries if e.id == entry_id), None)

    def get_chain_head(self) -> AuditLogEntry | None:
        """Return the most recent entry."""
        entries = self._entries
        return entries[-1] if entries else None

    def query(self, flt: AuditFilter | None = None, **criteria: Any) -> list[AuditLogEntry]:
        """Filtered entries, oldest first unless ``newest_first`` is set."""
        if flt is None:
            try:
                flt = AuditFilter(**criteria)
            except SchemaValidationError as exc:
                raise ValidationError(f"Invalid audit filter: {exc}") from exc
        entries: Iterable[AuditLogEntry] = self._entries

        since = flt.window_start(self.clock())
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        if flt.end is not None:
            entries = [e for e in entries if e.timestamp <= flt.end]
        if flt.actions:
            wanted = set(flt.actions)
            entries = [e for e in entries if e.action in wanted]
        if flt.entity_type:
            entries = [e for e in entries if e.entity_type == flt.entity_type]
        if flt.entity_id:
            entries = [e for e in entries if e.entity_id == flt.entity_id]
        if flt.actor_id:
            entries = [e for e in entries if e.actor_id == flt.actor_id]

        result = list(entries)
        if flt.newest_first:
            result.reverse()
        if flt.limit is None:
            return result[flt.offset:]
        limit = min(flt.limit, self.settings.max_page_size)
        return result[flt.offset:flt.offset + limit]

    @staticmethod
    def stats(entries: Iterable[AuditLogEntry]) -> dict[str, int]:
        """Counts by action kind over a query result."""
        return dict(Counter(e.action for e in entries))

    # ── Verify ──

    def verify_chain(self) -> AuditChainVerification:
        """Walk the log oldest→newest, verify linkage, hashes and signatures."""
        entries = self._entries
        prev_hash = None
        for index, entry in enumerate(entries):
            if (
                entry.prev_hash != prev_hash
                or entry.event_hash != self._compute_event_hash(entry)
                or not self._verify_signature(entry.event_hash, entry.signature)
            ):
                return AuditChainVerification(
                    valid=False, events_checked=index, break_at=entry.id,
                )
            prev_hash = entry.event_hash
        return AuditChainVerification(valid=True, events_checked=len(entries))

    # ── Internal helpers ──

    @staticmethod
    def dump(entries: Iterable[AuditLogEntry]) -> list[dict[str, Any]]:
        return [e.model_dump(mode="json") for e in entries]

    @staticmethod
    def _compute_event_hash(entry: AuditLogEntry) -> str:
        """SHA-256 of canonical JSON of the entry, hash and signature excluded."""
        canonical = json.dumps(
            entry.model_dump(mode="json", exclude={"event_hash", "signature"}),
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _sign(self, event_hash: str) -> str:
        """HMAC-SHA256 of event_hash with the current audit key."""
        return hmac_mod.new(
            self.settings.current_audit_key.encode(),
            event_hash.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _verify_signature(self, event_hash: str, signature: str) -> bool:
        """Verify signature against all keys in the keyring."""
        for _version, key in self.settings.audit_keyring.items():
            expected = hmac_mod.new(
                key.encode(), event_hash.encode(), hashlib.sha256,
            ).hexdigest()
            if hmac_mod.compare_digest(expected, signature):
                return True
        return False
