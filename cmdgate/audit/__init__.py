"""
cmdgate - Audit Log

Bounded, append-only record of security decisions. Entries can be linked
into an HMAC hash chain so that edits to retained entries are detectable.
When the log is full the oldest entry is evicted and the chain is then
verified from the first retained entry.
"""

import hashlib
import hmac
import json
import logging
import secrets
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..core.config import AuditConfig

logger = logging.getLogger(__name__)

EVENT_SEVERITY = {
    "BLOCKED": "high",
    "ERROR": "high",
    "VALIDATION_FAILED": "high",
    "RATE_LIMITED": "high",
    "CONSENT_BYPASSED": "medium",
    "MONITOR_BLOCK": "medium",
    "CONSENT_REQUIRED": "medium",
    "VALIDATION_WARNING": "low",
    "TRUSTED_BYPASS": "low",
    "ALLOWED": "low",
    "INIT": "info",
    "MODE_CHANGE": "info",
}
DEFAULT_SEVERITY = "medium"


def severity_for(event_type: str) -> str:
    return EVENT_SEVERITY.get(event_type, DEFAULT_SEVERITY)


@dataclass
class AuditEntry:
    """A single audit record."""
    event_type: str
    severity: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sequence_number: int = 0
    previous_hash: str = ""
    event_hash: str = ""
    hmac_signature: str = ""

    def hashable(self) -> Dict[str, Any]:
        """Fields covered by the event hash."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "severity": self.severity,
            "data": self.data,
            "sequence": self.sequence_number,
            "previous": self.previous_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        entry = {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "severity": self.severity,
            "data": self.data,
            "sequence_number": self.sequence_number,
        }
        if self.event_hash:
            entry["integrity"] = {
                "previous_hash": self.previous_hash,
                "event_hash": self.event_hash,
                "hmac_signature": self.hmac_signature,
            }
        return entry


class HashChain:
    """HMAC-SHA256 hash chain over audit entries."""

    def __init__(self, master_key: Optional[bytes] = None):
        self._master_key = master_key or secrets.token_bytes(32)
        self._key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"cmdgate_audit_v1",
            info=b"audit-chain",
        ).derive(self._master_key)
        self.genesis = self._genesis_hash()
        self.reset()

    def _genesis_hash(self) -> str:
        h = hashlib.sha256(b"CMDGATE_AUDIT_GENESIS_V1" + self._master_key)
        return f"genesis:{h.hexdigest()}"

    def reset(self) -> None:
        self._sequence = 0
        self._previous_hash = self.genesis

    @staticmethod
    def compute_event_hash(event_data: Dict[str, Any]) -> str:
        canonical = json.dumps(event_data, sort_keys=True, separators=(",", ":"), default=str)
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"

    def _signature(self, entry: AuditEntry) -> str:
        payload = f"{entry.event_hash}:{entry.previous_hash}:{entry.sequence_number}"
        mac = hmac.new(self._key, payload.encode(), hashlib.sha256)
        return f"hmac-sha256:{mac.hexdigest()}"

    def sign(self, entry: AuditEntry) -> AuditEntry:
        """Link an entry into the chain and populate its integrity fields."""
        entry.sequence_number = self._sequence
        entry.previous_hash = self._previous_hash
        entry.event_hash = self.compute_event_hash(entry.hashable())
        entry.hmac_signature = self._signature(entry)

        self._previous_hash = entry.event_hash
        self._sequence += 1
        return entry

    def verify(self, entry: AuditEntry, expected_previous: str) -> bool:
        if entry.previous_hash != expected_previous:
            return False
        if self.compute_event_hash(entry.hashable()) != entry.event_hash:
            return False
        return hmac.compare_digest(self._signature(entry), entry.hmac_signature)


class AuditLog:
    """
    Bounded audit log with optional hash chain.

    Capacity is ``max_entries``; the oldest entries are evicted first.
    """

    def __init__(self, config: Optional[AuditConfig] = None, master_key: Optional[bytes] = None):
        self.config = config or AuditConfig()
        self._entries: Deque[AuditEntry] = deque(maxlen=self.config.max_entries)
        self._chain = HashChain(master_key) if self.config.hash_chain else None
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def evicted(self) -> int:
        return self._evicted

    def record(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> AuditEntry:
        """
        Append an audit entry.

        Args:
            event_type: Event name, e.g. BLOCKED or ALLOWED
            data: Event details
            severity: Overrides the severity derived from the event type

        Returns:
            The appended entry
        """
        entry = AuditEntry(
            event_type=event_type,
            severity=severity or severity_for(event_type),
            data=dict(data or {}),
        )
        if self._chain is not None:
            self._chain.sign(entry)

        if len(self._entries) == self._entries.maxlen:
            self._evicted += 1
        self._entries.append(entry)

        if entry.severity == "high":
            logger.warning(f"Audit {event_type}: {entry.data.get('reason', '')}")
        else:
            logger.debug(f"Audit {event_type}")
        return entry

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent entries, oldest first."""
        items = list(self._entries)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return [e.to_dict() for e in items]

    def clear(self) -> None:
        self._entries.clear()
        self._evicted = 0
        if self._chain is not None:
            self._chain.reset()

    def verify_chain(self) -> bool:
        """
        Verify the hash chain over retained entries.

        Returns:
            True if every retained entry is intact and linked; always True
            when chaining is disabled
        """
        if self._chain is None or not self._entries:
            return True

        entries = list(self._entries)
        expected = self._chain.genesis if self._evicted == 0 else entries[0].previous_hash
        for entry in entries:
            if not self._chain.verify(entry, expected):
                logger.error(f"Audit chain broken at sequence {entry.sequence_number}")
                return False
            expected = entry.event_hash
        return True

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for entry in self._entries:
            by_type[entry.event_type] = by_type.get(entry.event_type, 0) + 1
        return {
            "entries": len(self._entries),
            "capacity": self._entries.maxlen,
            "evicted": self._evicted,
            "hash_chain": self._chain is not None,
            "events_by_type": by_type,
        }

    def export(self, path: str, metrics: Optional[Dict[str, Any]] = None) -> Path:
        """
        Write the log as JSON ``{exported, metrics, audit_log}``.

        Returns:
            Path written
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "exported": datetime.now(timezone.utc).isoformat(),
            "metrics": metrics or {},
            "audit_log": self.entries(),
        }
        with open(target, "w") as f:
            json.dump(payload, f, indent=2, default=str)

        logger.info(f"Exported {len(self._entries)} audit entries to {target}")
        return target


__all__ = [
    "AuditLog",
    "AuditEntry",
    "HashChain",
    "EVENT_SEVERITY",
    "severity_for",
]
