"""
Tests for the cmdgate audit log and hash chain
"""

import json

from cmdgate.audit import AuditLog, HashChain, severity_for
from cmdgate.core.config import AuditConfig

MASTER_KEY = b"k" * 32


class TestHashChain:
    """Tests for the HMAC hash chain."""

    def test_genesis_is_deterministic_per_key(self):
        """Test the genesis hash depends only on the master key."""
        assert HashChain(MASTER_KEY).genesis == HashChain(MASTER_KEY).genesis
        assert HashChain(MASTER_KEY).genesis != HashChain(b"x" * 32).genesis
        assert HashChain(MASTER_KEY).genesis.startswith("genesis:")

    def test_event_hash_is_canonical(self):
        """Test key order does not change the event hash."""
        first = HashChain.compute_event_hash({"a": 1, "b": 2})
        second = HashChain.compute_event_hash({"b": 2, "a": 1})

        assert first == second
        assert first.startswith("sha256:")


class TestAuditLog:
    """Tests for the bounded audit log."""

    def test_record_links_entries(self):
        """Test entries are sequenced and chained."""
        log = AuditLog(master_key=MASTER_KEY)

        first = log.record("ALLOWED", {"command": "ls"})
        second = log.record("BLOCKED", {"command": "sudo", "reason": "never"})

        assert first.sequence_number == 0
        assert second.sequence_number == 1
        assert second.previous_hash == first.event_hash
        assert first.previous_hash.startswith("genesis:")
        assert second.severity == "high"
        assert log.verify_chain()

    def test_severity_override_and_default(self):
        """Test explicit severity wins and unknown events default."""
        log = AuditLog()

        assert log.record("CUSTOM").severity == "medium"
        assert log.record("ALLOWED", severity="critical").severity == "critical"
        assert severity_for("INIT") == "info"

    def test_tamper_detected(self):
        """Test editing a retained entry breaks the chain."""
        log = AuditLog(master_key=MASTER_KEY)
        log.record("ALLOWED", {"command": "ls"})
        log.record("ALLOWED", {"command": "cat"})

        log._entries[0].data["command"] = "rm"

        assert not log.verify_chain()

    def test_eviction_keeps_chain_verifiable(self):
        """Test the chain verifies from the first retained entry."""
        log = AuditLog(AuditConfig(max_entries=3), master_key=MASTER_KEY)
        for i in range(5):
            log.record("ALLOWED", {"n": i})

        assert len(log) == 3
        assert log.evicted == 2
        assert [e["data"]["n"] for e in log.entries()] == [2, 3, 4]
        assert log.verify_chain()

    def test_chain_disabled(self):
        """Test entries carry no integrity block without a chain."""
        log = AuditLog(AuditConfig(hash_chain=False))
        entry = log.record("ALLOWED")

        assert "integrity" not in entry.to_dict()
        assert log.verify_chain()

    def test_entries_limit(self):
        """Test limits return the most recent entries."""
        log = AuditLog()
        for i in range(4):
            log.record("ALLOWED", {"n": i})

        assert [e["data"]["n"] for e in log.entries(2)] == [2, 3]
        assert log.entries(0) == []

    def test_clear_restarts_chain(self):
        """Test clearing resets the sequence."""
        log = AuditLog(master_key=MASTER_KEY)
        log.record("ALLOWED")
        log.clear()

        entry = log.record("ALLOWED")

        assert entry.sequence_number == 0
        assert log.verify_chain()

    def test_stats(self):
        """Test per-type statistics."""
        log = AuditLog()
        log.record("ALLOWED")
        log.record("ALLOWED")
        log.record("BLOCKED")

        stats = log.get_stats()

        assert stats["events_by_type"] == {"ALLOWED": 2, "BLOCKED": 1}
        assert stats["hash_chain"] is True

    def test_export(self, tmp_path):
        """Test JSON export."""
        log = AuditLog()
        log.record("ALLOWED", {"command": "ls"})

        path = log.export(str(tmp_path / "out" / "audit.json"), metrics={"total": 1})
        payload = json.loads(path.read_text())

        assert set(payload) == {"exported", "metrics", "audit_log"}
        assert payload["metrics"] == {"total": 1}
        assert payload["audit_log"][0]["event_type"] == "ALLOWED"
