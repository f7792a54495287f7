"""
Test suite for audit module

Tests hash-chained audit events, tamper detection and the interaction of
the audit trail with storage transactions.
"""

import pytest
from datetime import datetime, timezone, date
from decimal import Decimal

from microfinance.audit import AuditEvent, AuditEventType, AuditTrail
from microfinance.models import LoanStatus
from microfinance.storage import InMemoryStorage, SQLiteStorage


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test Decimal, dates and enums become JSON-friendly values"""
        now = datetime.now(timezone.utc)

        event = AuditEvent(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="loan", entity_id="LOAN001",
            previous_hash="", current_hash="",
            metadata={
                "amount": Decimal('72.22'),
                "next_payment_date": date(2024, 1, 2),
                "status": LoanStatus.RELEASED,
                "nested": {"values": [Decimal('1'), Decimal('2')]}
            }
        )

        assert event.metadata["amount"] == "72.22"
        assert event.metadata["next_payment_date"] == "2024-01-02"
        assert event.metadata["status"] == "released"
        assert event.metadata["nested"] == {"values": ["1", "2"]}

    def test_hash_detects_changes(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.LOAN_CLOSED,
            entity_type="loan", entity_id="LOAN001",
            previous_hash="abc", current_hash="",
            metadata={"reasons": ["paid_days"]}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["reasons"] = ["total_paid"]
        assert not event.verify_hash()


class TestAuditTrail:
    """Test the hash chain"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_chain_links_events(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        second = self.audit_trail.log_event(AuditEventType.LOAN_STATUS_CHANGED, "loan", "L1",
                                            metadata={"to": "approved"})

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert self.audit_trail.verify_integrity() == {
            "valid": True, "total_events": 2, "hash_errors": [], "chain_breaks": []
        }

    def test_tampering_detected(self):
        """Test editing a stored event breaks integrity"""
        event = self.audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "L1",
                                           metadata={"amount": Decimal('100')})
        self.audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", "L1")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "1"
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        middle = self.audit_trail.log_event(AuditEventType.LOAN_UPDATED, "loan", "L1")
        self.audit_trail.log_event(AuditEventType.LOAN_DELETED, "loan", "L1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_queries(self):
        self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L2")
        self.audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "L1")

        assert [e.event_type for e in self.audit_trail.get_events_for_entity("loan", "L1")] == [
            AuditEventType.LOAN_CREATED, AuditEventType.PAYMENT_RECORDED
        ]
        assert len(self.audit_trail.get_events_for_entity("loan", "L1", limit=1)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_CREATED)) == 2
        assert self.audit_trail.count_events() == 3

    def test_disabled(self):
        trail = AuditTrail(self.storage, enabled=False)

        assert trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1") is None
        assert trail.count_events() == 0

    def test_head_cached_between_writes(self, monkeypatch):
        """Test appending does not rescan the events table"""
        first = self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")

        def rescan(table):
            raise AssertionError(f"{table} rescanned")

        monkeypatch.setattr(self.storage, "load_all", rescan)
        second = self.audit_trail.log_event(AuditEventType.LOAN_UPDATED, "loan", "L1")
        third = self.audit_trail.log_event(AuditEventType.LOAN_DELETED, "loan", "L1")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert third.sequence == 3

    def test_rolled_back_event_is_not_chained(self):
        """Test an event written in a failed transaction disappears cleanly"""
        first = self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.LOAN_UPDATED, "loan", "L1")
                raise RuntimeError("boom")

        third = self.audit_trail.log_event(AuditEventType.LOAN_DELETED, "loan", "L1")

        assert third.previous_hash == first.current_hash
        assert third.sequence == 2
        assert self.audit_trail.verify_integrity()["valid"]


class TestAuditTrailSQLite:
    """Test the chain on SQLite storage"""

    def test_chain_persists(self, tmp_path):
        path = tmp_path / "audit.db"
        storage = SQLiteStorage(path)
        AuditTrail(storage).log_event(AuditEventType.PLAN_CREATED, "plan", "P1")
        storage.close()

        reopened = SQLiteStorage(path)
        trail = AuditTrail(reopened)
        event = trail.log_event(AuditEventType.PLAN_UPDATED, "plan", "P1")

        assert event.sequence == 2
        assert trail.verify_integrity()["valid"]
        reopened.close()
