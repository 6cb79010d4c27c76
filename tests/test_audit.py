"""
Test suite for audit trail module

Tests hash chaining, tamper detection and queries over the loan audit log.
"""

import pytest
import threading
from unittest.mock import Mock
from datetime import datetime, timezone
from decimal import Decimal

from agriledger.audit import AuditTrail, AuditEvent, AuditEventType
from agriledger.loans import LoanStatus
from agriledger.storage import InMemoryStorage, SQLiteStorage


class TestAuditEvent:
    """Test AuditEvent hashing"""

    def _event(self, **overrides) -> AuditEvent:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        fields = dict(
            id="evt-1",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan",
            entity_id="L1",
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal('50.00'), "to_status": LoanStatus.OVERDUE},
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Decimals and enums are stored as plain values"""
        event = self._event()
        assert event.metadata == {"amount": "50.00", "to_status": "OVERDUE"}

    def test_hash_verification(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.entity_id = "L2"
        assert not event.verify_hash()

    def test_hash_includes_sequence(self):
        assert self._event().calculate_hash() != self._event(sequence=2).calculate_hash()

    def test_document_round_trip(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored == event
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def _log_lifecycle(self, loan_id="L1"):
        for event_type in (AuditEventType.LOAN_CREATED, AuditEventType.LOAN_APPROVED,
                           AuditEventType.LOAN_DISBURSED):
            self.audit_trail.log_event(event_type, "loan", loan_id, {"loan": loan_id},
                                       user_id="officer-1", correlation_id="req-1")

    def test_log_events_chain(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1", {"principal": "100.00"})
        second = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.get_latest_hash() == second.current_hash

    def test_queries(self):
        self._log_lifecycle("L1")
        self._log_lifecycle("L2")

        events = self.audit_trail.get_events_for_entity("loan", "L1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_APPROVED, AuditEventType.LOAN_DISBURSED
        ]
        assert all(e.user_id == "officer-1" and e.correlation_id == "req-1" for e in events)
        assert len(self.audit_trail.get_events_for_entity("loan", "L1", limit=1)) == 1

        approvals = self.audit_trail.get_events_by_type(AuditEventType.LOAN_APPROVED)
        assert [e.entity_id for e in approvals] == ["L1", "L2"]

        assert self.audit_trail.count_events() == 6
        assert [e.sequence for e in self.audit_trail.get_all_events()] == [1, 2, 3, 4, 5, 6]
        assert self.audit_trail.get_event_by_id(events[0].id) == events[0]
        assert self.audit_trail.get_event_by_id("missing") is None

    def test_verify_integrity_valid_chain(self):
        self._log_lifecycle()
        result = self.audit_trail.verify_integrity()

        assert result['valid']
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []
        assert result['details']['entity_types'] == ["loan"]

    def test_verify_integrity_empty_trail(self):
        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 0

    def test_verify_integrity_detects_hash_tampering(self):
        self._log_lifecycle()
        target = self.audit_trail.get_all_events()[1]

        data = self.storage.load("audit_events", target.id)
        data['metadata']['loan'] = "L-forged"
        self.storage.save("audit_events", target.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert [err['event_id'] for err in result['hash_errors']] == [target.id]

    def test_verify_integrity_detects_chain_break(self):
        self._log_lifecycle()
        target = self.audit_trail.get_all_events()[2]

        tampered = AuditEvent.from_dict(self.storage.load("audit_events", target.id))
        tampered.previous_hash = "0" * 64
        tampered.current_hash = tampered.calculate_hash()
        self.storage.save("audit_events", tampered.id, tampered.to_dict())

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'] == []
        assert result['chain_breaks'][0]['event_id'] == target.id

    def test_chain_resumes_after_restart(self):
        storage = SQLiteStorage(":memory:")
        try:
            AuditTrail(storage).log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
            reopened = AuditTrail(storage)
            event = reopened.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")

            assert event.sequence == 2
            assert reopened.verify_integrity()['valid']
        finally:
            storage.close()

    def test_concurrent_event_logging(self):
        """Concurrent writers still produce one unbroken chain"""
        def writer(n):
            for i in range(10):
                self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", f"L{n}", {"i": i})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 50

    def test_chain_head_is_cached(self):
        """Writes do not rescan the audit table"""
        storage = Mock(wraps=InMemoryStorage())
        audit_trail = AuditTrail(storage)
        storage.load_all.reset_mock()

        for i in range(3):
            audit_trail.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", "L1", {"i": i})

        assert storage.load_all.call_count == 0
        assert [e.id for e in audit_trail.get_all_events()] == [
            AuditTrail.event_id(1), AuditTrail.event_id(2), AuditTrail.event_id(3)
        ]

    def test_trails_sharing_a_table(self):
        other = AuditTrail(self.storage)
        self.audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        second = other.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
        third = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "L1")

        assert second.sequence == 2
        assert third.sequence == 3
        assert third.previous_hash == second.current_hash
        assert self.audit_trail.verify_integrity()['valid']
