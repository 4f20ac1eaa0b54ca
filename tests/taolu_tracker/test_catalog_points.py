"""
Tests for the reference catalog, points ledger sink and audit trail.
"""

import pytest

from database.engine import DatabasePersistenceError, commit_session
from database.models_taolu import LedgerSource
from taolu_tracker.audit import log_audit_event, recent_audit_events
from taolu_tracker.catalog import ReferenceCatalog
from taolu_tracker.errors import ValidationError
from taolu_tracker.points import NOTE_MAX_LENGTH, PointsLedger


class TestReferenceCatalog:

    def test_list_forms_active_only(self, db, catalog_data):
        catalog = ReferenceCatalog(db)
        assert [f.name for f in catalog.list_forms()] == ["Changquan", "Nanquan"]
        assert len(catalog.list_forms(active_only=False)) == 3

    def test_require_unknown(self, db, catalog_data):
        catalog = ReferenceCatalog(db)
        with pytest.raises(ValidationError):
            catalog.require_form("nope")
        with pytest.raises(ValidationError):
            catalog.require_code("nope")
        assert catalog.get_form(None) is None

    def test_codes_by_ids(self, db, catalog_data):
        code = catalog_data.codes["21"]
        found = ReferenceCatalog(db).codes_by_ids([code.id, None, "missing"])
        assert list(found) == [code.id]

    def test_age_groups(self, db, catalog_data):
        [group] = ReferenceCatalog(db).list_age_groups()
        assert group.name == "Juniors"


class TestPointsLedger:

    def test_post_is_idempotent_per_source(self, db, catalog_data):
        points = PointsLedger(db)
        first = points.post("s1", 4, "finish", LedgerSource.SESSION_FINISH, "session-1")
        second = points.post("s1", 4, "finish", LedgerSource.SESSION_FINISH, "session-1")
        db.commit()

        assert first.id == second.id
        assert len(points.entries_for_student("s1")) == 1

    def test_balance_delta(self, db, catalog_data):
        points = PointsLedger(db)
        points.post("s1", 4, "finish", LedgerSource.SESSION_FINISH, "a")
        points.post("s1", -3, "round", LedgerSource.REFINEMENT, "b")
        points.post("s2", 10, "finish", LedgerSource.SESSION_FINISH, "c")
        db.commit()

        assert points.balance_delta("s1") == 1
        assert points.balance_delta("nobody") == 0

    def test_note_truncated(self, db, catalog_data):
        entry = PointsLedger(db).post("s1", 1, "x" * 500, LedgerSource.REMEDIATION, "r1")
        assert len(entry.note) == NOTE_MAX_LENGTH
        assert entry.category == LedgerSource.REMEDIATION.value


class TestAuditTrail:

    def test_recent_events_newest_first(self, db, catalog_data):
        log_audit_event(db, "first", "one")
        log_audit_event(db, "second", "two", details={"k": 1}, actor="coach-1")
        db.commit()

        events = recent_audit_events(db)
        assert [e.event_type for e in events] == ["second", "first"]
        assert events[0].details == {"k": 1}
        assert [e.message for e in recent_audit_events(db, event_type="first")] == ["one"]

    def test_unwritable_event_fails_the_operation(self, db, catalog_data):
        PointsLedger(db).post("s1", 4, "finish", LedgerSource.SESSION_FINISH, "session-1")
        log_audit_event(db, "session_finished", None)

        with pytest.raises(DatabasePersistenceError):
            commit_session(db)
        assert PointsLedger(db).entries_for_student("s1") == []
        assert recent_audit_events(db) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
