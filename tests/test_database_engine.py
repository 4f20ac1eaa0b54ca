"""
Tests for the persistence engine helpers.
"""

import pytest
from sqlalchemy import text

from database.engine import (
    DatabasePersistenceError,
    commit_session,
    create_database_engine,
    get_session,
    initialize_database,
    reset_engine,
    verify_database_connection,
)
from database.models_taolu import AuditEvent


@pytest.fixture
def memory_engine():
    reset_engine()
    engine = create_database_engine("sqlite://")
    initialize_database()
    yield engine
    reset_engine()


@pytest.fixture
def session(memory_engine):
    session = get_session()
    yield session
    session.close()


class TestEngine:

    def test_verify_connection(self, memory_engine):
        assert verify_database_connection() is True

    def test_commit_persists(self, session):
        session.add(AuditEvent(event_type="test", message="kept"))
        commit_session(session)

        other = get_session()
        try:
            assert other.query(AuditEvent).count() == 1
        finally:
            other.close()

    def test_commit_failure_wrapped(self, session):
        session.add(AuditEvent(event_type="test", message="dropped"))
        session.add(AuditEvent(event_type="test", message=None))
        with pytest.raises(DatabasePersistenceError):
            commit_session(session)
        assert session.execute(text("SELECT COUNT(*) FROM taolu_audit_events")).scalar() == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
