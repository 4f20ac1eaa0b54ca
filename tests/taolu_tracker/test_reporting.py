"""
Tests for history and aggregation reports.
"""

from datetime import timedelta

import pytest

from database.models_taolu import utc_now
from taolu_tracker.config import ReportingConfig, TaoluConfig
from taolu_tracker.errors import ValidationError
from taolu_tracker.ledger import DeductionLedger
from taolu_tracker.refinement import NewDeduction, WindowRefinementEngine
from taolu_tracker.remediation import RemediationService
from taolu_tracker.reporting import ReportingService, code_sort_key
from taolu_tracker.sessions import SessionManager


@pytest.fixture
def reporting(db, catalog_data):
    return ReportingService(db)


@pytest.fixture
def judged(db, catalog_data):
    """Run a session end to end and return it finished."""
    manager = SessionManager(db)
    ledger = DeductionLedger(db)

    def _judge(student_id="s1", codes=(), voided=(), notes=None):
        [session] = manager.create_sessions(catalog_data.form.id, [student_id], [1, 2])
        for index, code_number in enumerate(codes):
            d = ledger.log_deduction(session.id, note=(notes or {}).get(index))
            if code_number:
                ledger.assign_deduction(d.id, code_id=catalog_data.codes[code_number].id)
            if index in voided:
                ledger.assign_deduction(d.id, voided=True)
        manager.finish_session(session.id)
        return session

    return _judge


class TestFinishedSessions:

    def test_most_recent_first(self, reporting, judged, db):
        first = judged(student_id="s1")
        second = judged(student_id="s2")
        first.ended_at = utc_now() - timedelta(hours=1)
        db.commit()

        ids = [s.session_id for s in reporting.finished_sessions()]
        assert ids == [second.id, first.id]

    def test_samples_and_scores(self, reporting, judged):
        judged(codes=["10", "10", "2", "21", "3"], voided={4})

        [summary] = reporting.finished_sessions()
        assert summary.deduction_samples == ["10", "2", "21"]
        assert summary.deductions_count == 4
        assert summary.points_earned == 2
        assert summary.form_name == "Changquan"

    def test_limit_clamped(self, db, catalog_data, judged):
        for index in range(3):
            judged(student_id=f"s{index}")
        small = ReportingService(db, config=TaoluConfig(reporting=ReportingConfig(max_history_limit=2)))

        assert len(small.finished_sessions(limit=0)) == 1
        assert len(small.finished_sessions(limit=50)) == 2

    def test_open_sessions_excluded(self, reporting, db, catalog_data):
        SessionManager(db).create_sessions(catalog_data.form.id, ["s1"], [1])
        assert reporting.finished_sessions() == []

    def test_remediation_status(self, reporting, judged, db):
        session = judged(codes=["2", "3"])
        ids = [d.id for d in DeductionLedger(db).list_deductions(session.id)]
        RemediationService(db).submit_remediation(session.id, ids)

        [summary] = reporting.finished_sessions()
        assert summary.remediation_completed is True
        assert summary.remediation_points == 2


class TestCodeCounts:

    def test_counts_live_coded_and_retroactive(self, reporting, judged, db, catalog_data):
        judged(codes=["10", "10", "2", None], voided={1})
        judged(codes=["10"])
        judged(student_id="other", codes=["10"])
        WindowRefinementEngine(db).submit("s1", 7, [], [
            NewDeduction(catalog_data.form.id, 1, catalog_data.codes["2"].id),
        ])

        counts = reporting.code_counts("s1")
        assert counts == {
            catalog_data.codes["10"].id: 2,
            catalog_data.codes["2"].id: 2,
        }

    def test_missing_student(self, reporting):
        with pytest.raises(ValidationError):
            reporting.code_counts("")


class TestStudentSummary:

    def test_totals_by_form_and_section(self, reporting, judged, catalog_data):
        judged(codes=["10", "2"], notes={0: "bent"})
        judged(codes=["10"])

        summary = reporting.student_summary("s1")
        form_id = catalog_data.form.id
        code_10 = catalog_data.codes["10"].id

        assert len(summary["sessions"]) == 2
        assert summary["form_code_totals"][form_id][code_10] == 2
        assert summary["form_section_code_totals"][form_id]["1"][code_10] == 2
        assert summary["form_section_code_notes"][form_id]["1"][code_10] == ["bent"]

    def test_date_range(self, reporting, judged):
        judged(codes=["10"])
        future = utc_now() + timedelta(days=1)
        assert reporting.student_summary("s1", start=future)["sessions"] == []

    def test_inverted_range(self, reporting):
        now = utc_now()
        with pytest.raises(ValidationError):
            reporting.student_summary("s1", start=now, end=now - timedelta(days=1))


class TestCodeSortKey:

    def test_numeric_then_text_then_unassigned(self):
        numbers = ["21", None, "abc", "2", "10"]
        assert sorted(numbers, key=code_sort_key) == ["2", "10", "21", "abc", None]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
