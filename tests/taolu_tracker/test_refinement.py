"""
Tests for window refinement.

Tests cover:
- Chip grouping over the trailing window
- Round scoring (fixed/missed/new)
- Persistence of rounds, credits and retroactive deductions
- Re-credit protection
"""

from datetime import timedelta

import pytest

from database.models_taolu import (
    LedgerEntry,
    LedgerSource,
    RefinementDeduction,
    RefinementItem,
    utc_now,
)
from taolu_tracker.errors import AlreadyRefinedError, ValidationError
from taolu_tracker.ledger import DeductionLedger
from taolu_tracker.refinement import (
    NewDeduction,
    RefinementSelection,
    WindowRefinementEngine,
)
from taolu_tracker.reporting import UNASSIGNED_LABEL
from taolu_tracker.sessions import SessionManager


@pytest.fixture
def now():
    return utc_now() + timedelta(minutes=1)


@pytest.fixture
def engine(db, catalog_data):
    return WindowRefinementEngine(db)


@pytest.fixture
def make_session(db, catalog_data, now):
    """Finished session with coded deductions, ended days_ago before now."""
    manager = SessionManager(db)
    ledger = DeductionLedger(db)

    def _make(student_id="s1", entries=(), sections=(1, 2, 3), days_ago=1, form=None):
        form = form or catalog_data.form
        [session] = manager.create_sessions(form.id, [student_id], list(sections))
        deductions = []
        for section, code_number, note in entries:
            d = ledger.log_deduction(session.id, section_number=section, note=note)
            if code_number:
                ledger.assign_deduction(d.id, code_id=catalog_data.codes[code_number].id)
            deductions.append(d)
        manager.finish_session(session.id)
        session.ended_at = now - timedelta(days=days_ago)
        db.commit()
        return session, deductions

    return _make


def _chips(summary):
    return [
        (form.form_name, section.section_number, chip)
        for form in summary.forms
        for section in form.sections
        for chip in section.chips
    ]


def _selection(catalog_data, deduction, section, code_number, fixed, included=True, form=None):
    return RefinementSelection(
        (form or catalog_data.form).id, section, catalog_data.codes[code_number].id,
        deduction_ids=[deduction.id], fixed=fixed, included=included,
    )


# =============================================================
# TEST: Summary
# =============================================================

class TestSummarize:

    def test_same_code_across_sessions_groups(self, engine, make_session, now, catalog_data):
        make_session(entries=[(2, "10", "arm")], days_ago=1)
        make_session(entries=[(2, "10", None)], days_ago=3)

        summary = engine.summarize("s1", 7, now=now)
        [(form_name, section, chip)] = _chips(summary)
        assert form_name == "Changquan"
        assert section == 2
        assert chip.count == 2
        assert chip.code_number == "10"
        assert len(chip.deduction_ids) == 2
        assert chip.notes == ["arm"]

    def test_window_bounds(self, engine, make_session, now):
        make_session(entries=[(1, "2", None)], days_ago=2)
        make_session(entries=[(1, "2", None)], days_ago=20)

        assert _chips(engine.summarize("s1", 7, now=now))[0][2].count == 1
        assert _chips(engine.summarize("s1", 30, now=now))[0][2].count == 2

    def test_voided_and_open_sessions_excluded(self, engine, make_session, db, now, catalog_data):
        _, [voided, kept] = make_session(entries=[(1, "2", None), (1, "3", None)])
        DeductionLedger(db).assign_deduction(voided.id, voided=True)

        [open_session] = SessionManager(db).create_sessions(catalog_data.form.id, ["s1"], [1])
        DeductionLedger(db).log_deduction(open_session.id)

        chips = _chips(engine.summarize("s1", 7, now=now))
        assert [c.deduction_ids for _, _, c in chips] == [[kept.id]]

    def test_chip_order_and_unassigned_label(self, engine, make_session, now):
        make_session(entries=[
            (1, "21", None),
            (1, None, None),
            (1, "10", None),
            (1, "2", None),
        ])
        chips = _chips(engine.summarize("s1", 7, now=now))
        assert [c.code_number for _, _, c in chips] == ["2", "10", "21", None]
        assert chips[-1][2].code_name == UNASSIGNED_LABEL

    def test_missing_section_uses_only_section(self, engine, make_session, db, now):
        _, [single] = make_session(entries=[(2, "3", None)], sections=(2,))
        _, [multi] = make_session(entries=[(1, "3", None)], sections=(1, 3))
        for d in (single, multi):
            d.section_number = None
        db.commit()

        sections = {c.deduction_ids[0]: s for _, s, c in _chips(engine.summarize("s1", 7, now=now))}
        assert sections[single.id] == 2
        assert sections[multi.id] == 0

    def test_forms_sorted_by_name(self, engine, make_session, now, catalog_data):
        make_session(entries=[(1, "2", None)], sections=(1,), form=catalog_data.short_form)
        make_session(entries=[(1, "2", None)])
        names = [f.form_name for f in engine.summarize("s1", 7, now=now).forms]
        assert names == ["Changquan", "Nanquan"]

    def test_invalid_window(self, engine, catalog_data):
        with pytest.raises(ValidationError):
            engine.summarize("s1", 14)

    def test_summarize_many(self, engine, make_session, now):
        make_session(student_id="s1", entries=[(1, "2", None)])
        make_session(student_id="s2", entries=[])

        summaries = engine.summarize_many(["s1", "s2"], 7, now=now)
        assert [s.student_id for s in summaries] == ["s1"]

        with pytest.raises(ValidationError):
            engine.summarize_many([], 7)


# =============================================================
# TEST: Submit
# =============================================================

class TestSubmit:

    def test_net_points(self, engine, make_session, catalog_data, now):
        form_id = catalog_data.form.id
        chips = [(1, "10"), (2, "10"), (3, "10"), (1, "2"), (2, "2")]
        _, deductions = make_session(entries=[(s, c, None) for s, c in chips])
        selections = [
            _selection(catalog_data, d, section, number, fixed=index < 3)
            for index, (d, (section, number)) in enumerate(zip(deductions, chips))
        ]
        new = [NewDeduction(form_id, 4, catalog_data.codes["10"].id, note="spotted on video")]

        result = engine.submit("s1", 7, selections, new, now=now)
        assert (result.fixed_count, result.missed_count, result.new_count) == (3, 2, 1)
        assert result.points_fixed == 15
        assert result.points_missed == 10
        assert result.points_new == 3
        assert result.net_points == 2

    def test_excluded_selections_ignored(self, engine, make_session, catalog_data, now):
        _, [d1, d2] = make_session(entries=[(1, "10", None), (2, "2", None)])
        result = engine.submit("s1", 7, [
            _selection(catalog_data, d1, 1, "10", fixed=True),
            _selection(catalog_data, d2, 2, "2", fixed=False, included=False),
        ], [], now=now)
        assert result.missed_count == 0
        assert result.net_points == 5

    def test_round_persisted_and_posted(self, engine, make_session, db, now, catalog_data):
        _, [d1, d2] = make_session(entries=[(2, "10", "arm"), (3, "2", None)])
        result = engine.submit("s1", 7, [
            RefinementSelection(
                catalog_data.form.id, 2, catalog_data.codes["10"].id,
                deduction_ids=[d1.id], notes=["arm"], fixed=True,
            ),
            RefinementSelection(
                catalog_data.form.id, 3, catalog_data.codes["2"].id,
                deduction_ids=[d2.id], fixed=False,
            ),
        ], [], actor="coach-1", now=now)

        [round_] = engine.list_rounds("s1")
        assert round_.id == result.round_id
        assert round_.points_net == 0
        assert round_.created_by == "coach-1"
        statuses = sorted(i.status for i in db.query(RefinementItem).all())
        assert statuses == ["fixed", "missed"]

        entry = db.query(LedgerEntry).filter(
            LedgerEntry.source_type == LedgerSource.REFINEMENT.value
        ).one()
        assert entry.source_id == result.round_id
        assert entry.points == 0

    def test_credited_deductions_leave_summary(self, engine, make_session, now, catalog_data):
        _, [d1, d2] = make_session(entries=[(2, "10", None), (3, "2", None)])
        engine.submit("s1", 7, [
            RefinementSelection(catalog_data.form.id, 2, catalog_data.codes["10"].id,
                                deduction_ids=[d1.id], fixed=True),
        ], [], now=now)

        remaining = [c.deduction_ids for _, _, c in _chips(engine.summarize("s1", 7, now=now))]
        assert remaining == [[d2.id]]

    def test_recredit_rejected(self, engine, make_session, now, catalog_data):
        _, [d1] = make_session(entries=[(2, "10", None)])
        selection = RefinementSelection(
            catalog_data.form.id, 2, catalog_data.codes["10"].id,
            deduction_ids=[d1.id], fixed=True,
        )
        engine.submit("s1", 7, [selection], [], now=now)

        with pytest.raises(AlreadyRefinedError):
            engine.submit("s1", 7, [selection], [], now=now)
        assert len(engine.list_rounds("s1")) == 1

    def test_rounds_are_repeatable(self, engine, catalog_data, now):
        form_id = catalog_data.form.id
        engine.submit("s1", 7, [RefinementSelection(form_id, 1, fixed=False)], [], now=now)
        engine.submit("s1", 7, [RefinementSelection(form_id, 1, fixed=False)], [], now=now)
        assert len(engine.list_rounds("s1")) == 2

    def test_foreign_deduction_rejected(self, engine, make_session, now, catalog_data):
        _, [theirs] = make_session(student_id="s2", entries=[(1, "2", None)])
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [
                RefinementSelection(catalog_data.form.id, 1, deduction_ids=[theirs.id], fixed=True),
            ], [], now=now)

    def test_fixed_selection_needs_deductions(self, engine, catalog_data, db, now):
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [
                RefinementSelection(catalog_data.form.id, 1, catalog_data.codes["10"].id, fixed=True),
            ], [], now=now)
        assert engine.list_rounds("s1") == []
        assert db.query(LedgerEntry).filter(
            LedgerEntry.source_type == LedgerSource.REFINEMENT.value
        ).count() == 0

    def test_voided_deduction_rejected(self, engine, make_session, db, now, catalog_data):
        _, [d1] = make_session(entries=[(1, "2", None)])
        DeductionLedger(db).assign_deduction(d1.id, voided=True)

        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [_selection(catalog_data, d1, 1, "2", fixed=True)], [], now=now)
        assert engine.list_rounds("s1") == []

    def test_deduction_outside_window_rejected(self, engine, make_session, now, catalog_data):
        _, [old] = make_session(entries=[(1, "2", None)], days_ago=20)

        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [_selection(catalog_data, old, 1, "2", fixed=True)], [], now=now)
        result = engine.submit("s1", 30, [_selection(catalog_data, old, 1, "2", fixed=True)], [], now=now)
        assert result.fixed_count == 1

    def test_open_session_deduction_rejected(self, engine, db, now, catalog_data):
        [session] = SessionManager(db).create_sessions(catalog_data.form.id, ["s1"], [1])
        d1 = DeductionLedger(db).log_deduction(session.id)

        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [
                RefinementSelection(catalog_data.form.id, 1, deduction_ids=[d1.id], fixed=True),
            ], [], now=now)

    def test_deduction_must_match_chip(self, engine, make_session, now, catalog_data):
        _, [d1] = make_session(entries=[(2, "10", None)])

        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [_selection(catalog_data, d1, 2, "21", fixed=True)], [], now=now)
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [_selection(catalog_data, d1, 3, "10", fixed=True)], [], now=now)
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [_selection(catalog_data, d1, 2, "10", fixed=True,
                                               form=catalog_data.short_form)], [], now=now)
        assert engine.list_rounds("s1") == []

    def test_deduction_shared_across_selections(self, engine, make_session, now, catalog_data):
        _, [d1] = make_session(entries=[(1, "2", None)])

        with pytest.raises(ValidationError, match="more than one selection"):
            engine.submit("s1", 7, [
                _selection(catalog_data, d1, 1, "2", fixed=True),
                _selection(catalog_data, d1, 1, "2", fixed=True),
            ], [], now=now)
        assert engine.list_rounds("s1") == []

    def test_new_deduction_needs_code(self, engine, catalog_data, db, now):
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [], [NewDeduction(catalog_data.form.id, 1, None)], now=now)
        with pytest.raises(ValidationError):
            engine.submit("s1", 7, [], [
                NewDeduction(catalog_data.form.id, 5, catalog_data.codes["2"].id)
            ], now=now)
        assert engine.list_rounds("s1") == []
        assert db.query(RefinementDeduction).count() == 0

    def test_new_deductions_join_later_summaries(self, engine, catalog_data, now):
        engine.submit("s1", 7, [], [
            NewDeduction(catalog_data.form.id, 4, catalog_data.codes["21"].id, note="late"),
        ], now=now)

        [(_, section, chip)] = _chips(engine.summarize("s1", 7, now=now))
        assert section == 4
        assert chip.code_number == "21"
        assert chip.notes == ["late"]

    def test_invalid_window(self, engine, catalog_data):
        with pytest.raises(ValidationError):
            engine.submit("s1", 8, [], [])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
