"""
Autopilot - Phase Selector Tests
================================
"""

from itertools import count

import pytest

from autopilot.core.engine.phase_selector import PhaseContext, PhaseSelection, select_next_phase
from autopilot.core.models import (
    CyclePhase,
    CycleStatus,
    Finding,
    FindingCategory,
    FindingPriority,
    FindingStatus,
)

_ids = count(1)


def make_finding(
    priority: FindingPriority = FindingPriority.P2,
    status: FindingStatus = FindingStatus.OPEN,
    retry_count: int = 0,
    max_retries: int = 3,
) -> Finding:
    return Finding(
        id=f"f-{next(_ids)}",
        session_id="s-1",
        category=FindingCategory.BUG,
        priority=priority,
        title="Something",
        description="",
        status=status,
        retry_count=retry_count,
        max_retries=max_retries,
    )


def select(context: PhaseContext, review: int = 5, discovery: int = 10) -> PhaseSelection:
    return select_next_phase(context, review_interval=review, discovery_interval=discovery)


class TestFirstCycle:

    def test_empty_session_discovers(self):
        """Empty session, cycle 0 -> discovery with no finding."""
        assert select(PhaseContext(cycle_number=0)) == PhaseSelection(CyclePhase.DISCOVERY, None)

    def test_known_findings_skip_initial_discovery(self):
        finding = make_finding(FindingPriority.P1)
        selection = select(PhaseContext(cycle_number=0, findings=[finding]))
        assert selection == PhaseSelection(CyclePhase.FIX, finding.id)


class TestVerification:

    @pytest.mark.parametrize("phase", [CyclePhase.FIX, CyclePhase.IMPROVE])
    def test_successful_change_is_tested(self, phase: CyclePhase):
        finding = make_finding(FindingPriority.P0)
        context = PhaseContext(
            cycle_number=5,  # also a review interval
            last_phase=phase,
            last_cycle_status=CycleStatus.COMPLETED,
            last_finding_id=finding.id,
            findings=[finding],
            total_cycles=5,
        )
        assert select(context) == PhaseSelection(CyclePhase.TEST, finding.id)

    def test_failed_change_is_not_tested(self):
        finding = make_finding(FindingPriority.P0)
        context = PhaseContext(
            cycle_number=3,
            last_phase=CyclePhase.FIX,
            last_cycle_status=CycleStatus.FAILED,
            last_finding_id=finding.id,
            findings=[finding],
            total_cycles=3,
        )
        assert select(context).phase == CyclePhase.FIX

    def test_failed_test_goes_back_to_its_finding(self):
        urgent = make_finding(FindingPriority.P0)
        tested = make_finding(FindingPriority.P3, status=FindingStatus.OPEN, retry_count=1)
        context = PhaseContext(
            cycle_number=4,
            last_phase=CyclePhase.TEST,
            last_cycle_status=CycleStatus.FAILED,
            last_finding_id=tested.id,
            findings=[urgent, tested],
            total_cycles=4,
        )
        assert select(context) == PhaseSelection(CyclePhase.FIX, tested.id)

    def test_failed_test_for_retired_finding_moves_on(self):
        retired = make_finding(FindingPriority.P0, status=FindingStatus.WONT_FIX)
        context = PhaseContext(
            cycle_number=4,
            last_phase=CyclePhase.TEST,
            last_cycle_status=CycleStatus.FAILED,
            last_finding_id=retired.id,
            findings=[retired],
            total_cycles=4,
        )
        assert select(context) == PhaseSelection(CyclePhase.DISCOVERY)

    def test_failed_test_for_exhausted_finding_moves_on(self):
        exhausted = make_finding(FindingPriority.P0, status=FindingStatus.OPEN, retry_count=4, max_retries=3)
        context = PhaseContext(
            cycle_number=4,
            last_phase=CyclePhase.TEST,
            last_cycle_status=CycleStatus.FAILED,
            last_finding_id=exhausted.id,
            findings=[exhausted],
            total_cycles=4,
        )
        assert select(context).phase == CyclePhase.DISCOVERY

    def test_failed_test_for_resolved_finding_is_not_refixed(self):
        """Only a finding reopened by the failed test goes back to fix."""
        resolved = make_finding(FindingPriority.P0, status=FindingStatus.RESOLVED)
        failing = make_finding(FindingPriority.P1)
        context = PhaseContext(
            cycle_number=4,
            last_phase=CyclePhase.TEST,
            last_cycle_status=CycleStatus.FAILED,
            last_finding_id=resolved.id,
            findings=[resolved, failing],
            total_cycles=4,
        )
        assert select(context) == PhaseSelection(CyclePhase.FIX, failing.id)


class TestIntervals:

    def test_review_interval(self):
        context = PhaseContext(cycle_number=5, findings=[make_finding()], total_cycles=5)
        assert select(context) == PhaseSelection(CyclePhase.REVIEW)

    def test_discovery_interval(self):
        context = PhaseContext(cycle_number=7, findings=[make_finding()], total_cycles=7)
        assert select(context, review=0, discovery=7) == PhaseSelection(CyclePhase.DISCOVERY)

    def test_review_wins_over_discovery(self):
        context = PhaseContext(cycle_number=10, findings=[make_finding()], total_cycles=10)
        assert select(context, review=5, discovery=10).phase == CyclePhase.REVIEW

    def test_zero_interval_disabled(self):
        finding = make_finding(FindingPriority.P1)
        context = PhaseContext(cycle_number=5, findings=[finding], total_cycles=5)
        assert select(context, review=0, discovery=0) == PhaseSelection(CyclePhase.FIX, finding.id)


class TestPriorities:

    def _context(self, *findings: Finding) -> PhaseContext:
        return PhaseContext(cycle_number=3, findings=list(findings), total_cycles=3)

    def test_highest_priority_first(self):
        low = make_finding(FindingPriority.P3)
        high = make_finding(FindingPriority.P1)
        assert select(self._context(low, high)) == PhaseSelection(CyclePhase.FIX, high.id)

    def test_oldest_within_priority(self):
        first = make_finding(FindingPriority.P2)
        second = make_finding(FindingPriority.P2)
        assert select(self._context(first, second)) == PhaseSelection(CyclePhase.IMPROVE, first.id)

    def test_p2_and_p3_are_improvements(self):
        finding = make_finding(FindingPriority.P3)
        assert select(self._context(finding)).phase == CyclePhase.IMPROVE

    def test_skips_findings_out_of_retries(self):
        exhausted = make_finding(FindingPriority.P0, retry_count=4, max_retries=3)
        fallback = make_finding(FindingPriority.P3)
        assert select(self._context(exhausted, fallback)) == PhaseSelection(CyclePhase.IMPROVE, fallback.id)

    def test_finding_at_ceiling_still_attempted(self):
        finding = make_finding(FindingPriority.P0, retry_count=3, max_retries=3)
        assert select(self._context(finding)) == PhaseSelection(CyclePhase.FIX, finding.id)

    def test_nothing_actionable_discovers(self):
        resolved = make_finding(FindingPriority.P0, status=FindingStatus.RESOLVED)
        assert select(self._context(resolved)) == PhaseSelection(CyclePhase.DISCOVERY)

    def test_deterministic(self):
        findings = [make_finding(p) for p in (FindingPriority.P2, FindingPriority.P0, FindingPriority.P3)]
        context = self._context(*findings)
        assert len({select(context) for _ in range(20)}) == 1
