"""
Phase Selector
==============

Pure decision function for the next cycle's phase. Identical input
always gives identical output; the engine builds the context from the
database before each cycle.

Order of rules (first match wins):
    1. First cycle with no known findings   -> discovery
    2. Last fix/improve completed           -> test (verify the change)
    3. Last test failed, finding reopened    -> fix that finding
    4. Review interval reached              -> review
    5. Discovery interval reached           -> discovery
    6. Highest-priority open finding        -> fix (P0/P1) / improve (P2/P3)
    7. Nothing actionable                   -> discovery
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from autopilot.core.models import CyclePhase, CycleStatus, Finding, FindingPriority, FindingStatus

PRIORITY_ORDER = (FindingPriority.P0, FindingPriority.P1, FindingPriority.P2, FindingPriority.P3)
FIX_PRIORITIES = {FindingPriority.P0, FindingPriority.P1}
CHANGE_PHASES = {CyclePhase.FIX, CyclePhase.IMPROVE}


@dataclass(frozen=True)
class PhaseSelection:
    phase: CyclePhase
    finding_id: Optional[str] = None


@dataclass
class PhaseContext:
    """
    Session history the selector decides on.

    ``findings`` holds every finding of the session ordered by priority
    then age; ``last_finding_id`` is the finding the previous cycle worked on.
    """
    cycle_number: int
    last_phase: Optional[CyclePhase] = None
    last_cycle_status: Optional[CycleStatus] = None
    last_finding_id: Optional[str] = None
    findings: Sequence[Finding] = field(default_factory=list)
    total_cycles: int = 0


def _is_actionable(finding: Finding) -> bool:
    return finding.status == FindingStatus.OPEN and finding.has_retries_left


def _on_interval(cycle_number: int, interval: int) -> bool:
    return interval > 0 and cycle_number > 0 and cycle_number % interval == 0


def select_next_phase(
    context: PhaseContext,
    review_interval: int,
    discovery_interval: int,
) -> PhaseSelection:
    """Pick the next phase and, for fix/improve/test, the finding to work on."""
    open_findings = [f for f in context.findings if f.status == FindingStatus.OPEN]

    # 1. Nothing known yet
    if (context.cycle_number == 0 or context.total_cycles == 0) and not open_findings:
        return PhaseSelection(CyclePhase.DISCOVERY)

    # 2. Always verify a change before moving on
    if context.last_phase in CHANGE_PHASES and context.last_cycle_status == CycleStatus.COMPLETED:
        return PhaseSelection(CyclePhase.TEST, context.last_finding_id)

    # 3. Failed verification goes back to the finding that caused it
    if (
        context.last_phase == CyclePhase.TEST
        and context.last_cycle_status == CycleStatus.FAILED
        and context.last_finding_id
    ):
        finding = next((f for f in context.findings if f.id == context.last_finding_id), None)
        if finding is not None and _is_actionable(finding):
            return PhaseSelection(CyclePhase.FIX, finding.id)

    # 4./5. Periodic housekeeping
    if _on_interval(context.cycle_number, review_interval):
        return PhaseSelection(CyclePhase.REVIEW)
    if _on_interval(context.cycle_number, discovery_interval):
        return PhaseSelection(CyclePhase.DISCOVERY)

    # 6. Highest priority first, oldest first within a priority
    for priority in PRIORITY_ORDER:
        for finding in context.findings:
            if finding.priority == priority and _is_actionable(finding):
                phase = CyclePhase.FIX if priority in FIX_PRIORITIES else CyclePhase.IMPROVE
                return PhaseSelection(phase, finding.id)

    # 7. Go look for more work
    return PhaseSelection(CyclePhase.DISCOVERY)
