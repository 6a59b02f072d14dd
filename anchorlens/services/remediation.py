"""
Remediation Planner

Turns effective and compound findings into an ordered, conflict-free list of
edits.

Ordering tiers: compound, critical, high, medium, cost pass, info. Ties break
on pass (security first), then span start, then rule id. A compound finding
is remediated through the fix of its primary (first) source finding. When
two candidate edits overlap, the lower-priority one is dropped. The survivor
absorbs it when the two compose, and lists it in `also_resolves` only then.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from anchorlens.models import (
    Edit,
    EngineError,
    Finding,
    PassKind,
    ProgramModel,
    RemediationPlanItem,
    Severity,
)
from anchorlens.services.rule_database import RuleDatabase, get_rule_database
from anchorlens.utils.errors import RuleEvaluationError

logger = logging.getLogger("anchorlens.remediation")

SEVERITY_TIERS = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.INFO: 5,
}
COMPOUND_TIER = 0
COST_TIER = 4
PASS_ORDER = {PassKind.SECURITY: 0, PassKind.CONVENTION: 1, PassKind.COST: 2}


@dataclass
class PlanCandidate:
    finding: Finding
    edit: Edit
    description: str
    refs: List[str] = field(default_factory=list)

    @property
    def tier(self) -> int:
        return priority_tier(self.finding)

    def sort_key(self) -> Tuple:
        return (
            self.tier,
            PASS_ORDER[self.finding.pass_],
            self.edit.span.start,
            self.finding.rule_id,
            self.finding.id,
        )


@dataclass
class RemediationPlan:
    items: List[RemediationPlanItem] = field(default_factory=list)
    errors: List[EngineError] = field(default_factory=list)


def priority_tier(finding: Finding) -> int:
    if finding.derived:
        return COMPOUND_TIER
    if finding.pass_ == PassKind.COST:
        return COST_TIER
    return SEVERITY_TIERS[finding.severity]


def compose(winner: Edit, dropped: Edit) -> Optional[Edit]:
    """
    Fold a dropped edit into the survivor when the survivor carries the dropped
    edit's original text through unchanged. None when the two cannot be combined.
    """
    inside = winner.span.start <= dropped.span.start and dropped.span.end <= winner.span.end
    if not inside or not dropped.before or winner.after.count(dropped.before) != 1:
        return None
    return Edit(span=winner.span, before=winner.before, after=winner.after.replace(dropped.before, dropped.after))


def resolve_conflicts(candidates: List[PlanCandidate]) -> List[RemediationPlanItem]:
    """
    Order candidates and drop every one whose edit overlaps a higher-priority
    survivor. A dropped edit that composes with the survivor is folded into it
    and listed in `also_resolves`; otherwise it is only noted.
    """
    kept: List[PlanCandidate] = []
    also: Dict[int, List[str]] = {}
    notes: Dict[int, List[str]] = {}

    for cand in sorted(candidates, key=PlanCandidate.sort_key):
        winner = next((k for k in kept if k.edit.span.overlaps(cand.edit.span)), None)
        if winner is None:
            kept.append(cand)
            continue
        idx = id(winner)
        composed = compose(winner.edit, cand.edit)
        if composed is not None:
            winner.edit = composed
            for ref in cand.refs:
                if ref not in winner.refs and ref not in also.setdefault(idx, []):
                    also[idx].append(ref)
            notes.setdefault(idx, []).append(f"Includes the fix for {cand.finding.id}.")
            logger.info(f"Plan conflict: {cand.finding.id} folded into {winner.finding.id}")
            continue
        notes.setdefault(idx, []).append(
            f"Dropped fix for {cand.finding.id}: its edit overlaps this one. Re-run analysis after applying."
        )
        logger.info(f"Plan conflict: {cand.finding.id} dropped in favour of {winner.finding.id}")

    return [
        RemediationPlanItem(
            priority=position,
            finding_refs=cand.refs,
            fix_description=cand.description,
            edit=cand.edit,
            also_resolves=also.get(id(cand), []),
            notes=notes.get(id(cand), []),
        )
        for position, cand in enumerate(kept, start=1)
    ]


class RemediationPlanner:
    def __init__(self, database: Optional[RuleDatabase] = None):
        self.database = database or get_rule_database()

    def _fix(self, model: ProgramModel, finding: Finding, errors: List[EngineError]) -> Optional[Edit]:
        rule = self.database.get(finding.fix_ref or "")
        if rule is None:
            return None
        try:
            return rule.fix(model, finding)
        except Exception as e:
            logger.warning(f"Fix template '{rule.id}' failed for {finding.id}: {e}")
            err = RuleEvaluationError(f"Fix template '{rule.id}' failed: {e}", rule_id=rule.id)
            errors.append(err.to_detail())
            return None

    def plan(self, model: ProgramModel, findings: List[Finding], compound_findings: List[Finding]) -> RemediationPlan:
        result = RemediationPlan()
        by_id = {f.id: f for f in findings}
        candidates: List[PlanCandidate] = []
        folded: Dict[str, PlanCandidate] = {}
        edits: Dict[str, Optional[Edit]] = {}

        def fix_once(finding: Finding) -> Optional[Edit]:
            # a compound and its primary share one template run
            if finding.id not in edits:
                edits[finding.id] = self._fix(model, finding, result.errors)
            return edits[finding.id]

        for c in compound_findings:
            primary = by_id.get(c.source_findings[0]) if c.source_findings else None
            if primary is None:
                continue
            if primary.id in folded:
                # same primary, same edit
                folded[primary.id].refs.insert(-1, c.id)
                continue
            edit = fix_once(primary)
            if edit is None:
                continue
            folded[primary.id] = PlanCandidate(
                finding=c,
                edit=edit,
                description=f"{c.title}: {primary.recommendation}",
                refs=[c.id, primary.id],
            )
            candidates.append(folded[primary.id])

        for f in findings:
            if f.id in folded or f.fix_ref is None:
                continue
            edit = fix_once(f)
            if edit is None:
                continue
            candidates.append(PlanCandidate(finding=f, edit=edit, description=f"{f.title}: {f.recommendation}", refs=[f.id]))

        result.items = resolve_conflicts(candidates)
        logger.info(f"Remediation plan: {len(result.items)} items from {len(candidates)} candidates")
        return result
