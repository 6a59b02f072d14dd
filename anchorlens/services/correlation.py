"""
Cross-Pass Correlation Engine

Combines the findings of the security, convention and cost passes. Each
correlation rule looks at the full pre-correlation finding set and may emit
precedence resolutions (keep / drop / escalate a finding) and compound
findings that name the findings they were derived from.

Correlation rules (declaration order, all evaluated, no short-circuit):
  1. security-over-cost      add-constraint vs remove-constraint on the same
                             instruction + account drops the cost finding
  2. event-escalation        security finding on a fund-moving instruction
                             plus an observability finding there escalates
                             the latter one level (capped at high)
  3. type-safety-closure     type-safety finding while some account is
                             closable: stale-data reuse (high)
  4. overflow-budget         unchecked arithmetic in an instruction estimated
                             above 70% of the compute budget (high)
  5. reinit-observability    reinitialisation with no event emission (medium)

Idempotent: derived findings in the input are ignored and escalated findings
are evaluated at their pre-escalation severity, so feeding the output back
in yields the same findings and compound findings.

When two rules give different directives for one finding, the earlier rule
wins, a CorrelationConflictUnresolved warning is recorded and the later
rule's compound findings that reference that finding are suppressed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from anchorlens.models import (
    AnalysisConfig,
    Directive,
    EngineError,
    Finding,
    FixDirection,
    Location,
    PassKind,
    PrecedenceResolution,
    ProgramModel,
    SEVERITY_LADDER,
    Severity,
    severity_rank,
)
from anchorlens.services.cost_model import estimate_costs
from anchorlens.services.detectors import is_fund_moving
from anchorlens.utils.errors import CorrelationConflictUnresolved

logger = logging.getLogger("anchorlens.correlation")

BUDGET_PRESSURE = 0.7
ESCALATION_CAP = Severity.HIGH


@dataclass
class RuleOutcome:
    resolutions: List[PrecedenceResolution] = field(default_factory=list)
    compounds: List[Finding] = field(default_factory=list)


@dataclass
class CorrelationResult:
    findings: List[Finding] = field(default_factory=list)
    compound_findings: List[Finding] = field(default_factory=list)
    resolutions: List[PrecedenceResolution] = field(default_factory=list)
    warnings: List[EngineError] = field(default_factory=list)


def escalate(severity: Severity) -> Severity:
    """One level up the ladder, never above the escalation cap."""
    rank = min(severity_rank(severity) + 1, severity_rank(ESCALATION_CAP))
    return SEVERITY_LADDER[max(rank, severity_rank(severity))]


def compound(
    rule_id: str,
    severity: Severity,
    title: str,
    sources: List[Finding],
    description: str,
    recommendation: str,
) -> Finding:
    primary = sources[0]
    return Finding(
        rule_id=rule_id,
        pass_=PassKind.SECURITY,
        severity=severity,
        title=title,
        location=Location(
            instruction=primary.location.instruction,
            line=primary.location.line,
            account=primary.location.account,
            span=primary.location.span,
        ),
        description=description,
        recommendation=recommendation,
        derived=True,
        source_findings=[f.id for f in sources],
        tags=["compound"],
    )


class CorrelationRule:
    """Base class for correlation rules"""

    name: str = "base"

    def apply(self, findings: List[Finding], model: ProgramModel, config: AnalysisConfig) -> RuleOutcome:
        raise NotImplementedError


class SecurityOverCostRule(CorrelationRule):
    name = "security-over-cost"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        adds = {
            (f.location.instruction, f.location.account): f
            for f in findings
            if f.pass_ == PassKind.SECURITY and f.direction == FixDirection.ADD_CONSTRAINT and f.location.account
        }
        for f in findings:
            if f.pass_ != PassKind.COST or f.direction != FixDirection.REMOVE_CONSTRAINT:
                continue
            winner = adds.get((f.location.instruction, f.location.account))
            if winner is None:
                continue
            outcome.resolutions.append(PrecedenceResolution(
                finding_id=f.id,
                directive=Directive.DROP,
                rule=self.name,
                reason=f"'{winner.rule_id}' adds a constraint to {f.location.account} that '{f.rule_id}' would remove",
            ))
        return outcome


class EventEscalationRule(CorrelationRule):
    name = "event-escalation"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        for obs in findings:
            if obs.pass_ != PassKind.CONVENTION or "observability" not in obs.tags:
                continue
            instr = model.instruction(obs.location.instruction or "")
            if instr is None or not is_fund_moving(model, instr):
                continue
            security = [
                f for f in findings
                if f.pass_ == PassKind.SECURITY and f.location.instruction == instr.name
            ]
            if not security:
                continue
            security.sort(key=lambda f: (-severity_rank(f.severity), f.id))

            raised = escalate(obs.severity)
            if raised != obs.severity:
                outcome.resolutions.append(PrecedenceResolution(
                    finding_id=obs.id,
                    directive=Directive.ESCALATE,
                    rule=self.name,
                    reason=f"security findings on fund-moving '{instr.name}' with no event trail",
                    severity=raised,
                ))
            outcome.compounds.append(compound(
                "unmonitored-fund-risk",
                raised,
                "Exploitable fund movement without an audit trail",
                security + [obs],
                f"'{instr.name}' moves funds, has {len(security)} security finding(s) "
                f"and emits no event, so exploitation would go unobserved.",
                "Fix the security findings first, then emit an event for every fund movement.",
            ))
        return outcome


class TypeSafetyClosureRule(CorrelationRule):
    name = "type-safety-closure"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        closable = sorted(a.qualified_name for a in model.accounts.values() if a.constraints.close)
        if not closable:
            return outcome
        for f in findings:
            if "type-safety" not in f.tags:
                continue
            outcome.compounds.append(compound(
                "stale-data-reuse",
                Severity.HIGH,
                "Closed account data can be revived",
                [f],
                f"Unchecked account type combined with closable account(s) {', '.join(closable)}: "
                f"a closed account can be passed back in and its stale data reused.",
                "Load accounts through Account<'info, T> so the discriminator is checked.",
            ))
        return outcome


class OverflowBudgetRule(CorrelationRule):
    name = "overflow-budget"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        arithmetic = [f for f in findings if f.rule_id == "unchecked-arithmetic"]
        if not arithmetic:
            return outcome
        costs = estimate_costs(model)
        limit = config.compute_budget * BUDGET_PRESSURE
        by_instruction: Dict[str, List[Finding]] = {}
        for f in arithmetic:
            by_instruction.setdefault(f.location.instruction or "", []).append(f)
        for name, group in by_instruction.items():
            cost = costs.get(name)
            if cost is None or cost <= limit:
                continue
            outcome.compounds.append(compound(
                "overflow-under-compute-pressure",
                Severity.HIGH,
                "Unchecked arithmetic in a compute-heavy instruction",
                group,
                f"'{name}' is estimated at {cost} CU (over {int(BUDGET_PRESSURE * 100)}% of "
                f"{config.compute_budget}) and contains unchecked arithmetic.",
                "Use checked arithmetic and reduce the instruction's compute usage.",
            ))
        return outcome


class ReinitObservabilityRule(CorrelationRule):
    name = "reinit-observability"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        for f in findings:
            if "reinit" not in f.tags:
                continue
            instr = model.instruction(f.location.instruction or "")
            if instr is None or instr.emits_event:
                continue
            outcome.compounds.append(compound(
                "silent-reinitialization",
                Severity.MEDIUM,
                "Silent reinitialisation",
                [f],
                f"'{instr.name}' can reinitialise an account and emits no event, so a state reset is invisible.",
                "Prevent reinitialisation and emit an event when accounts are initialised.",
            ))
        return outcome


DEFAULT_RULES: List[CorrelationRule] = [
    SecurityOverCostRule(),
    EventEscalationRule(),
    TypeSafetyClosureRule(),
    OverflowBudgetRule(),
    ReinitObservabilityRule(),
]


class CorrelationEngine:
    def __init__(self, rules: Optional[List[CorrelationRule]] = None):
        self.rules = rules if rules is not None else DEFAULT_RULES

    def correlate(
        self,
        findings: List[Finding],
        model: ProgramModel,
        config: AnalysisConfig,
    ) -> CorrelationResult:
        # Derived findings never feed matching; escalations are recomputed from base severity
        base = [
            f.model_copy(update={"severity": f.base_severity, "escalated_from": None}) if f.escalated_from else f
            for f in findings
            if not f.derived
        ]

        result = CorrelationResult()
        accepted: Dict[str, PrecedenceResolution] = {}
        compounds: Dict[str, Finding] = {}

        for rule in self.rules:
            outcome = rule.apply(base, model, config)
            suppressed = set()
            for res in outcome.resolutions:
                prior = accepted.get(res.finding_id)
                if prior is None:
                    accepted[res.finding_id] = res
                    result.resolutions.append(res)
                elif prior.directive != res.directive:
                    suppressed.add(res.finding_id)
                    warning = CorrelationConflictUnresolved(
                        f"'{prior.rule}' says {prior.directive.value} and '{res.rule}' says "
                        f"{res.directive.value} for {res.finding_id}; keeping '{prior.rule}'",
                        rule_id=res.rule,
                        location={"finding": res.finding_id},
                    )
                    logger.warning(warning.message)
                    result.warnings.append(warning.to_detail())
            for c in outcome.compounds:
                if suppressed.intersection(c.source_findings) or c.id in compounds:
                    continue
                compounds[c.id] = c

        effective = []
        for f in base:
            res = accepted.get(f.id)
            if res is None or res.directive == Directive.KEEP:
                effective.append(f)
            elif res.directive == Directive.ESCALATE and res.severity is not None:
                effective.append(f.model_copy(update={"severity": res.severity, "escalated_from": f.severity}))
        result.findings = effective
        result.compound_findings = list(compounds.values())

        logger.info(
            f"Correlation: {len(findings)} in, {len(effective)} effective, "
            f"{len(result.compound_findings)} compound, {len(result.warnings)} conflicts"
        )
        return result


def correlate(findings: List[Finding], model: ProgramModel, config: AnalysisConfig) -> CorrelationResult:
    return CorrelationEngine().correlate(findings, model, config)
