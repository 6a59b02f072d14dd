"""
Tests for cross-pass correlation
"""

from anchorlens.models import (
    AnalysisConfig,
    Directive,
    ErrorKind,
    Finding,
    FixDirection,
    Location,
    PassKind,
    PrecedenceResolution,
    Severity,
)
from anchorlens.services.correlation import (
    CorrelationEngine,
    CorrelationRule,
    RuleOutcome,
    compound,
    correlate,
    escalate,
)
from anchorlens.services.matching_engine import run_pass
from anchorlens.services.model_builder import build_model


def pass_findings(model, config, passes=(PassKind.SECURITY, PassKind.CONVENTION, PassKind.COST)):
    found = []
    for pass_kind in passes:
        found.extend(run_pass(model, pass_kind, config).findings)
    return found


def make_finding(rule_id, pass_kind, severity, direction=FixDirection.NONE, account=None, line=1, tags=None):
    return Finding(
        rule_id=rule_id,
        pass_=pass_kind,
        severity=severity,
        title=rule_id,
        location=Location(instruction="withdraw", line=line, account=account),
        description="",
        direction=direction,
        tags=tags or [],
    )


def test_escalate_is_capped():
    assert escalate(Severity.INFO) == Severity.MEDIUM
    assert escalate(Severity.MEDIUM) == Severity.HIGH
    assert escalate(Severity.HIGH) == Severity.HIGH
    assert escalate(Severity.CRITICAL) == Severity.CRITICAL


def test_security_constraint_beats_cost_removal(vault_unsigned):
    """A cost finding that would remove what a security finding adds is dropped"""
    model = build_model(vault_unsigned)
    security = make_finding("duplicate-mutable-accounts", PassKind.SECURITY, Severity.MEDIUM,
                            FixDirection.ADD_CONSTRAINT, account="Withdraw.vault")
    conflicting = make_finding("unnecessary-mut", PassKind.COST, Severity.INFO,
                               FixDirection.REMOVE_CONSTRAINT, account="Withdraw.vault", line=2)
    unrelated = make_finding("unnecessary-mut", PassKind.COST, Severity.INFO,
                             FixDirection.REMOVE_CONSTRAINT, account="Withdraw.authority", line=3)

    result = correlate([security, conflicting, unrelated], model, AnalysisConfig())

    assert result.findings == [security, unrelated]
    assert [(r.finding_id, r.directive, r.rule) for r in result.resolutions] == [
        (conflicting.id, Directive.DROP, "security-over-cost"),
    ]
    assert result.warnings == []


def test_event_escalation_on_fund_moving_instruction(vault_unsigned):
    model = build_model(vault_unsigned)
    config = AnalysisConfig()
    findings = pass_findings(model, config)

    result = correlate(findings, model, config)

    by_rule = {f.rule_id: f for f in result.findings}
    event = by_rule["missing-event-emission"]
    signer = by_rule["missing-signer-check"]
    assert event.severity == Severity.HIGH
    assert event.escalated_from == Severity.MEDIUM
    assert signer.severity == Severity.CRITICAL

    assert [r.directive for r in result.resolutions] == [Directive.ESCALATE]
    assert result.resolutions[0].finding_id == event.id

    assert len(result.compound_findings) == 1
    risk = result.compound_findings[0]
    assert risk.rule_id == "unmonitored-fund-risk"
    assert risk.severity == Severity.HIGH
    assert risk.derived
    assert risk.source_findings == [signer.id, event.id]


def test_no_escalation_without_security_findings(vault_unsigned):
    signed = vault_unsigned.replace("pub authority: AccountInfo<'info>", "pub authority: Signer<'info>")
    model = build_model(signed)
    config = AnalysisConfig()

    result = correlate(pass_findings(model, config), model, config)

    assert [(f.rule_id, f.severity) for f in result.findings] == [("missing-event-emission", Severity.MEDIUM)]
    assert result.compound_findings == []
    assert result.resolutions == []


def test_correlation_is_idempotent(vault_unsigned, staking_raw_math):
    config = AnalysisConfig(compute_budget=1_000)
    for source in (vault_unsigned, staking_raw_math):
        model = build_model(source)
        first = correlate(pass_findings(model, config), model, config)
        second = correlate(first.findings + first.compound_findings, model, config)

        assert second.findings == first.findings
        assert second.compound_findings == first.compound_findings


def test_type_safety_with_closable_account(raw_config):
    model = build_model(raw_config)
    config = AnalysisConfig()

    result = correlate(pass_findings(model, config, [PassKind.SECURITY]), model, config)

    assert [c.rule_id for c in result.compound_findings] == ["stale-data-reuse"]
    stale = result.compound_findings[0]
    assert stale.severity == Severity.HIGH
    assert stale.source_findings == [result.findings[0].id]
    assert "CloseConfig.config" in stale.description


def test_overflow_under_compute_pressure(staking_raw_math):
    model = build_model(staking_raw_math)
    tight = AnalysisConfig(compute_budget=1_000)

    result = correlate(pass_findings(model, tight, [PassKind.SECURITY]), model, tight)
    assert [c.rule_id for c in result.compound_findings] == ["overflow-under-compute-pressure"]
    assert result.compound_findings[0].severity == Severity.HIGH

    roomy = AnalysisConfig()
    result = correlate(pass_findings(model, roomy, [PassKind.SECURITY]), model, roomy)
    assert result.compound_findings == []


def test_silent_reinitialization(counter_init):
    model = build_model(counter_init)
    config = AnalysisConfig()

    result = correlate(pass_findings(model, config, [PassKind.SECURITY]), model, config)
    assert [(c.rule_id, c.severity) for c in result.compound_findings] == [
        ("silent-reinitialization", Severity.MEDIUM),
    ]

    observed = counter_init.replace("        Ok(())", "        emit!(CounterInitialized {});\n        Ok(())")
    model = build_model(observed)
    result = correlate(pass_findings(model, config, [PassKind.SECURITY]), model, config)
    assert result.compound_findings == []


# ── conflicting rules ───────────────────────────────────────────────────────

class DropAll(CorrelationRule):
    name = "drop-all"

    def apply(self, findings, model, config):
        return RuleOutcome(resolutions=[
            PrecedenceResolution(finding_id=f.id, directive=Directive.DROP, rule=self.name, reason="test")
            for f in findings
        ])


class EscalateAll(CorrelationRule):
    name = "escalate-all"

    def apply(self, findings, model, config):
        outcome = RuleOutcome()
        for f in findings:
            outcome.resolutions.append(PrecedenceResolution(
                finding_id=f.id, directive=Directive.ESCALATE, rule=self.name, reason="test", severity=Severity.HIGH,
            ))
            outcome.compounds.append(compound("escalated", Severity.HIGH, "Escalated", [f], "", ""))
        return outcome


def test_conflicting_directives_keep_first_rule(vault_unsigned):
    model = build_model(vault_unsigned)
    finding = make_finding("missing-event-emission", PassKind.CONVENTION, Severity.MEDIUM)

    result = CorrelationEngine([DropAll(), EscalateAll()]).correlate([finding], model, AnalysisConfig())

    assert result.findings == []
    assert [r.rule for r in result.resolutions] == ["drop-all"]
    assert result.compound_findings == []
    assert len(result.warnings) == 1
    assert result.warnings[0].kind == ErrorKind.CORRELATION_CONFLICT
    assert result.warnings[0].rule_id == "escalate-all"


def test_agreeing_directives_are_not_conflicts(vault_unsigned):
    model = build_model(vault_unsigned)
    finding = make_finding("missing-event-emission", PassKind.CONVENTION, Severity.MEDIUM)

    result = CorrelationEngine([DropAll(), DropAll()]).correlate([finding], model, AnalysisConfig())

    assert result.findings == []
    assert result.warnings == []
