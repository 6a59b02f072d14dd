"""
Tests for remediation planning and patch generation
"""

from anchorlens.models import (
    AnalysisConfig,
    Edit,
    ErrorKind,
    Finding,
    Location,
    PassKind,
    RemediationPlanItem,
    Severity,
    Span,
)
from anchorlens.services.correlation import compound, correlate
from anchorlens.services.matching_engine import run_pass
from anchorlens.services.model_builder import build_model
from anchorlens.services.patcher import apply_plan
from anchorlens.services.remediation import (
    COMPOUND_TIER,
    COST_TIER,
    PlanCandidate,
    RemediationPlanner,
    compose,
    priority_tier,
    resolve_conflicts,
)
from anchorlens.services.rule_database import get_rule_database


def make_finding(rule_id, severity, start, pass_kind=PassKind.SECURITY, derived=False):
    return Finding(
        rule_id=rule_id,
        pass_=pass_kind,
        severity=severity,
        title=rule_id,
        location=Location(instruction="ix", line=start),
        description="",
        derived=derived,
    )


def candidate(rule_id, severity, start, end, **kwargs):
    finding = make_finding(rule_id, severity, start, **kwargs)
    edit = Edit(span=Span(start=start, end=end), before="x" * (end - start), after="y")
    return PlanCandidate(finding=finding, edit=edit, description=rule_id, refs=[finding.id])


def plan_item(priority, start, end, before, after):
    return RemediationPlanItem(
        priority=priority,
        finding_refs=[f"rule:{priority}"],
        fix_description="",
        edit=Edit(span=Span(start=start, end=end), before=before, after=after),
    )


# ── conflict resolution ─────────────────────────────────────────────────────

def test_one_byte_overlap_drops_lower_priority_edit():
    a = candidate("rule-a", Severity.CRITICAL, 10, 20)
    b = candidate("rule-b", Severity.HIGH, 19, 25)
    c = candidate("rule-c", Severity.MEDIUM, 40, 45)

    items = resolve_conflicts([c, b, a])

    assert len(items) == 2
    assert [i.priority for i in items] == [1, 2]
    assert items[0].finding_refs == [a.finding.id]
    # b is dropped, not resolved: a's edit does not carry its text
    assert items[0].also_resolves == []
    assert b.finding.id in items[0].notes[0]
    assert items[1].finding_refs == [c.finding.id]


def test_contained_edit_is_folded_into_survivor():
    outer = candidate("rule-a", Severity.HIGH, 10, 30)
    outer.edit = Edit(span=Span(start=10, end=30), before="x" * 20, after="moved: " + "x" * 5)
    inner = candidate("rule-b", Severity.MEDIUM, 20, 25)

    items = resolve_conflicts([inner, outer])

    assert len(items) == 1
    assert items[0].edit.after == "moved: y"
    assert items[0].edit.before == "x" * 20
    assert items[0].also_resolves == [inner.finding.id]


def test_compose_declines_when_text_is_not_carried():
    winner = Edit(span=Span(start=0, end=10), before="let a = 1;", after="let a = 2;")

    assert compose(winner, Edit(span=Span(start=8, end=9), before="1", after="3")) is None
    assert compose(winner, Edit(span=Span(start=5, end=5), before="", after="mut ")) is None
    assert compose(winner, Edit(span=Span(start=8, end=12), before="1; x", after="")) is None


def test_adjacent_edits_do_not_conflict():
    items = resolve_conflicts([
        candidate("rule-a", Severity.HIGH, 10, 20),
        candidate("rule-b", Severity.HIGH, 20, 25),
    ])
    assert len(items) == 2


def test_insertions_at_the_same_offset_conflict():
    items = resolve_conflicts([
        candidate("rule-a", Severity.HIGH, 10, 10),
        candidate("rule-b", Severity.MEDIUM, 10, 10),
    ])
    assert [i.finding_refs[0].split(":")[0] for i in items] == ["rule-a"]


def test_priority_tiers():
    assert priority_tier(make_finding("c", Severity.MEDIUM, 1, derived=True)) == COMPOUND_TIER
    assert priority_tier(make_finding("x", Severity.CRITICAL, 1)) == 1
    assert priority_tier(make_finding("x", Severity.MEDIUM, 1, pass_kind=PassKind.COST)) == COST_TIER
    assert priority_tier(make_finding("x", Severity.INFO, 1, pass_kind=PassKind.CONVENTION)) > COST_TIER


def test_ordering_follows_tiers_then_pass_then_position():
    items = resolve_conflicts([
        candidate("info-convention", Severity.INFO, 0, 1, pass_kind=PassKind.CONVENTION),
        candidate("cost", Severity.INFO, 5, 6, pass_kind=PassKind.COST),
        candidate("high-late", Severity.HIGH, 30, 31),
        candidate("high-early", Severity.HIGH, 20, 21),
        candidate("compound", Severity.MEDIUM, 40, 41, derived=True),
        candidate("high-convention", Severity.HIGH, 10, 11, pass_kind=PassKind.CONVENTION),
    ])

    order = [i.finding_refs[0].split(":")[0] for i in items]
    assert order == ["compound", "high-early", "high-late", "high-convention", "cost", "info-convention"]


# ── planner ─────────────────────────────────────────────────────────────────

def correlated(source, passes=(PassKind.SECURITY, PassKind.CONVENTION, PassKind.COST)):
    model = build_model(source)
    config = AnalysisConfig()
    findings = []
    for pass_kind in passes:
        findings.extend(run_pass(model, pass_kind, config).findings)
    return model, correlate(findings, model, config)


def test_compound_uses_primary_source_fix(vault_unsigned):
    model, result = correlated(vault_unsigned)

    plan = RemediationPlanner().plan(model, result.findings, result.compound_findings)

    assert plan.errors == []
    assert len(plan.items) == 2
    first, second = plan.items
    risk = result.compound_findings[0]
    signer = next(f for f in result.findings if f.rule_id == "missing-signer-check")
    assert first.finding_refs == [risk.id, signer.id]
    assert (first.edit.before, first.edit.after) == ("AccountInfo<'info>", "Signer<'info>")
    assert second.edit.after == "emit!(WithdrawEvent {});\n        "


def test_failing_fix_template_is_isolated(vault_unsigned, monkeypatch):
    model, result = correlated(vault_unsigned)
    detector = get_rule_database().get("missing-signer-check").detector

    def boom(model, finding):
        raise RuntimeError("template exploded")

    monkeypatch.setattr(detector, "fix", boom)
    plan = RemediationPlanner().plan(model, result.findings, result.compound_findings)

    assert [e.kind for e in plan.errors] == [ErrorKind.RULE_EVALUATION_ERROR]
    assert plan.errors[0].rule_id == "missing-signer-check"
    # the event fix still lands
    assert [i.edit.after for i in plan.items] == ["emit!(WithdrawEvent {});\n        "]


def test_compounds_sharing_a_primary_share_one_item(staking_raw_math):
    model, result = correlated(staking_raw_math, passes=(PassKind.SECURITY,))
    primary = result.findings[0]
    first = compound("overflow-a", Severity.HIGH, "First", [primary], "", "")
    second = compound("overflow-b", Severity.HIGH, "Second", [primary], "", "")

    plan = RemediationPlanner().plan(model, result.findings, [first, second])

    assert len(plan.items) == 1
    assert plan.items[0].finding_refs == [first.id, second.id, primary.id]


def test_arithmetic_fix_rides_along_with_cpi_reorder(escrow_math_after_cpi):
    model, result = correlated(escrow_math_after_cpi, passes=(PassKind.SECURITY,))
    by_rule = {f.rule_id: f for f in result.findings}

    plan = RemediationPlanner().plan(model, result.findings, result.compound_findings)

    reorder = plan.items[0]
    assert reorder.finding_refs == [by_rule["cpi-before-state-update"].id]
    assert reorder.also_resolves == [by_rule["unchecked-arithmetic"].id]
    assert reorder.edit.after.startswith(
        "ctx.accounts.state.total_withdrawn = ctx.accounts.state.total_withdrawn"
        ".checked_add(amount).ok_or(ErrorCode::MathOverflow)?;"
    )

    patched = apply_plan(model.source, plan.items)
    assert patched.errors == []
    _, again = correlated(patched.code)
    assert again.findings == []


# ── patcher ─────────────────────────────────────────────────────────────────

def test_apply_plan_uses_original_offsets():
    source = "let a = 1; let b = 2;"
    result = apply_plan(source, [
        plan_item(1, 19, 20, "2", "20"),
        plan_item(2, 8, 9, "1", "100"),
        plan_item(3, 0, 0, "", "// patched\n"),
    ])

    assert result.code == "// patched\nlet a = 100; let b = 20;"
    assert result.errors == []
    assert len(result.applied) == 3


def test_drifted_edit_is_skipped():
    source = "let a = 1; let b = 2;"
    result = apply_plan(source, [
        plan_item(1, 8, 9, "7", "100"),
        plan_item(2, 19, 20, "2", "20"),
    ])

    assert result.code == "let a = 1; let b = 20;"
    assert [e.kind for e in result.errors] == [ErrorKind.MODEL_DRIFT_ERROR]
    assert result.errors[0].location["finding_refs"] == ["rule:1"]


def test_out_of_range_edit_is_skipped():
    source = "let a = 1;"
    result = apply_plan(source, [plan_item(1, 5, 50, "a = 1;", "")])

    assert result.code == source
    assert result.errors[0].kind == ErrorKind.MODEL_DRIFT_ERROR


def test_patched_source_resolves_planned_findings(profile_pda):
    model, result = correlated(profile_pda)
    plan = RemediationPlanner().plan(model, result.findings, result.compound_findings)

    patched = apply_plan(model.source, plan.items)

    assert patched.errors == []
    assert "bump = profile.bump, constraint = name.len() <= 32)]" in patched.code
    _, again = correlated(patched.code)
    assert again.findings == []
