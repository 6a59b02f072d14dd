import asyncio
import logging
from typing import Any, List, Optional

from anchorlens.models import (
    AnalysisConfig,
    AnalysisReport,
    EngineError,
    Finding,
    RemediationPlanItem,
    ReportCompoundFinding,
    ReportFinding,
    ReportLocation,
    ReportPlanItem,
    Severity,
    severity_rank,
)
from anchorlens.services.correlation import CorrelationEngine
from anchorlens.services.matching_engine import PassResult, run_pass
from anchorlens.services.model_builder import build_model
from anchorlens.services.patcher import apply_plan
from anchorlens.services.remediation import RemediationPlanner
from anchorlens.services.rule_database import get_rule_database
from anchorlens.services.scoring import calculate_score, risk_level, severity_counts

logger = logging.getLogger("anchorlens.pipeline_engine")


def _at_or_above(findings: List[Finding], threshold: Severity) -> List[Finding]:
    floor = severity_rank(threshold)
    return [f for f in findings if severity_rank(f.severity) >= floor]


def _report_finding(f: Finding) -> ReportFinding:
    return ReportFinding(
        id=f.id,
        severity=f.severity,
        pattern_id=f.rule_id,
        category=f.pass_,
        title=f.title,
        location=ReportLocation(instruction=f.location.instruction, line=f.location.line),
        description=f.description,
        recommendation=f.recommendation,
    )


def _report_compound(f: Finding) -> ReportCompoundFinding:
    return ReportCompoundFinding(
        id=f.id,
        severity=f.severity,
        title=f.title,
        source_findings=f.source_findings,
        description=f.description,
        recommendation=f.recommendation,
    )


def _report_plan_item(item: RemediationPlanItem) -> ReportPlanItem:
    return ReportPlanItem(
        priority=item.priority,
        finding_refs=item.finding_refs,
        fix_description=item.fix_description,
        before=item.edit.before,
        after=item.edit.after,
        also_resolves=item.also_resolves,
        notes=item.notes,
    )


class AnalysisPipelineEngine:
    """
    AnchorLens analysis pipeline.
    Model build -> parallel passes -> correlation -> scoring -> remediation plan -> patch.
    """

    def __init__(self):
        self.rules = get_rule_database()
        self.correlation = CorrelationEngine()
        self.planner = RemediationPlanner(self.rules)

    async def analyze(
        self,
        code: str,
        config: Optional[AnalysisConfig] = None,
        on_update: Optional[Any] = None,
    ) -> AnalysisReport:
        """
        Run the full analysis. Raises ParseError when the source cannot be
        modeled; every other failure is isolated and listed in report.errors.
        """
        config = config or AnalysisConfig()

        async def _notify(stage: str, message: str):
            if on_update:
                await on_update({"type": "update", "stage": stage, "status": "processing", "message": message})

        # Stage 1: Program model
        await _notify("model", "Building program model...")
        model = build_model(code)
        await _notify("model_complete", f"{len(model.instructions)} instructions, {len(model.accounts)} accounts")

        # Stage 2: Passes, independent over the frozen model
        passes = config.passes()
        await _notify("passes", f"Running passes: {[p.value for p in passes]}")
        results: List[PassResult] = await asyncio.gather(*(
            asyncio.to_thread(run_pass, model, pass_kind, config, self.rules.for_pass(pass_kind))
            for pass_kind in passes
        ))
        errors: List[EngineError] = []
        merged: List[Finding] = []
        for result in results:  # gather keeps pass order
            merged.extend(result.findings)
            errors.extend(result.errors)

        # Stage 3: Correlation
        await _notify("correlation", f"Correlating {len(merged)} findings...")
        correlated = self.correlation.correlate(merged, model, config)
        errors.extend(correlated.warnings)

        findings = _at_or_above(correlated.findings, config.severity_threshold)
        compounds = _at_or_above(correlated.compound_findings, config.severity_threshold)

        # Stage 4: Score
        score = calculate_score(findings + compounds)
        counts = severity_counts(findings + compounds)

        # Stage 5: Remediation
        await _notify("remediation", "Planning remediation...")
        plan = self.planner.plan(model, findings, compounds)
        errors.extend(plan.errors)

        optimized_code = None
        if config.generate_patch:
            patch = apply_plan(model.source, plan.items)
            errors.extend(patch.errors)
            optimized_code = patch.code

        logger.info(
            f"Analysis of '{model.name}': score={score}, {len(findings)} findings, "
            f"{len(compounds)} compound, {len(plan.items)} plan items, {len(errors)} errors"
        )
        await _notify("complete", f"Score {score}")

        return AnalysisReport(
            score=score,
            risk_level=risk_level(score),
            findings=[_report_finding(f) for f in findings],
            compound_findings=[_report_compound(f) for f in compounds],
            remediation_plan=[_report_plan_item(i) for i in plan.items],
            optimized_code=optimized_code,
            precedence_resolutions=correlated.resolutions,
            errors=errors,
            total_critical=counts[Severity.CRITICAL],
            total_high=counts[Severity.HIGH],
            total_medium=counts[Severity.MEDIUM],
            total_info=counts[Severity.INFO],
        )

    def analyze_sync(self, code: str, config: Optional[AnalysisConfig] = None) -> AnalysisReport:
        return asyncio.run(self.analyze(code, config))


def get_analysis_engine() -> AnalysisPipelineEngine:
    return AnalysisPipelineEngine()
