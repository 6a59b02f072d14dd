"""
Pattern Matching Engine

Evaluates the rules of one pass against a ProgramModel. A rule whose
predicate raises is isolated: its findings are dropped, a RuleEvaluationError
is recorded against its id, and the remaining rules still run.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from anchorlens.models import AnalysisConfig, EngineError, Finding, PassKind, ProgramModel
from anchorlens.services.rule_database import Rule, get_rule_database
from anchorlens.utils.errors import RuleEvaluationError

logger = logging.getLogger("anchorlens.matching_engine")


@dataclass
class PassResult:
    pass_kind: PassKind
    findings: List[Finding] = field(default_factory=list)
    errors: List[EngineError] = field(default_factory=list)


def finding_sort_key(finding: Finding):
    span = finding.location.span
    return (span.start if span else -1, finding.rule_id, finding.id)


def run_pass(
    model: ProgramModel,
    pass_kind: PassKind,
    config: AnalysisConfig,
    rules: Optional[List[Rule]] = None,
) -> PassResult:
    if rules is None:
        rules = get_rule_database().for_pass(pass_kind)

    result = PassResult(pass_kind=pass_kind)
    for rule in rules:
        try:
            found = rule.evaluate(model, config)
        except Exception as e:
            logger.warning(f"[{pass_kind.value}] rule '{rule.id}' failed: {e}")
            err = RuleEvaluationError(f"Rule '{rule.id}' failed to evaluate: {e}", rule_id=rule.id)
            result.errors.append(err.to_detail())
            continue
        result.findings.extend(found)

    # Rule order never affects the output
    result.findings.sort(key=finding_sort_key)
    logger.info(f"[{pass_kind.value}] {len(result.findings)} findings from {len(rules)} rules")
    return result
