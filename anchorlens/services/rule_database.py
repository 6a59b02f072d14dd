"""
Rule Database

Immutable rule table, loaded once per process. Metadata comes from
knowledge/rules.yaml; the predicate and fix template of each rule come from
the detector registered under the same id.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from anchorlens.config import get_settings
from anchorlens.models import (
    AnalysisConfig,
    Edit,
    Finding,
    FixDirection,
    PassKind,
    ProgramModel,
    Severity,
)
from anchorlens.services.detectors import DETECTOR_REGISTRY, Hit, PatternDetector

logger = logging.getLogger("anchorlens.rule_database")

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "knowledge" / "rules.yaml"


class RuleDatabaseError(Exception):
    """Rule metadata and detector registry disagree."""


@dataclass(frozen=True)
class Rule:
    id: str
    pass_kind: PassKind
    severity: Severity
    title: str
    description: str
    recommendation: str
    direction: FixDirection
    detector: PatternDetector = field(repr=False, compare=False)
    tags: tuple = ()

    @property
    def fixable(self) -> bool:
        return self.detector.fixable

    def to_finding(self, hit: Hit) -> Finding:
        description = f"{self.description} {hit.detail}".strip() if hit.detail else self.description
        return Finding(
            rule_id=self.id,
            pass_=self.pass_kind,
            severity=self.severity,
            title=self.title,
            location=hit.location,
            description=description,
            recommendation=self.recommendation,
            fix_ref=self.id if self.fixable else None,
            direction=self.direction,
            tags=list(self.tags),
        )

    def evaluate(self, model: ProgramModel, config: AnalysisConfig) -> List[Finding]:
        return [self.to_finding(hit) for hit in self.detector.detect(model, config)]

    def fix(self, model: ProgramModel, finding: Finding) -> Optional[Edit]:
        return self.detector.fix(model, finding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pass": self.pass_kind.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "recommendation": self.recommendation,
            "direction": self.direction.value,
            "tags": list(self.tags),
            "fixable": self.fixable,
        }


class RuleDatabase:
    """Read-only rule table keyed by pattern id, in declaration order."""

    def __init__(self, rules_path: Optional[Path] = None):
        self.rules_path = Path(rules_path) if rules_path else DEFAULT_RULES_PATH
        self.rules: Dict[str, Rule] = {}
        self._load_rules()

    def _load_rules(self) -> None:
        with open(self.rules_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        detectors = {d.id: d for d in DETECTOR_REGISTRY}
        for pass_kind in PassKind:
            for entry in data.get(pass_kind.value, []):
                rule_id = entry["id"]
                detector = detectors.get(rule_id)
                if detector is None:
                    raise RuleDatabaseError(f"No detector registered for rule '{rule_id}'")
                if detector.pass_kind != pass_kind:
                    raise RuleDatabaseError(
                        f"Rule '{rule_id}' declared under {pass_kind.value} but its detector runs in {detector.pass_kind.value}"
                    )
                self.rules[rule_id] = Rule(
                    id=rule_id,
                    pass_kind=pass_kind,
                    severity=Severity(entry["severity"]),
                    title=entry["title"],
                    description=entry.get("description", "").strip(),
                    recommendation=entry.get("recommendation", "").strip(),
                    direction=FixDirection(entry.get("direction", "none")),
                    detector=detector,
                    tags=tuple(entry.get("tags", [])),
                )

        missing = set(detectors) - set(self.rules)
        if missing:
            raise RuleDatabaseError(f"Detectors without rule metadata: {sorted(missing)}")
        logger.info(f"Loaded {len(self.rules)} rules from {self.rules_path}")

    def get(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def for_pass(self, pass_kind: PassKind) -> List[Rule]:
        return [r for r in self.rules.values() if r.pass_kind == pass_kind]

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.rules.values()]


_database: Optional[RuleDatabase] = None


def get_rule_database() -> RuleDatabase:
    global _database
    if _database is None:
        _database = RuleDatabase(get_settings().rules_path)
    return _database
