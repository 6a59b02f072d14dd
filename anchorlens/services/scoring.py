from typing import Dict, Iterable

from anchorlens.models import Finding, Severity

# ── Penalties ────────────────────────────────────────────────────────────────
PENALTIES: dict = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.INFO: 3,
}
MAX_SCORE = 100

# ── Risk bands (lowest score that still qualifies) ───────────────────────────
RISK_LEVELS = [
    (90, "SAFE"),
    (75, "LOW"),
    (60, "MEDIUM"),
    (40, "HIGH"),
]


def calculate_score(findings: Iterable[Finding]) -> int:
    """
    Start at 100, subtract the penalty of every finding, clamp at 0.

    Monotonic: adding a finding never raises the score.
    """
    total_deductions = sum(PENALTIES[f.severity] for f in findings)
    return max(0, MAX_SCORE - total_deductions)


def risk_level(score: int) -> str:
    for floor, level in RISK_LEVELS:
        if score >= floor:
            return level
    return "CRITICAL"


def severity_counts(findings: Iterable[Finding]) -> Dict[Severity, int]:
    counts = {severity: 0 for severity in PENALTIES}
    for f in findings:
        counts[f.severity] += 1
    return counts
