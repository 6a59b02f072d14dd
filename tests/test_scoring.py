import pytest

from anchorlens.models import Finding, Location, PassKind, Severity
from anchorlens.services.scoring import PENALTIES, calculate_score, risk_level, severity_counts


def make_finding(severity, n=0):
    return Finding(
        rule_id="test-rule",
        pass_=PassKind.SECURITY,
        severity=severity,
        title="Test",
        location=Location(instruction="ix", line=n),
        description="",
    )


def test_penalty_table():
    assert PENALTIES == {
        Severity.CRITICAL: 25,
        Severity.HIGH: 15,
        Severity.MEDIUM: 8,
        Severity.INFO: 3,
    }


def test_clean_program_scores_100():
    assert calculate_score([]) == 100


@pytest.mark.parametrize("severities,expected", [
    ([Severity.CRITICAL], 75),
    ([Severity.HIGH], 85),
    ([Severity.CRITICAL, Severity.HIGH, Severity.HIGH], 45),
    ([Severity.MEDIUM, Severity.INFO, Severity.INFO], 86),
])
def test_score_subtracts_penalties(severities, expected):
    findings = [make_finding(s, i) for i, s in enumerate(severities)]
    assert calculate_score(findings) == expected


def test_score_clamps_at_zero():
    findings = [make_finding(Severity.CRITICAL, i) for i in range(5)]
    assert calculate_score(findings) == 0


def test_adding_a_finding_never_raises_the_score():
    findings = []
    previous = calculate_score(findings)
    for i, severity in enumerate([Severity.INFO, Severity.CRITICAL, Severity.MEDIUM, Severity.HIGH] * 3):
        findings.append(make_finding(severity, i))
        score = calculate_score(findings)
        assert score <= previous
        previous = score


@pytest.mark.parametrize("score,level", [
    (100, "SAFE"),
    (90, "SAFE"),
    (89, "LOW"),
    (75, "LOW"),
    (60, "MEDIUM"),
    (45, "HIGH"),
    (39, "CRITICAL"),
    (0, "CRITICAL"),
])
def test_risk_levels(score, level):
    assert risk_level(score) == level


def test_severity_counts_cover_every_level():
    counts = severity_counts([make_finding(Severity.HIGH), make_finding(Severity.HIGH, 1)])
    assert counts == {Severity.CRITICAL: 0, Severity.HIGH: 2, Severity.MEDIUM: 0, Severity.INFO: 0}
