"""
Pattern Detectors

Each detector implements the predicate of one rule over the ProgramModel,
plus the fix template that remediates it. Detection works on the structural
model only (accounts, constraints, body operations, CPI edges, PDA specs,
arithmetic sites), never on raw source text.

Rule metadata (severity, title, wording, direction, tags) lives in
knowledge/rules.yaml; services/rule_database.py pairs it with the detector
registered here under the same id.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from anchorlens.models import (
    AccountDecl,
    AccountKind,
    AnalysisConfig,
    BumpSource,
    CpiCall,
    Edit,
    Finding,
    InstructionDecl,
    Location,
    OpKind,
    PassKind,
    PdaSpec,
    ProgramModel,
    SeedKind,
    Span,
)
from anchorlens.services.cost_model import estimate_costs
from anchorlens.services.model_builder import evaluate_space
from anchorlens.utils.anchor_ast import (
    find_assignment,
    find_binary_operators,
    mask_source,
    match_delim,
    split_top_level,
)

OVERFLOW_ERROR = "ErrorCode::MathOverflow"
SEED_LIMIT = 32
DEFAULT_MAX_LEN = 32

AUTHORITY_RE = re.compile(r"authority|owner|admin|signer|user|payer|creator|manager|operator", re.I)
FUND_MOVING_RE = re.compile(
    r"transfer|withdraw|deposit|pay|send|mint|burn|claim|swap|redeem|stake|close|refund", re.I
)
SNAKE_CASE_RE = re.compile(r"[a-z][a-z0-9]*(?:_[a-z0-9]+)*")

KNOWN_PROGRAM_TYPES = {
    "token_program": "Token",
    "system_program": "System",
    "associated_token_program": "AssociatedToken",
}

CHECKED_METHODS = {
    "+": "checked_add",
    "-": "checked_sub",
    "*": "checked_mul",
    "/": "checked_div",
    "%": "checked_rem",
}


@dataclass
class Hit:
    """One match of a detector, before rule metadata is attached."""
    location: Location
    detail: str = ""


# ── shared model queries ─────────────────────────────────────────────────────

def is_fund_moving(model: ProgramModel, instr: InstructionDecl) -> bool:
    """Transfer-like handler name, a transfer-like CPI, or a lamports mutation."""
    if FUND_MOVING_RE.search(instr.name):
        return True
    if any(c.is_transfer for c in model.cpi_edges if c.instruction == instr.name):
        return True
    return any("lamports" in op.text for op in instr.ops(OpKind.STATE_MUTATION))


def first_user(model: ProgramModel, context: str) -> Optional[str]:
    users = model.instructions_using(context)
    return users[0].name if users else None


def _account_location(model: ProgramModel, acct: AccountDecl, span: Optional[Span] = None) -> Location:
    return Location(
        instruction=first_user(model, acct.context),
        line=acct.line,
        account=acct.qualified_name,
        span=span or acct.span,
    )


def _indent_at(source: str, offset: int) -> str:
    line_start = source.rfind("\n", 0, offset) + 1
    prefix = source[line_start:offset]
    return prefix if not prefix.strip() else ""


def _replace(model: ProgramModel, span: Span, after: str) -> Edit:
    return Edit(span=span, before=model.source[span.start:span.end], after=after)


def _insert(offset: int, text: str) -> Edit:
    return Edit(span=Span(start=offset, end=offset), before="", after=text)


def _insert_line_before(model: ProgramModel, offset: int, line: str) -> Edit:
    indent = _indent_at(model.source, offset)
    return _insert(offset, f"{line}\n{indent}")


# ── checked arithmetic rewriting ─────────────────────────────────────────────

def _trim(masked: str, a: int, b: int) -> Tuple[int, int]:
    while a < b and masked[a].isspace():
        a += 1
    while b > a and masked[b - 1].isspace():
        b -= 1
    return a, b


def _depth_zero(masked: str) -> str:
    """masked with everything inside brackets blanked."""
    out = []
    depth = 0
    for c in masked:
        if c in "([{":
            depth += 1
        elif c in ")]}":
            depth -= 1
        out.append(c if depth == 0 and c not in ")]}" else " ")
    return "".join(out)


def _depth_zero_operators(masked: str) -> List[Tuple[int, str]]:
    top = _depth_zero(masked)
    return [(i, op) for i, op in find_binary_operators(masked) if top[i] == op]


def _needs_parens(expr: str) -> bool:
    if expr[:1] in "-!&*":
        return True
    depth = 0
    for c in expr:
        if c in "([{":
            depth += 1
        elif c in ")]}":
            depth -= 1
        elif depth == 0 and c.isspace():
            return True
    return False


def _checked_call(lhs: str, op: str, rhs: str) -> str:
    if re.fullmatch(r"\d[\d_]*", lhs) and op in "+*":
        lhs, rhs = rhs, lhs
    receiver = f"({lhs})" if _needs_parens(lhs) else lhs
    return f"{receiver}.{CHECKED_METHODS[op]}({rhs}).ok_or({OVERFLOW_ERROR})?"


def _checked_operand(text: str, masked: str) -> Optional[str]:
    if masked.startswith("(") and match_delim(masked, 0) == len(masked) - 1:
        a, b = _trim(masked, 1, len(masked) - 1)
        return checked_expression(text[a:b], masked[a:b])
    if find_binary_operators(masked):
        return None  # arithmetic nested inside a call or index
    return text


def checked_expression(text: str, masked: str) -> Optional[str]:
    """
    Rewrite an arithmetic expression into chained checked_* calls, respecting
    operator precedence. None when part of it cannot be rewritten.
    """
    if re.search(r"[<>|^]|==|!=|&&|\.\.", _depth_zero(masked)):
        return None
    operators = _depth_zero_operators(masked)
    if not operators:
        return _checked_operand(text, masked)

    operands: List[str] = []
    prev = 0
    for offset, _ in operators + [(len(masked), "")]:
        a, b = _trim(masked, prev, offset)
        if a == b:
            return None
        operand = _checked_operand(text[a:b], masked[a:b])
        if operand is None:
            return None
        operands.append(operand)
        prev = offset + 1

    terms = [operands[0]]
    additive: List[str] = []
    for (_, op), rhs in zip(operators, operands[1:]):
        if op in "*/%":
            terms[-1] = _checked_call(terms[-1], op, rhs)
        else:
            additive.append(op)
            terms.append(rhs)

    result = terms[0]
    for op, rhs in zip(additive, terms[1:]):
        result = _checked_call(result, op, rhs)
    return result


def _rewrite_operands(statement: str, masked: str) -> str:
    """Rewrite arithmetic passed as a call argument or returned, outermost first."""
    regions: List[Tuple[int, int]] = []
    ret = re.match(r"\s*return\s+", masked)
    if ret:
        end = len(masked.rstrip())
        if masked[:end].endswith(";"):
            end -= 1
        regions.append(_trim(masked, ret.end(), end))
    for i, c in enumerate(masked):
        if c == "(":
            regions.extend(split_top_level(masked, i + 1, match_delim(masked, i)))

    edits: List[Tuple[int, int, str]] = []
    covered = -1
    for a, b in sorted(regions):
        if a < covered or not _depth_zero_operators(masked[a:b]):
            continue
        converted = checked_expression(statement[a:b], masked[a:b])
        if converted is None:
            continue
        edits.append((a, b, converted))
        covered = b
    for a, b, converted in reversed(edits):
        statement = statement[:a] + converted + statement[b:]
    return statement


def rewrite_checked_statement(statement: str) -> Optional[str]:
    """`a = b + c;` -> `a = b.checked_add(c).ok_or(..)?;`, `a += b;` -> `a = a.checked_add(b)..;`"""
    masked = mask_source(statement)
    assign = find_assignment(masked)
    if assign is None:
        rewritten = _rewrite_operands(statement, masked)
        if rewritten == statement or find_binary_operators(mask_source(rewritten)):
            return None
        return rewritten
    eq, compound = assign

    end = len(masked.rstrip())
    if masked[:end].endswith(";"):
        end -= 1
    a, b = _trim(masked, eq + 1, end)
    converted = checked_expression(statement[a:b], masked[a:b])
    if converted is None:
        return None

    if compound:
        lhs_a, lhs_b = _trim(masked, 0, eq - 1)
        lhs = statement[lhs_a:lhs_b]
        rewritten = f"{statement[:lhs_a]}{lhs} = {_checked_call(lhs, compound, converted)}{statement[b:]}"
    else:
        rewritten = statement[:a] + converted + statement[b:]

    if rewritten == statement or find_binary_operators(mask_source(rewritten)):
        return None
    return rewritten


# ── detectors ────────────────────────────────────────────────────────────────

class PatternDetector:
    """Base class for pattern detectors"""

    id: str = "base"
    pass_kind: PassKind = PassKind.SECURITY
    fixable: bool = False

    def detect(self, model: ProgramModel, config: AnalysisConfig) -> List[Hit]:
        raise NotImplementedError

    def fix(self, model: ProgramModel, finding: Finding) -> Optional[Edit]:
        return None


class MissingSignerCheckDetector(PatternDetector):
    """
    VIOLATION: state-mutating or CPI-performing instruction with no signer
    authority in its context.

    SAFE: a Signer account is present and, where the context links accounts
    to an authority through has_one, at least one linked authority signs.
    """

    id = "missing-signer-check"
    fixable = True

    def detect(self, model, config):
        hits = []
        for instr in model.instructions:
            if not instr.mutates_state:
                continue
            accounts = model.accounts_for(instr)
            signers = {a.name for a in accounts if a.kind == AccountKind.SIGNER or a.constraints.signer}
            links = [t for a in accounts for t in a.constraints.has_one if AUTHORITY_RE.search(t)]
            if links:
                if any(t in signers for t in links):
                    continue
            elif signers:
                continue

            target = None
            for name in links:
                acct = model.account_in_context(instr.context, name)
                if acct is not None:
                    target = acct
                    break
            if target is None:
                target = next(
                    (a for a in accounts
                     if AUTHORITY_RE.search(a.name) and a.kind in (AccountKind.RAW, AccountKind.TYPED)),
                    None,
                )
            hits.append(Hit(
                location=Location(
                    instruction=instr.name,
                    line=instr.line,
                    account=target.qualified_name if target else None,
                    span=instr.span,
                ),
                detail=f"'{target.name}' is never required to sign." if target else "",
            ))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None:
            return None
        if acct.kind != AccountKind.RAW and not acct.type_text.startswith("SystemAccount"):
            return None
        return _replace(model, acct.type_span, "Signer<'info>")


class UncheckedArithmeticDetector(PatternDetector):
    """One hit per statement holding raw arithmetic."""

    id = "unchecked-arithmetic"
    fixable = True

    def detect(self, model, config):
        hits = []
        seen = set()
        for site in model.arithmetic_sites:
            if site.checked or site.statement_span in seen:
                continue
            seen.add(site.statement_span)
            raw = [s for s in model.arithmetic_sites if s.statement_span == site.statement_span and not s.checked]
            ops = sorted({s.op for s in raw})
            detail = f"Unchecked {', '.join(ops)} in `{site.statement_text.strip()}`"
            if any(s.touches_token_amount for s in raw):
                detail += " on a token amount"
            hits.append(Hit(
                location=Location(
                    instruction=site.instruction,
                    line=model.line_of(site.statement_span.start),
                    span=site.statement_span,
                ),
                detail=detail,
            ))
        return hits

    def fix(self, model, finding):
        span = finding.location.span
        if span is None:
            return None
        rewritten = rewrite_checked_statement(model.source[span.start:span.end])
        if rewritten is None:
            return None
        return _replace(model, span, rewritten)


class UnvalidatedPdaDetector(PatternDetector):
    id = "unvalidated-pda"
    fixable = True

    @staticmethod
    def unbounded_seeds(pda: PdaSpec) -> List[str]:
        names = []
        for seed in pda.seeds:
            if seed.kind == SeedKind.USER_INPUT and not seed.bounded and seed.source_name not in names:
                names.append(seed.source_name)
        return names

    def detect(self, model, config):
        hits = []
        for pda in model.pda_derivations:
            names = self.unbounded_seeds(pda)
            if not names:
                continue
            hits.append(Hit(
                location=Location(instruction=pda.instruction, line=pda.line, account=pda.account, span=pda.span),
                detail=f"Unbounded seed input: {', '.join(names)}.",
            ))
        return hits

    def fix(self, model, finding):
        pda = next(
            (p for p in model.pda_derivations if p.account == finding.location.account and p.span == finding.location.span),
            None,
        )
        if pda is None:
            return None
        names = self.unbounded_seeds(pda)
        if not names:
            return None
        if pda.guard_in_attribute:
            text = "".join(f", constraint = {n}.len() <= {SEED_LIMIT}" for n in names)
            return _insert(pda.guard_insert_at, text)
        guards = " ".join(f"require!({n}.len() <= {SEED_LIMIT}, ErrorCode::SeedTooLong);" for n in names)
        return _insert_line_before(model, pda.guard_insert_at, guards)


class ArbitraryCpiDetector(PatternDetector):
    id = "arbitrary-cpi"
    fixable = True

    def detect(self, model, config):
        hits = []
        for call in model.cpi_edges:
            if call.target_typed:
                continue
            hits.append(Hit(
                location=Location(
                    instruction=call.instruction,
                    line=call.line,
                    account=call.target_account,
                    span=call.span,
                ),
                detail=f"`{call.function}` targets unchecked program '{call.target_program}'.",
            ))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None or acct.kind != AccountKind.RAW:
            return None
        program = KNOWN_PROGRAM_TYPES.get(acct.name)
        if program is None:
            return None
        return _replace(model, acct.type_span, f"Program<'info, {program}>")


class MissingDiscriminatorCheckDetector(PatternDetector):
    id = "missing-discriminator-check"
    fixable = True

    _TYPE_RE = re.compile(r"\b([A-Z]\w*)::(?:try_from_slice|try_deserialize(?:_unchecked)?|deserialize)\s*\(")

    def detect(self, model, config):
        hits = []
        for instr in model.instructions:
            seen = set()
            for op in instr.ops(OpKind.DESERIALIZE):
                for name in op.targets:
                    acct = model.account_in_context(instr.context, name)
                    if acct is None or acct.kind != AccountKind.RAW or name in seen:
                        continue
                    seen.add(name)
                    hits.append(Hit(
                        location=Location(
                            instruction=instr.name,
                            line=op.line,
                            account=acct.qualified_name,
                            span=op.span,
                        ),
                        detail=f"'{name}' is deserialised from raw account data.",
                    ))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None or acct.kind != AccountKind.RAW:
            return None
        instr = model.instruction(finding.location.instruction or "")
        if instr is None:
            return None
        for op in instr.ops(OpKind.DESERIALIZE):
            if acct.name in op.targets:
                m = self._TYPE_RE.search(op.text)
                if m:
                    return _replace(model, acct.type_span, f"Account<'info, {m.group(1)}>")
        return None


class AccountReinitializationDetector(PatternDetector):
    """
    VIOLATION: `init_if_needed`, or an initialize handler that writes an
    existing typed account without checking an is_initialized flag.
    """

    id = "account-reinitialization"
    fixable = True

    @staticmethod
    def _is_initializer(name: str) -> bool:
        return name == "init" or name.startswith(("initialize", "init_"))

    @staticmethod
    def _checks_initialized(model: ProgramModel, instr: InstructionDecl) -> bool:
        if any("is_initialized" in op.text for op in instr.ops(OpKind.VALIDATION)):
            return True
        return any("is_initialized" in c for a in model.accounts_for(instr) for c in a.constraints.custom)

    def detect(self, model, config):
        hits = []
        for acct in model.accounts.values():
            if acct.constraints.init_if_needed:
                hits.append(Hit(
                    location=_account_location(model, acct, acct.init_if_needed_span),
                    detail=f"'{acct.name}' uses init_if_needed.",
                ))

        for instr in model.instructions:
            if not self._is_initializer(instr.name) or self._checks_initialized(model, instr):
                continue
            for acct in model.accounts_for(instr):
                if acct.kind != AccountKind.TYPED or acct.constraints.init or acct.constraints.init_if_needed:
                    continue
                writes = [op for op in instr.ops(OpKind.STATE_MUTATION) if acct.name in op.targets]
                if not writes:
                    continue
                hits.append(Hit(
                    location=Location(
                        instruction=instr.name,
                        line=writes[0].line,
                        account=acct.qualified_name,
                        span=writes[0].span,
                    ),
                    detail=f"'{acct.name}' is written without an is_initialized check.",
                ))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None:
            return None
        if acct.constraints.init_if_needed and acct.init_if_needed_span == finding.location.span:
            return _replace(model, acct.init_if_needed_span, "init")
        if finding.location.span is None:
            return None
        guard = f"require!(!ctx.accounts.{acct.name}.is_initialized, ErrorCode::AlreadyInitialized);"
        return _insert_line_before(model, finding.location.span.start, guard)


class CpiBeforeStateUpdateDetector(PatternDetector):
    id = "cpi-before-state-update"
    fixable = True

    def detect(self, model, config):
        return [
            Hit(
                location=Location(instruction=call.instruction, line=call.line, span=call.span),
                detail=f"{call.mutations_after} state mutation(s) follow `{call.function}`.",
            )
            for call in model.cpi_edges
            if call.mutations_after > 0
        ]

    def fix(self, model, finding):
        instr = model.instruction(finding.location.instruction or "")
        call: Optional[CpiCall] = next(
            (c for c in model.cpi_edges if c.instruction == finding.location.instruction and c.span == finding.location.span),
            None,
        )
        if instr is None or call is None:
            return None
        moved = [op for op in instr.operations[call.position + 1:] if op.kind == OpKind.STATE_MUTATION]
        if not moved:
            return None

        source = model.source
        masked = mask_source(source)
        for op in moved:
            between = masked[call.span.start:op.span.start]
            if between.count("{") != between.count("}"):
                return None  # nested in a different block than the CPI

        start = call.span.start
        end = moved[-1].span.end
        indent = _indent_at(source, start)
        sep = f"\n{indent}" if indent else " "

        remaining = []
        cursor = start
        for op in moved:
            gap = op.span.start
            while gap > cursor and source[gap - 1].isspace():
                gap -= 1
            remaining.append(source[cursor:gap])
            cursor = op.span.end
        remaining.append(source[cursor:end])

        after = "".join(source[op.span.start:op.span.end] + sep for op in moved) + "".join(remaining)
        return _replace(model, Span(start=start, end=end), after)


class DuplicateMutableAccountsDetector(PatternDetector):
    id = "duplicate-mutable-accounts"
    fixable = True

    @staticmethod
    def _distinct(a: AccountDecl, b: AccountDecl) -> bool:
        pattern = re.compile(
            rf"\b{a.name}\.key\(\)\s*!=\s*{b.name}\.key\(\)|\b{b.name}\.key\(\)\s*!=\s*{a.name}\.key\(\)"
        )
        return any(pattern.search(c) for c in a.constraints.custom + b.constraints.custom)

    def aliased_pairs(self, model: ProgramModel) -> Dict[str, AccountDecl]:
        """Qualified name of the later account -> the earlier account it can alias."""
        by_context: Dict[str, List[AccountDecl]] = {}
        for acct in model.accounts.values():
            by_context.setdefault(acct.context, []).append(acct)

        pairs = {}
        for accounts in by_context.values():
            candidates = [
                a for a in accounts
                if a.kind == AccountKind.TYPED
                and a.type_text.replace(" ", "").startswith(("Account<", "Box<Account<"))
                and a.constraints.mutable
                and not (a.constraints.init or a.constraints.init_if_needed)
                and a.constraints.seeds is None
            ]
            for j, second in enumerate(candidates):
                for first in candidates[:j]:
                    if first.inner_type == second.inner_type and not self._distinct(first, second):
                        pairs[second.qualified_name] = first
                        break
        return pairs

    def detect(self, model, config):
        hits = []
        for qualified, first in self.aliased_pairs(model).items():
            second = model.accounts[qualified]
            hits.append(Hit(
                location=_account_location(model, second),
                detail=f"'{first.name}' and '{second.name}' are both mutable {first.inner_type} accounts.",
            ))
        return hits

    def fix(self, model, finding):
        second = model.accounts.get(finding.location.account or "")
        first = self.aliased_pairs(model).get(finding.location.account or "")
        if second is None or first is None or second.attr_close is None:
            return None
        return _insert(second.attr_close, f", constraint = {second.name}.key() != {first.name}.key()")


class MissingEventEmissionDetector(PatternDetector):
    id = "missing-event-emission"
    pass_kind = PassKind.CONVENTION
    fixable = True

    def detect(self, model, config):
        return [
            Hit(location=Location(
                instruction=instr.name,
                line=instr.line,
                span=instr.return_span or instr.span,
            ))
            for instr in model.instructions
            if is_fund_moving(model, instr) and not instr.emits_event
        ]

    @staticmethod
    def event_name(model: ProgramModel, instr: InstructionDecl) -> str:
        words = instr.name.split("_")
        for event in model.events:
            if event.lower().startswith(words[0].lower()):
                return event
        if model.events:
            return model.events[0]
        return "".join(w.capitalize() for w in words) + "Event"

    def fix(self, model, finding):
        instr = model.instruction(finding.location.instruction or "")
        if instr is None or instr.return_span is None:
            return None
        return _insert_line_before(model, instr.return_span.start, f"emit!({self.event_name(model, instr)} {{}});")


class MissingCheckDocDetector(PatternDetector):
    id = "missing-check-doc"
    pass_kind = PassKind.CONVENTION
    fixable = True

    def detect(self, model, config):
        return [
            Hit(location=_account_location(model, acct))
            for acct in model.accounts.values()
            if acct.kind == AccountKind.RAW and not acct.has_check_doc
        ]

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None:
            return None
        return _insert_line_before(model, acct.span.start, f"/// CHECK: {acct.name} is validated in the handler.")


class NonSnakeCaseInstructionDetector(PatternDetector):
    id = "non-snake-case-instruction"
    pass_kind = PassKind.CONVENTION

    def detect(self, model, config):
        return [
            Hit(
                location=Location(instruction=instr.name, line=instr.line, span=instr.span),
                detail=f"'{instr.name}' is not snake_case.",
            )
            for instr in model.instructions
            if not SNAKE_CASE_RE.fullmatch(instr.name)
        ]


class SpaceMismatchDetector(PatternDetector):
    id = "space-mismatch"
    pass_kind = PassKind.CONVENTION
    fixable = True

    @staticmethod
    def expected_space(model: ProgramModel, acct: AccountDecl) -> Optional[int]:
        struct = model.state_structs.get(acct.inner_type or "")
        if struct is None or struct.static_size is None:
            return None
        return 8 + struct.static_size

    def detect(self, model, config):
        hits = []
        for acct in model.accounts.values():
            if not (acct.constraints.init or acct.constraints.init_if_needed) or acct.constraints.space is None:
                continue
            declared = evaluate_space(acct.constraints.space)
            expected = self.expected_space(model, acct)
            if declared is None or expected is None or declared == expected:
                continue
            hits.append(Hit(
                location=_account_location(model, acct, acct.space_span),
                detail=f"space = {declared}, layout needs {expected}.",
            ))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None or acct.space_span is None:
            return None
        expected = self.expected_space(model, acct)
        if expected is None:
            return None
        return _replace(model, acct.space_span, str(expected))


class RederivedBumpDetector(PatternDetector):
    id = "rederived-bump"
    pass_kind = PassKind.COST
    fixable = True

    def detect(self, model, config):
        hits = []
        for pda in model.pda_derivations:
            if pda.is_init or pda.bump_source != BumpSource.REDERIVED:
                continue
            span = pda.span
            acct = model.accounts.get(pda.account)
            if acct is not None and acct.bump_span is not None:
                span = acct.bump_span
            hits.append(Hit(location=Location(
                instruction=pda.instruction,
                line=pda.line,
                account=pda.account,
                span=span,
            )))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None or acct.bump_span is None or "bump" not in acct.storage_layout:
            return None
        return _replace(model, acct.bump_span, f"bump = {acct.name}.bump")


class UnnecessaryMutDetector(PatternDetector):
    id = "unnecessary-mut"
    pass_kind = PassKind.COST
    fixable = True

    @staticmethod
    def written_accounts(model: ProgramModel, context: str) -> set:
        written = set()
        users = model.instructions_using(context)
        for instr in users:
            for op in instr.operations:
                if op.kind in (OpKind.STATE_MUTATION, OpKind.CPI_CALL):
                    written.update(op.targets)
        names = {i.name for i in users}
        for call in model.cpi_edges:
            if call.instruction in names:
                written.update(a.name for a in call.accounts if a.mutable)
        for acct in model.accounts.values():
            if acct.context != context:
                continue
            if acct.constraints.close:
                written.add(acct.constraints.close)
            if acct.constraints.payer:
                written.add(acct.constraints.payer)
        return written

    def detect(self, model, config):
        hits = []
        written_by_context: Dict[str, set] = {}
        for acct in model.accounts.values():
            c = acct.constraints
            if acct.mut_span is None or c.init or c.init_if_needed or c.close:
                continue
            if not model.instructions_using(acct.context):
                continue
            if acct.context not in written_by_context:
                written_by_context[acct.context] = self.written_accounts(model, acct.context)
            if acct.name in written_by_context[acct.context]:
                continue
            hits.append(Hit(location=_account_location(model, acct, acct.mut_span)))
        return hits

    def fix(self, model, finding):
        acct = model.accounts.get(finding.location.account or "")
        if acct is None or acct.mut_span is None:
            return None
        return _replace(model, acct.mut_span, "")


class HighComputeUsageDetector(PatternDetector):
    id = "high-compute-usage"
    pass_kind = PassKind.COST

    def detect(self, model, config):
        costs = estimate_costs(model)
        return [
            Hit(
                location=Location(instruction=instr.name, line=instr.line, span=instr.span),
                detail=f"Estimated {costs[instr.name]} CU against a budget of {config.compute_budget}.",
            )
            for instr in model.instructions
            if costs[instr.name] > config.compute_budget
        ]


class UnboundedStorageFieldDetector(PatternDetector):
    id = "unbounded-storage-field"
    pass_kind = PassKind.COST
    fixable = True

    def detect(self, model, config):
        hits = []
        for struct in model.state_structs.values():
            for f in struct.fields:
                if f.dynamic and f.max_len is None:
                    hits.append(Hit(
                        location=Location(
                            line=model.line_of(f.span.start),
                            account=f"{struct.name}.{f.name}",
                            span=f.span,
                        ),
                        detail=f"{struct.name}.{f.name}: {f.type}",
                    ))
        return hits

    def fix(self, model, finding):
        span = finding.location.span
        if span is None:
            return None
        return _insert_line_before(model, span.start, f"#[max_len({DEFAULT_MAX_LEN})]")


# Registry of all detectors
DETECTOR_REGISTRY = [
    MissingSignerCheckDetector(),
    UncheckedArithmeticDetector(),
    UnvalidatedPdaDetector(),
    ArbitraryCpiDetector(),
    MissingDiscriminatorCheckDetector(),
    AccountReinitializationDetector(),
    CpiBeforeStateUpdateDetector(),
    DuplicateMutableAccountsDetector(),
    MissingEventEmissionDetector(),
    MissingCheckDocDetector(),
    NonSnakeCaseInstructionDetector(),
    SpaceMismatchDetector(),
    RederivedBumpDetector(),
    UnnecessaryMutDetector(),
    HighComputeUsageDetector(),
    UnboundedStorageFieldDetector(),
]
