from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional, Dict, List, Literal
from enum import Enum


# ─── Request / Response Envelope ─────────────────────────────────────

class MCPRequest(BaseModel):
    request_id: str
    action: str
    payload: Dict[str, Any]
    context: Optional[Dict[str, Any]] = None


# ─── Enumerations ────────────────────────────────────────────────────

class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    INFO = "info"


# Lowest first; escalation walks up this ladder.
SEVERITY_LADDER = [Severity.INFO, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


def severity_rank(severity: Severity) -> int:
    return SEVERITY_LADDER.index(severity)


class PassKind(str, Enum):
    SECURITY = "security"
    CONVENTION = "convention"
    COST = "cost"


class AccountKind(str, Enum):
    RAW = "raw"
    TYPED = "typed"
    SIGNER = "signer"
    PROGRAM = "program"


class SeedKind(str, Enum):
    LITERAL = "literal"
    ACCOUNT_KEY = "account-key"
    USER_INPUT = "user-input"
    NUMERIC = "numeric"


class BumpSource(str, Enum):
    STORED = "stored"
    REDERIVED = "rederived"
    HARDCODED = "hardcoded"


class OpKind(str, Enum):
    STATE_MUTATION = "state-mutation"
    CPI_CALL = "cpi-call"
    VALIDATION = "validation-check"
    EVENT_EMISSION = "event-emission"
    DESERIALIZE = "account-deserialize"
    LOG = "log"


class FixDirection(str, Enum):
    ADD_CONSTRAINT = "add-constraint"
    REMOVE_CONSTRAINT = "remove-constraint"
    REWRITE = "rewrite"
    NONE = "none"


class Directive(str, Enum):
    KEEP = "keep"
    DROP = "drop"
    ESCALATE = "escalate"


class ErrorKind(str, Enum):
    PARSE_ERROR = "ParseError"
    RULE_EVALUATION_ERROR = "RuleEvaluationError"
    MODEL_DRIFT_ERROR = "ModelDriftError"
    CORRELATION_CONFLICT = "CorrelationConflictUnresolved"
    INVALID_REQUEST = "InvalidRequest"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─── Program Model ───────────────────────────────────────────────────

class Span(_Frozen):
    """Half-open character range into the original source."""
    start: int
    end: int

    def overlaps(self, other: "Span") -> bool:
        if self.start == self.end and other.start == other.end:
            return self.start == other.start
        if self.start == self.end:
            return other.start < self.start < other.end
        if other.start == other.end:
            return self.start < other.start < self.end
        return max(self.start, other.start) < min(self.end, other.end)


class AccountConstraints(_Frozen):
    seeds: Optional[List[str]] = None
    bump: Optional[str] = None  # None = no bump, "" = bare `bump`
    bump_source: Optional[BumpSource] = None
    has_one: List[str] = Field(default_factory=list)
    mutable: bool = False
    close: Optional[str] = None
    init: bool = False
    init_if_needed: bool = False
    owner: Optional[str] = None
    address: Optional[str] = None
    custom: List[str] = Field(default_factory=list)
    space: Optional[str] = None
    payer: Optional[str] = None
    signer: bool = False


class StorageField(_Frozen):
    name: str
    type: str
    size: Optional[int] = None  # None when dynamic and unbounded, or unknown
    max_len: Optional[int] = None
    dynamic: bool = False
    span: Span


class StateStruct(_Frozen):
    name: str
    fields: List[StorageField] = Field(default_factory=list)
    span: Span

    @property
    def layout(self) -> Dict[str, Optional[int]]:
        return {f.name: f.size for f in self.fields}

    @property
    def static_size(self) -> Optional[int]:
        sizes = [f.size for f in self.fields]
        if any(s is None for s in sizes):
            return None
        return sum(sizes)


class AccountDecl(_Frozen):
    name: str
    context: str
    kind: AccountKind
    type_text: str
    inner_type: Optional[str] = None
    constraints: AccountConstraints = Field(default_factory=AccountConstraints)
    has_check_doc: bool = False
    storage_layout: Dict[str, Optional[int]] = Field(default_factory=dict)
    line: int
    span: Span
    type_span: Span
    attr_span: Optional[Span] = None
    attr_close: Optional[int] = None  # offset of the attribute's closing ')'
    mut_span: Optional[Span] = None
    bump_span: Optional[Span] = None
    space_span: Optional[Span] = None
    init_if_needed_span: Optional[Span] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.context}.{self.name}"


class BodyOp(_Frozen):
    kind: OpKind
    text: str
    line: int
    span: Span
    statement_span: Span
    targets: List[str] = Field(default_factory=list)  # account field names touched
    in_loop: bool = False


class InstructionDecl(_Frozen):
    name: str
    context: str
    params: Dict[str, str] = Field(default_factory=dict)
    accounts: List[str] = Field(default_factory=list)  # qualified names, declaration order
    operations: List[BodyOp] = Field(default_factory=list)
    line: int
    span: Span
    body_span: Span  # between the braces
    return_span: Optional[Span] = None  # trailing `Ok(())`

    def ops(self, kind: OpKind) -> List[BodyOp]:
        return [op for op in self.operations if op.kind == kind]

    @property
    def mutates_state(self) -> bool:
        return any(op.kind in (OpKind.STATE_MUTATION, OpKind.CPI_CALL) for op in self.operations)

    @property
    def emits_event(self) -> bool:
        return any(op.kind == OpKind.EVENT_EMISSION for op in self.operations)


class CpiAccount(_Frozen):
    name: str
    mutable: bool = False
    signer: bool = False


class CpiCall(_Frozen):
    instruction: str
    target_program: str
    target_typed: bool
    target_account: Optional[str] = None  # qualified name of the program account
    function: str = ""
    accounts: List[CpiAccount] = Field(default_factory=list)
    signer_seeds: List[str] = Field(default_factory=list)
    position: int  # index into InstructionDecl.operations
    mutations_before: int = 0
    mutations_after: int = 0
    is_transfer: bool = False
    line: int
    span: Span


class PdaSeed(_Frozen):
    text: str
    kind: SeedKind
    source_name: Optional[str] = None
    bounded: bool = True


class PdaSpec(_Frozen):
    account: str  # qualified account name, or `instruction:<name>` for body derivations
    instruction: Optional[str] = None
    seeds: List[PdaSeed] = Field(default_factory=list)
    bump_source: BumpSource
    is_init: bool = False
    line: int
    span: Span
    guard_insert_at: int  # offset where a length guard can be inserted
    guard_in_attribute: bool = True


class ArithOp(_Frozen):
    instruction: str
    op: str
    checked: bool = False
    touches_token_amount: bool = False
    line: int
    span: Span
    statement_span: Span
    statement_text: str


class ProgramModel(_Frozen):
    name: str
    source: str = Field(repr=False)
    source_hash: str
    accounts: Dict[str, AccountDecl] = Field(default_factory=dict)
    instructions: List[InstructionDecl] = Field(default_factory=list)
    cpi_edges: List[CpiCall] = Field(default_factory=list)
    pda_derivations: List[PdaSpec] = Field(default_factory=list)
    arithmetic_sites: List[ArithOp] = Field(default_factory=list)
    state_structs: Dict[str, StateStruct] = Field(default_factory=dict)
    events: List[str] = Field(default_factory=list)
    instruction_args: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def instruction(self, name: str) -> Optional[InstructionDecl]:
        for instr in self.instructions:
            if instr.name == name:
                return instr
        return None

    def accounts_for(self, instr: InstructionDecl) -> List[AccountDecl]:
        return [self.accounts[q] for q in instr.accounts if q in self.accounts]

    def account_in_context(self, context: str, name: str) -> Optional[AccountDecl]:
        return self.accounts.get(f"{context}.{name}")

    def instructions_using(self, context: str) -> List[InstructionDecl]:
        return [i for i in self.instructions if i.context == context]

    def line_of(self, offset: int) -> int:
        return self.source.count("\n", 0, offset) + 1


# ─── Findings ────────────────────────────────────────────────────────

class Location(_Frozen):
    instruction: Optional[str] = None
    line: Optional[int] = None
    account: Optional[str] = None
    span: Optional[Span] = None


class Finding(_Frozen):
    rule_id: str
    pass_: PassKind = Field(alias="pass")
    severity: Severity
    title: str
    location: Location
    description: str
    recommendation: str = ""
    fix_ref: Optional[str] = None
    direction: FixDirection = FixDirection.NONE
    tags: List[str] = Field(default_factory=list)
    derived: bool = False
    source_findings: List[str] = Field(default_factory=list)
    escalated_from: Optional[Severity] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def id(self) -> str:
        loc = self.location
        return f"{self.rule_id}:{loc.instruction or '-'}:{loc.account or '-'}:{loc.line or 0}"

    @property
    def base_severity(self) -> Severity:
        return self.escalated_from or self.severity


class PrecedenceResolution(_Frozen):
    finding_id: str
    directive: Directive
    rule: str
    reason: str
    severity: Optional[Severity] = None


class Edit(_Frozen):
    span: Span
    before: str
    after: str


class RemediationPlanItem(_Frozen):
    priority: int
    finding_refs: List[str]
    fix_description: str
    edit: Edit
    also_resolves: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class EngineError(_Frozen):
    kind: ErrorKind
    message: str
    rule_id: Optional[str] = None
    location: Dict[str, Any] = Field(default_factory=dict)


# ─── Analysis Request / Report ───────────────────────────────────────

class AnalysisConfig(BaseModel):
    pass_: Literal["security", "convention", "cost", "all"] = Field(default="all", alias="pass")
    severity_threshold: Severity = Severity.INFO
    compute_budget: int = 200_000
    generate_patch: bool = False

    model_config = ConfigDict(populate_by_name=True)

    def passes(self) -> List[PassKind]:
        if self.pass_ == "all":
            return [PassKind.SECURITY, PassKind.CONVENTION, PassKind.COST]
        return [PassKind(self.pass_)]


class AnalyzeRequest(BaseModel):
    code: str
    config: AnalysisConfig = Field(default_factory=AnalysisConfig)


class ReportLocation(BaseModel):
    instruction: Optional[str] = None
    line: Optional[int] = None


class ReportFinding(BaseModel):
    id: str
    severity: Severity
    pattern_id: str
    category: PassKind
    title: str
    location: ReportLocation
    description: str
    recommendation: str


class ReportCompoundFinding(BaseModel):
    id: str
    severity: Severity
    title: str
    source_findings: List[str]
    description: str
    recommendation: str


class ReportPlanItem(BaseModel):
    priority: int
    finding_refs: List[str]
    fix_description: str
    before: str
    after: str
    also_resolves: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class AnalysisReport(BaseModel):
    score: int
    risk_level: str
    findings: List[ReportFinding] = Field(default_factory=list)
    compound_findings: List[ReportCompoundFinding] = Field(default_factory=list)
    remediation_plan: List[ReportPlanItem] = Field(default_factory=list)
    optimized_code: Optional[str] = None
    precedence_resolutions: List[PrecedenceResolution] = Field(default_factory=list)
    errors: List[EngineError] = Field(default_factory=list)
    total_critical: int = 0
    total_high: int = 0
    total_medium: int = 0
    total_info: int = 0
